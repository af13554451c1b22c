from __future__ import annotations

from pathlib import Path

import pytest

from taskforge.tools.vcs import GitError, GitErrorKind, GitRepository, classify_git_error, matches_git_error


@pytest.mark.parametrize(
    ("text", "kind"),
    [
        ("! [rejected] main -> main (non-fast-forward)", GitErrorKind.NON_FAST_FORWARD),
        ("Updates were rejected because the remote contains work that you do not have (fetch first)", GitErrorKind.NON_FAST_FORWARD),
        ("remote: error: GH006: Protected branch update failed for refs/heads/main.", GitErrorKind.PERMISSION),
        ("remote: Permission to org/repo.git denied. fatal: unable to access: The requested URL returned error: 403", GitErrorKind.PERMISSION),
        ("! [remote rejected] main -> main (pre-receive hook declined)", GitErrorKind.NON_FAST_FORWARD),
        ("CONFLICT (content): Merge conflict in src/app.txt", GitErrorKind.CONFLICT),
        ("error: gpg failed to sign the data", GitErrorKind.GPG_FAILURE),
        ("husky > pre-commit hook failed (add --no-verify to bypass)", GitErrorKind.HOOK_FAILURE),
        ("error: pathspec 'docs/403.md' did not match any file(s) known to git", GitErrorKind.UNKNOWN),
        ("fatal: bad object 4031a2b9c7", GitErrorKind.UNKNOWN),
        ("fatal: something unexpected", GitErrorKind.UNKNOWN),
        ("", GitErrorKind.UNKNOWN),
    ],
)
def test_classify_git_error(text: str, kind: GitErrorKind) -> None:
    assert classify_git_error(text) is kind


def test_matches_git_error_checks_one_kind() -> None:
    text = "pre-commit hook failed"

    assert matches_git_error(text, GitErrorKind.HOOK_FAILURE)
    assert not matches_git_error(text, GitErrorKind.GPG_FAILURE)


def test_git_error_text_prefers_captured_output() -> None:
    error = GitError("git push failed", args=("push",), stderr="! [rejected] (non-fast-forward)\n")

    assert error.text == "! [rejected] (non-fast-forward)"
    assert error.kind is GitErrorKind.NON_FAST_FORWARD
    assert GitError("plain").text == "plain"


def test_repository_requires_git_dir(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        GitRepository(tmp_path)


def test_ensure_repo_initialises_and_sets_identity(tmp_path: Path) -> None:
    repo = GitRepository.ensure_repo(tmp_path / "fresh")
    repo.ensure_identity()
    repo.ensure_base_branch("taskforge-dev")

    assert repo.branch_exists("taskforge-dev")
    assert repo.has_commits()


def test_branch_and_status_helpers(git_repo: GitRepository) -> None:
    git_repo.ensure_base_branch("taskforge-dev")
    git_repo.create_or_checkout_branch("taskforge/task/T-1", "taskforge-dev")
    assert git_repo.current_branch() == "taskforge/task/T-1"

    (git_repo.root / "src" / "app.txt").write_text("changed\n", encoding="utf-8")
    (git_repo.root / ".taskforge").mkdir()
    (git_repo.root / ".taskforge" / "state.json").write_text("{}", encoding="utf-8")
    (git_repo.root / "extra.txt").write_text("x\n", encoding="utf-8")

    assert git_repo.dirty_paths(ignore_prefixes=[".taskforge"]) == ["extra.txt", "src/app.txt"]
    with pytest.raises(GitError):
        git_repo.ensure_clean()

    git_repo.stage(["src/app.txt", "extra.txt"])
    assert git_repo.staged_changes()
    sha = git_repo.commit("[T-1] change")
    assert sha == git_repo.last_commit_sha()
    assert git_repo.dirty_paths(ignore_prefixes=[".taskforge"]) == []
