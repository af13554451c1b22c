from __future__ import annotations

import stat
from pathlib import Path
from typing import List

import pytest

from taskforge.tools.git_flow import GitChoreographer, MergeConflictError
from taskforge.tools.vcs import GitError, GitRepository


def _write(repo: GitRepository, rel: str, content: str) -> None:
    path = repo.root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _commit_all(repo: GitRepository, message: str) -> None:
    repo.git("add", "-A")
    repo.git("commit", "-m", message)


def test_ensure_branches_creates_task_branch_from_base(git_repo: GitRepository) -> None:
    flow = GitChoreographer(git_repo)

    info = flow.ensure_branches("T-1", "taskforge-dev")

    assert info.branch == "taskforge/task/T-1"
    assert info.base == "taskforge-dev"
    assert info.merge_conflicts == []
    assert git_repo.current_branch() == "taskforge/task/T-1"


def test_checkout_base_auto_commits_stray_changes(git_repo: GitRepository) -> None:
    flow = GitChoreographer(git_repo)
    _write(git_repo, "stray.txt", "left behind\n")

    flow.checkout_base_branch("taskforge-dev")

    assert git_repo.current_branch() == "taskforge-dev"
    assert flow.dirty_paths() == []
    log = git_repo.git("log", "--format=%s", "main").stdout
    assert "[taskforge] auto-commit workspace changes" in log


def test_merge_back_conflict_aborts_merge(git_repo: GitRepository) -> None:
    flow = GitChoreographer(git_repo)
    info = flow.ensure_branches("T-1", "taskforge-dev")
    _write(git_repo, "src/app.txt", "task side\n")
    _commit_all(git_repo, "task change")

    git_repo.checkout_branch("taskforge-dev")
    _write(git_repo, "src/app.txt", "base side\n")
    _commit_all(git_repo, "base change")
    git_repo.checkout_branch(info.branch)

    with pytest.raises(MergeConflictError) as excinfo:
        flow.merge_back(info)

    assert excinfo.value.conflicts == ["src/app.txt"]
    assert not (git_repo.root / ".git" / "MERGE_HEAD").exists()
    assert git_repo.dirty_paths() == []
    assert git_repo.current_branch() == "taskforge-dev"


def test_ensure_branches_reports_base_conflicts(git_repo: GitRepository) -> None:
    flow = GitChoreographer(git_repo)
    info = flow.ensure_branches("T-1", "taskforge-dev")
    _write(git_repo, "src/app.txt", "task side\n")
    _commit_all(git_repo, "task change")
    git_repo.checkout_branch("taskforge-dev")
    _write(git_repo, "src/app.txt", "base side\n")
    _commit_all(git_repo, "base change")

    again = flow.ensure_branches("T-1", "taskforge-dev")

    assert again.branch == info.branch
    assert again.merge_conflicts == ["src/app.txt"]
    assert not (git_repo.root / ".git" / "MERGE_HEAD").exists()
    assert any("Merge conflicts" in warning for warning in flow.warnings)


def test_commit_retries_without_hooks(git_repo: GitRepository) -> None:
    hook = git_repo.root / ".git" / "hooks" / "pre-commit"
    hook.parent.mkdir(parents=True, exist_ok=True)
    hook.write_text("#!/bin/sh\necho 'pre-commit hook failed' >&2\nexit 1\n", encoding="utf-8")
    hook.chmod(hook.stat().st_mode | stat.S_IEXEC)
    flow = GitChoreographer(git_repo)
    _write(git_repo, "src/app.txt", "updated\n")

    sha = flow.commit_changes("[T-1] update")

    assert sha == git_repo.last_commit_sha()
    assert any("retrying with bypass" in warning for warning in flow.warnings)


def test_commit_changes_without_changes_returns_none(git_repo: GitRepository) -> None:
    flow = GitChoreographer(git_repo)

    assert flow.commit_changes("[T-1] nothing") is None


class _PushStubRepo:
    """Stand-in repository whose pushes fail with scripted git errors."""

    def __init__(self, errors: List[GitError]) -> None:
        self.root = Path(".")
        self._errors = list(errors)
        self.pushes: List[str] = []
        self.pulls: List[str] = []
        self.checkouts: List[str] = []

    def push(self, remote: str, branch: str, **_: object) -> None:
        self.pushes.append(branch)
        if self._errors:
            raise self._errors.pop(0)

    def pull(self, remote: str, branch: str, *, ff_only: bool = True) -> None:
        self.pulls.append(branch)

    def current_branch(self) -> str:
        return "taskforge-dev"

    def checkout_branch(self, branch: str) -> None:
        self.checkouts.append(branch)

    def ensure_clean(self, **_: object) -> None:
        return None


def test_push_non_fast_forward_then_permission_is_skipped() -> None:
    repo = _PushStubRepo(
        [
            GitError("push failed", stderr="! [rejected] taskforge-dev -> taskforge-dev (non-fast-forward)"),
            GitError("push failed", stderr="remote: error: GH006: Protected branch update failed"),
        ]
    )
    flow = GitChoreographer(repo)  # type: ignore[arg-type]

    outcome = flow.push_with_recovery("taskforge-dev")

    assert not outcome.pushed
    assert outcome.skipped
    assert outcome.reason == "permission"
    assert repo.pushes == ["taskforge-dev", "taskforge-dev"]
    assert repo.pulls == ["taskforge-dev"]


def test_push_recovers_after_pull() -> None:
    repo = _PushStubRepo([GitError("push failed", stderr="Updates were rejected (fetch first)")])
    flow = GitChoreographer(repo)  # type: ignore[arg-type]

    outcome = flow.push_with_recovery("taskforge/task/T-1")

    assert outcome.pushed
    assert repo.checkouts == ["taskforge/task/T-1", "taskforge-dev"]


def test_push_unknown_error_propagates() -> None:
    repo = _PushStubRepo([GitError("push failed", stderr="fatal: the remote end hung up unexpectedly")])
    flow = GitChoreographer(repo)  # type: ignore[arg-type]

    with pytest.raises(GitError):
        flow.push_with_recovery("taskforge-dev")
