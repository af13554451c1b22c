from __future__ import annotations

import pytest

from taskforge.tools.applier import ScopeViolationError, apply_file_blocks, apply_patches, validate_scope
from taskforge.tools.extract import FileBlock
from taskforge.tools.vcs import GitRepository


def test_repairs_headerless_patch_with_stale_counts(git_repo: GitRepository) -> None:
    target = git_repo.root / "notes.txt"
    target.write_text("a\nb\n", encoding="utf-8")
    patch = "--- a/notes.txt\n+++ b/notes.txt\n@@ -1,7 +1,9 @@\n a\n-b\n+c\n"

    result = apply_patches([patch], git_repo.root)

    assert result.ok
    assert result.touched == ["notes.txt"]
    assert target.read_text(encoding="utf-8") == "a\nc\n"


def test_add_of_existing_file_replaces_then_becomes_noop(git_repo: GitRepository) -> None:
    patch = "--- /dev/null\n+++ b/src/app.txt\n@@ -0,0 +1,1 @@\n+replaced\n"

    first = apply_patches([patch], git_repo.root)
    second = apply_patches([patch], git_repo.root)

    assert first.ok and first.applied_count == 1
    assert (git_repo.root / "src" / "app.txt").read_text(encoding="utf-8") == "replaced\n"
    assert second.ok and second.applied_count == 1
    assert any("no-op" in warning for warning in second.warnings)


def test_new_file_patch_creates_directories(git_repo: GitRepository) -> None:
    patch = "--- /dev/null\n+++ b/pkg/deep/module.py\n@@ -0,0 +1,2 @@\n+VALUE = 1\n+OTHER = 2\n"

    result = apply_patches([patch], git_repo.root)

    assert result.ok
    assert (git_repo.root / "pkg" / "deep" / "module.py").read_text(encoding="utf-8") == "VALUE = 1\nOTHER = 2\n"


def test_dry_run_checks_without_writing(git_repo: GitRepository) -> None:
    patch = "--- a/src/app.txt\n+++ b/src/app.txt\n@@ -1 +1 @@\n-hello\n+changed\n"

    result = apply_patches([patch], git_repo.root, dry_run=True)

    assert result.ok
    assert (git_repo.root / "src" / "app.txt").read_text(encoding="utf-8") == "hello\n"


def test_unapplicable_patch_reports_error(git_repo: GitRepository) -> None:
    patch = "--- a/src/app.txt\n+++ b/src/app.txt\n@@ -1 +1 @@\n-not the content\n+changed\n"

    result = apply_patches([patch], git_repo.root)

    assert not result.ok
    assert "src/app.txt" in (result.error or "")
    assert result.touched == []


def test_path_escape_is_rejected(git_repo: GitRepository) -> None:
    patch = "--- /dev/null\n+++ b/../outside.txt\n@@ -0,0 +1 @@\n+nope\n"

    result = apply_patches([patch], git_repo.root)

    assert not result.ok
    assert not (git_repo.root.parent / "outside.txt").exists()


def test_file_block_outside_workspace_is_not_written(git_repo: GitRepository) -> None:
    blocks = [FileBlock(path="../escape.txt", content="x\n"), FileBlock(path=".git/hooks/evil", content="x\n")]

    result = apply_file_blocks(blocks, git_repo.root)

    assert not result.ok
    assert not (git_repo.root.parent / "escape.txt").exists()
    assert not (git_repo.root / ".git" / "hooks" / "evil").exists()


def test_file_block_writes_new_file_and_refuses_overwrite(git_repo: GitRepository) -> None:
    created = apply_file_blocks([FileBlock(path="docs/guide.md", content="# Guide\n")], git_repo.root)
    refused = apply_file_blocks([FileBlock(path="src/app.txt", content="other\n")], git_repo.root)
    allowed = apply_file_blocks(
        [FileBlock(path="src/app.txt", content="other\n")],
        git_repo.root,
        allow_overwrite=True,
    )

    assert created.ok and created.touched == ["docs/guide.md"]
    assert not refused.ok
    assert allowed.ok
    assert (git_repo.root / "src" / "app.txt").read_text(encoding="utf-8") == "other\n"


def test_patch_takes_precedence_over_file_block(git_repo: GitRepository) -> None:
    patch = "--- a/src/app.txt\n+++ b/src/app.txt\n@@ -1 +1 @@\n-hello\n+from patch\n"

    patched = apply_patches([patch], git_repo.root)
    blocks = apply_file_blocks(
        [FileBlock(path="src/app.txt", content="from file block\n")],
        git_repo.root,
        allow_overwrite=True,
        covered_paths=patched.touched,
    )

    assert (git_repo.root / "src" / "app.txt").read_text(encoding="utf-8") == "from patch\n"
    assert blocks.applied_count == 0
    assert any("already changed by a patch" in warning for warning in blocks.warnings)


def test_validate_scope() -> None:
    assert validate_scope([], ["anything.txt"]).ok
    assert validate_scope(["src", "docs/guide.md"], ["src/app.txt", "./docs/guide.md"]).ok

    check = validate_scope(["src"], ["src/app.txt", "setup.cfg", "srcfoo/x.py"])

    assert not check.ok
    assert check.violations == ["setup.cfg", "srcfoo/x.py"]
    with pytest.raises(ScopeViolationError) as excinfo:
        check.raise_for_violations()
    assert excinfo.value.violations == ["setup.cfg", "srcfoo/x.py"]


def test_git_add_diff_without_trailing_newline(git_repo: GitRepository) -> None:
    patch = "diff --git a/src/x.ts b/src/x.ts\n--- /dev/null\n+++ b/src/x.ts\n@@ -0,0 +1,2 @@\n+a\n+b"

    result = apply_patches([patch], git_repo.root)

    assert result.ok
    assert result.touched == ["src/x.ts"]
    assert (git_repo.root / "src" / "x.ts").read_text(encoding="utf-8") == "a\nb\n"
