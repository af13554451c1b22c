from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from taskforge.tools.patch import (
    PatchError,
    convert_apply_patch_format,
    fix_missing_prefixes,
    is_placeholder_patch,
    normalize_patch,
    parse_added_file_contents,
    recount_hunk_headers,
    resolve_against_workspace,
    split_patch_into_diffs,
    strip_invalid_index_lines,
    touched_files,
    validate_patch_paths,
)

BARE_DIFF = textwrap.dedent(
    """\
    --- a/src/app.txt
    +++ b/src/app.txt
    @@ -1,4 +1,7 @@
    -hello
    +hello world
    """
)


def test_normalize_synthesizes_diff_header_and_counts() -> None:
    normalized = normalize_patch(BARE_DIFF)

    assert normalized.splitlines()[0] == "diff --git a/src/app.txt b/src/app.txt"
    assert "@@ -1,1 +1,1 @@" in normalized


def test_normalize_is_idempotent(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.txt").write_text("hello\n", encoding="utf-8")

    once = normalize_patch(BARE_DIFF, root=tmp_path)
    twice = normalize_patch(once, root=tmp_path)

    assert once == twice


def test_recount_reports_adjustments() -> None:
    patch = "diff --git a/x.txt b/x.txt\n--- a/x.txt\n+++ b/x.txt\n@@ -1,3 +1,3 @@\n keep\n-old\n+new\n"

    fixed, notes = recount_hunk_headers(patch)

    assert "@@ -1,2 +1,2 @@" in fixed
    assert notes and "x.txt" in notes[0]


def test_convert_apply_patch_format_add_and_update() -> None:
    patch = textwrap.dedent(
        """\
        *** Begin Patch
        *** Add File: docs/notes.md
        +# Notes
        +first line
        *** Update File: src/app.txt
        @@
        -hello
        +hello there
        *** End Patch
        """
    )

    converted = convert_apply_patch_format(patch)

    assert "diff --git a/docs/notes.md b/docs/notes.md" in converted
    assert "new file mode 100644" in converted
    assert "+++ b/src/app.txt" in converted
    assert touched_files(converted) == ["docs/notes.md", "src/app.txt"]
    assert parse_added_file_contents(converted) == {"docs/notes.md": "# Notes\nfirst line\n"}


def test_missing_prefixes_become_additions() -> None:
    patch = "--- a/x.txt\n+++ b/x.txt\n@@ -1,1 +1,2 @@\n keep\nadded\n\n"

    fixed = fix_missing_prefixes(patch)

    assert "+added" in fixed.splitlines()


def test_strip_invalid_index_lines() -> None:
    patch = "diff --git a/x b/x\nindex abc..def\nindex 1234567..89abcde 100644\n--- a/x\n+++ b/x\n"

    lines = strip_invalid_index_lines(patch).splitlines()

    assert "index abc..def" not in lines
    assert "index 1234567..89abcde 100644" in lines


def test_index_lines_keep_any_numeric_mode() -> None:
    patch = "diff --git a/run.sh b/run.sh\nindex 1234567..89abcde 100755\nindex 0000000..1111111 120000\nindex 1234567..89abcde 10064x\n"

    lines = strip_invalid_index_lines(patch).splitlines()

    assert "index 1234567..89abcde 100755" in lines
    assert "index 0000000..1111111 120000" in lines
    assert "index 1234567..89abcde 10064x" not in lines


def test_modify_of_missing_file_becomes_add(tmp_path: Path) -> None:
    patch = "diff --git a/new.txt b/new.txt\n--- a/new.txt\n+++ b/new.txt\n@@ -1,1 +1,2 @@\n first\n+second\n"

    resolved = resolve_against_workspace(patch, tmp_path)

    assert "--- /dev/null" in resolved
    assert parse_added_file_contents(resolved) == {"new.txt": "first\nsecond\n"}


def test_placeholder_patches_are_detected() -> None:
    assert is_placeholder_patch("--- a/x\n+++ b/x\n@@ -1 +1 @@\n-a\n+...\n")
    assert is_placeholder_patch("+    # rest of existing code\n")
    assert not is_placeholder_patch(BARE_DIFF)


def test_split_patch_into_diffs() -> None:
    patch = (
        "diff --git a/a.txt b/a.txt\n--- a/a.txt\n+++ b/a.txt\n@@ -1 +1 @@\n-a\n+b\n"
        "diff --git a/b.txt b/b.txt\n--- a/b.txt\n+++ b/b.txt\n@@ -1 +1 @@\n-c\n+d\n"
    )

    segments = split_patch_into_diffs(patch)

    assert len(segments) == 2
    assert touched_files(segments[1]) == ["b.txt"]


@pytest.mark.parametrize("path", ["../escape.txt", "/etc/passwd", ".git/config"])
def test_validate_patch_paths_rejects_unsafe_targets(path: str) -> None:
    with pytest.raises(PatchError):
        validate_patch_paths([path])
