"""Unified diff repair helpers for agent-authored patches.

Agents routinely emit diffs that ``git apply`` rejects: missing ``diff --git``
headers, ``*** Begin Patch`` blocks, stale hunk counts, dropped line prefixes or
made-up ``index`` lines.  :func:`normalize_patch` runs a fixed pipeline of pure
repair steps over such text.  Every step leaves already-canonical input
untouched, so the pipeline is idempotent.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

DEV_NULL = "/dev/null"

_DIFF_HEADER = re.compile(r"^diff --git (?:\"?a/)?(?P<old>\S+?)\"? (?:\"?b/)?(?P<new>\S+?)\"?$")
_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<tail>.*)$"
)
_VALID_INDEX = re.compile(r"^[0-9a-f]{7,40}\.\.[0-9a-f]{7,40}(?: \d+)?$")
_FILE_PREFIX = re.compile(r"^file:\s*", re.IGNORECASE)
_ELLIPSIS_LINE = re.compile(r"^[+\- ]?\s*(?:\.\.\.|…)\s*$")
_REST_OF_CODE = re.compile(r"rest of (?:the )?existing code", re.IGNORECASE)
_NO_NEWLINE = "\\ No newline at end of file"


class PatchError(RuntimeError):
    """Raised when a patch fails validation or application."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class _FilePair:
    """``---``/``+++`` operands of one diff section."""

    minus_index: int
    old: str
    new: str

    @property
    def is_add(self) -> bool:
        return self.old == DEV_NULL

    @property
    def is_delete(self) -> bool:
        return self.new == DEV_NULL

    @property
    def target(self) -> str:
        return self.old if self.is_delete else self.new


# ------------------------------------------------------------------ line IO
def _lines(patch: str) -> List[str]:
    text = patch.replace("\r\n", "\n").replace("\r", "\n")
    return text.rstrip("\n").split("\n") if text.strip() else []


def _join(lines: Sequence[str]) -> str:
    text = "\n".join(lines)
    if text and not text.endswith("\n"):
        text += "\n"
    return text


def _clean_path(raw: str, *, strip_prefix: str | None = None) -> str:
    """Reduce a ``---``/``+++`` operand to a bare POSIX path."""
    value = raw.split("\t", 1)[0].strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1]
    value = _FILE_PREFIX.sub("", value).strip()
    if value == DEV_NULL:
        return DEV_NULL
    value = value.replace("\\", "/")
    if strip_prefix and value.startswith(strip_prefix):
        value = value[len(strip_prefix):]
    while value.startswith("./"):
        value = value[2:]
    return value


def _pair_at(lines: Sequence[str], index: int) -> _FilePair | None:
    line = lines[index]
    if not line.startswith("--- ") or index + 1 >= len(lines) or not lines[index + 1].startswith("+++ "):
        return None
    return _FilePair(
        minus_index=index,
        old=_clean_path(line[4:], strip_prefix="a/"),
        new=_clean_path(lines[index + 1][4:], strip_prefix="b/"),
    )


def _section_bounds(lines: Sequence[str]) -> List[Tuple[int, int]]:
    """Line ranges of each ``diff --git`` section (preamble excluded)."""
    starts = [index for index, line in enumerate(lines) if line.startswith("diff --git ")]
    bounds: List[Tuple[int, int]] = []
    for position, start in enumerate(starts):
        end = starts[position + 1] if position + 1 < len(starts) else len(lines)
        bounds.append((start, end))
    return bounds


def _section_pair(section: Sequence[str]) -> _FilePair | None:
    for index in range(len(section)):
        if section[index].startswith("@@"):
            return None
        pair = _pair_at(section, index)
        if pair is not None:
            return pair
    return None


def _is_body_line(line: str) -> bool:
    return not (line.startswith("@@") or line.startswith("diff --git "))


# ------------------------------------------------------- 1. apply_patch DSL
def convert_apply_patch_format(patch: str) -> str:
    """Translate ``*** Begin Patch`` notation into unified diff sections."""
    if not patch.lstrip().startswith("*** Begin Patch"):
        return patch

    lines = _lines(patch)
    out: List[str] = []
    index = 0

    def _at_directive() -> bool:
        return index < len(lines) and lines[index].startswith("*** ")

    while index < len(lines):
        line = lines[index]
        if line.startswith("*** Begin Patch") or line.startswith("*** End Patch"):
            index += 1
            continue
        if line.startswith("*** Add File: "):
            target = line.split(": ", 1)[1].strip()
            content: List[str] = []
            index += 1
            while index < len(lines) and not _at_directive():
                raw = lines[index]
                if raw.startswith("+"):
                    content.append(raw[1:])
                elif not raw.startswith("\\ No newline"):
                    # Some emitters drop the leading "+" on added lines.
                    content.append(raw)
                index += 1
            out.extend([f"diff --git a/{target} b/{target}", "new file mode 100644", "--- /dev/null", f"+++ b/{target}"])
            if content:
                out.append(f"@@ -0,0 +1,{len(content)} @@")
                out.extend(f"+{entry}" for entry in content)
            continue
        if line.startswith("*** Delete File: "):
            target = line.split(": ", 1)[1].strip()
            out.extend([f"diff --git a/{target} b/{target}", "deleted file mode 100644", f"--- a/{target}", "+++ /dev/null"])
            index += 1
            while index < len(lines) and not _at_directive():
                index += 1
            continue
        if line.startswith("*** Update File: "):
            source = line.split(": ", 1)[1].strip()
            target = source
            index += 1
            if index < len(lines) and lines[index].startswith("*** Move to: "):
                target = lines[index].split(": ", 1)[1].strip()
                index += 1
            out.extend([f"diff --git a/{source} b/{target}", f"--- a/{source}", f"+++ b/{target}"])
            while index < len(lines) and not _at_directive():
                raw = lines[index]
                if raw.startswith(("@@", "+", "-", " ")) or raw.startswith("\\ No newline"):
                    out.append(raw)
                elif not raw.strip():
                    out.append(" ")
                index += 1
            continue
        index += 1
    return _join(out)


# ---------------------------------------------------- 2. diff --git headers
def ensure_diff_headers(patch: str) -> str:
    """Synthesize missing ``diff --git`` headers and add/delete mode lines."""
    lines = _lines(patch)
    out: List[str] = []
    header_index: int | None = None
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.startswith("diff --git "):
            header_index = len(out)
            out.append(line)
            index += 1
            continue
        pair = _pair_at(lines, index)
        if pair is None:
            if line.startswith("@@"):
                header_index = None
            out.append(line)
            index += 1
            continue

        if header_index is None:
            old = pair.new if pair.is_add else pair.old
            new = pair.old if pair.is_delete else pair.new
            out.append(f"diff --git a/{old} b/{new}")
            header_index = len(out) - 1
        block = out[header_index + 1:]
        if pair.is_add and not any(entry.startswith("new file mode") for entry in block):
            out.insert(header_index + 1, "new file mode 100644")
        elif pair.is_delete and not any(entry.startswith("deleted file mode") for entry in block):
            out.insert(header_index + 1, "deleted file mode 100644")
        out.extend([line, lines[index + 1]])
        header_index = None
        index += 2
    return _join(out)


# ------------------------------------------------------------ 3. path rewrite
def _relativize(path: str, root: Path | None) -> str:
    if path == DEV_NULL or not path:
        return path
    candidate = Path(path)
    if candidate.is_absolute() and root is not None:
        resolved_root = root.resolve()
        try:
            return candidate.resolve().relative_to(resolved_root).as_posix()
        except ValueError:
            return path
    return path


def rewrite_paths(patch: str, root: Path | str | None = None) -> str:
    """Rewrite absolute, ``FILE:``-style or mismatched paths to root-relative form."""
    lines = _lines(patch)
    root_path = Path(root) if root is not None else None
    for start, end in _section_bounds(lines):
        section = lines[start:end]
        pair = _section_pair(section)
        if pair is None:
            match = _DIFF_HEADER.match(section[0])
            if match:
                old = _relativize(_clean_path(match.group("old")), root_path)
                new = _relativize(_clean_path(match.group("new")), root_path)
                lines[start] = f"diff --git a/{old} b/{new}"
            continue
        old = _relativize(pair.old, root_path)
        new = _relativize(pair.new, root_path)
        lines[start + pair.minus_index] = "--- /dev/null" if old == DEV_NULL else f"--- a/{old}"
        lines[start + pair.minus_index + 1] = "+++ /dev/null" if new == DEV_NULL else f"+++ b/{new}"
        header_old = new if old == DEV_NULL else old
        header_new = old if new == DEV_NULL else new
        lines[start] = f"diff --git a/{header_old} b/{header_new}"
    return _join(lines)


# --------------------------------------------- 4. workspace-aware conversion
def _file_lines(text: str) -> Tuple[List[str], bool]:
    """Split file ``text`` into lines; second item is ``True`` when a final newline is missing."""
    if not text:
        return [], False
    if text.endswith("\n"):
        return text[:-1].split("\n"), False
    return text.split("\n"), True


def _hunk_lines(section: Sequence[str]) -> List[str]:
    body: List[str] = []
    inside = False
    for line in section:
        if line.startswith("@@"):
            inside = True
            continue
        if inside:
            body.append(line)
    return body


def resolve_against_workspace(patch: str, root: Path | str) -> str:
    """Turn modify-hunks on missing files into adds and expand bare deletions."""
    root_path = Path(root)
    lines = _lines(patch)
    bounds = _section_bounds(lines)
    if not bounds:
        return patch
    out: List[str] = lines[: bounds[0][0]]
    for start, end in bounds:
        section = lines[start:end]
        pair = _section_pair(section)
        if pair is None:
            out.extend(section)
            continue
        if not pair.is_add and not pair.is_delete and not (root_path / pair.old).exists():
            content: List[str] = []
            no_eol = False
            after_removal = False
            for line in _hunk_lines(section):
                if line.startswith(_NO_NEWLINE[:2]):
                    no_eol = no_eol or (bool(content) and not after_removal)
                    continue
                after_removal = line.startswith("-")
                if after_removal:
                    continue
                no_eol = False
                content.append(line[1:] if line[:1] in {"+", " "} else line)
            while content and not content[-1].strip():
                content.pop()
            out.extend([f"diff --git a/{pair.new} b/{pair.new}", "new file mode 100644", "--- /dev/null", f"+++ b/{pair.new}"])
            if content:
                out.append(f"@@ -0,0 +1,{len(content)} @@")
                out.extend(f"+{entry}" for entry in content)
                if no_eol:
                    out.append(_NO_NEWLINE)
            continue
        if pair.is_delete and not _hunk_lines(section):
            target = root_path / pair.old
            if target.is_file():
                existing, no_eol = _file_lines(target.read_text(encoding="utf-8", errors="replace"))
                out.extend(section)
                if existing:
                    out.append(f"@@ -1,{len(existing)} +0,0 @@")
                    out.extend(f"-{entry}" for entry in existing)
                    if no_eol:
                        out.append(_NO_NEWLINE)
                continue
        out.extend(section)
    return _join(out)


# ------------------------------------------------------- 5. hunk recounting
def _format_range(start: str, original_count: str | None, actual: int) -> str:
    """Format an ``@@`` range using actual line counts."""
    if original_count is None and actual == 1:
        return start
    return f"{start},{actual}"


def _collect_hunk(lines: Sequence[str], index: int) -> Tuple[List[str], int]:
    """Return the body lines following a hunk header and the next index."""
    body: List[str] = []
    while index < len(lines):
        line = lines[index]
        if not _is_body_line(line) or _pair_at(lines, index) is not None:
            break
        body.append(line)
        index += 1
    while body and not body[-1].strip():
        body.pop()
    return body, index


def _count_body(body: Sequence[str]) -> Tuple[int, int]:
    removed = added = 0
    for line in body:
        if line.startswith("\\"):
            continue
        prefix = line[:1]
        if prefix == "-":
            removed += 1
        elif prefix == "+":
            added += 1
        elif prefix == " " or not line.strip():
            removed += 1
            added += 1
        else:
            # Unprefixed content is treated as an addition.
            added += 1
    return removed, added


def recount_hunk_headers(patch: str) -> Tuple[str, List[str]]:
    """Return ``patch`` with corrected ``@@`` counts plus adjustment notes."""
    lines = _lines(patch)
    out: List[str] = []
    adjustments: List[str] = []
    adding = False
    location = "<unknown>"
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.startswith("diff --git "):
            match = _DIFF_HEADER.match(line)
            location = match.group("new") if match else "<unknown>"
            adding = False
        pair = _pair_at(lines, index)
        if pair is not None:
            adding = pair.is_add
            location = pair.target
            out.extend([line, lines[index + 1]])
            index += 2
            continue
        if not line.startswith("@@"):
            out.append(line)
            index += 1
            continue

        body, next_index = _collect_hunk(lines, index + 1)
        removed, added = _count_body(body)
        match = _HUNK_HEADER.match(line)
        if match is None:
            old_start = "0" if adding or removed == 0 else "1"
            new_start = "0" if added == 0 else "1"
            header = f"@@ -{old_start},{0 if adding else removed} +{new_start},{added} @@"
            adjustments.append(f"{location}: synthesized hunk header {header}")
        else:
            header = (
                f"@@ -{_format_range(match.group('old_start'), match.group('old_count'), removed)} "
                f"+{_format_range(match.group('new_start'), match.group('new_count'), added)} @@"
                f"{match.group('tail')}"
            )
            if header != line:
                adjustments.append(f"{location}: adjusted hunk counts ({line.strip()} -> {header.strip()})")
        out.append(header)
        out.extend(body)
        index = next_index
    return _join(out), adjustments


# ------------------------------------------------------- 6. line prefixes
def fix_missing_prefixes(patch: str) -> str:
    """Prefix bare hunk lines with ``+`` and blank ones with a space."""
    lines = _lines(patch)
    out: List[str] = []
    inside = False
    for index, line in enumerate(lines):
        if line.startswith("@@"):
            inside = True
            out.append(line)
            continue
        if line.startswith("diff --git ") or _pair_at(lines, index) is not None:
            inside = False
        if inside:
            if not line:
                out.append(" ")
                continue
            if line[:1] not in {"+", "-", " ", "\\"}:
                out.append(f"+{line}")
                continue
        out.append(line)
    return _join(out)


# ---------------------------------------------------------- 7. index lines
def strip_invalid_index_lines(patch: str) -> str:
    """Drop ``index`` lines that are not valid object-id ranges."""
    kept = [
        line
        for line in _lines(patch)
        if not line.startswith("index ") or _VALID_INDEX.match(line[len("index "):].strip())
    ]
    return _join(kept)


# ---------------------------------------------------------------- pipeline
def normalize_patch(patch: str, *, root: Path | str | None = None) -> str:
    """Run the repair pipeline over ``patch``."""
    text = convert_apply_patch_format(patch)
    text = ensure_diff_headers(text)
    text = rewrite_paths(text, root)
    if root is not None:
        text = resolve_against_workspace(text, root)
    text, _ = recount_hunk_headers(text)
    text = fix_missing_prefixes(text)
    return strip_invalid_index_lines(text)


def is_placeholder_patch(patch: str) -> bool:
    """Return ``True`` when ``patch`` elides content instead of spelling it out."""
    if "???" in patch or _REST_OF_CODE.search(patch):
        return True
    inside = False
    for line in _lines(patch):
        if line.startswith("@@"):
            inside = True
            continue
        if line.startswith("diff --git "):
            inside = False
            continue
        if inside and _ELLIPSIS_LINE.match(line):
            return True
    return False


# ----------------------------------------------------------- inspection
def split_patch_into_diffs(patch: str) -> List[str]:
    """Split a multi-file diff into one segment per ``diff --git`` section."""
    lines = _lines(patch)
    bounds = _section_bounds(lines)
    if len(bounds) <= 1:
        return [_join(lines)] if lines else []
    return [_join(lines[start:end]) for start, end in bounds]


def touched_files(patch: str) -> List[str]:
    """Return target paths (``+++ b/`` operands, or ``--- a/`` for deletions)."""
    lines = _lines(patch)
    seen: Dict[str, None] = {}
    for index in range(len(lines)):
        pair = _pair_at(lines, index)
        if pair is None:
            continue
        target = pair.target
        if target and target != DEV_NULL:
            seen.setdefault(target, None)
    return list(seen)


def is_add_segment(segment: str) -> bool:
    pair = _section_pair(_lines(segment))
    return bool(pair and pair.is_add)


def parse_added_file_contents(patch: str) -> Dict[str, str]:
    """Collect the full contents of files created by add sections."""
    lines = _lines(patch)
    additions: Dict[str, str] = {}
    for start, end in _section_bounds(lines) or [(0, len(lines))]:
        section = lines[start:end]
        pair = _section_pair(section)
        if pair is None or not pair.is_add:
            continue
        content: List[str] = []
        no_eol = False
        for line in _hunk_lines(section):
            if line.startswith("\\"):
                no_eol = bool(content)
                continue
            if line.startswith("+"):
                content.append(line[1:])
        text = "\n".join(content)
        if content and not no_eol:
            text += "\n"
        additions[pair.new] = text
    return additions


def build_replacement_diff(path: str, old_text: str, new_text: str) -> str:
    """Render a diff that replaces the whole of ``path`` with ``new_text``."""
    old_lines, old_no_eol = _file_lines(old_text)
    new_lines, new_no_eol = _file_lines(new_text)
    old_range = f"-1,{len(old_lines)}" if old_lines else "-0,0"
    new_range = f"+1,{len(new_lines)}" if new_lines else "+0,0"
    out = [f"diff --git a/{path} b/{path}", f"--- a/{path}", f"+++ b/{path}", f"@@ {old_range} {new_range} @@"]
    out.extend(f"-{line}" for line in old_lines)
    if old_no_eol:
        out.append(_NO_NEWLINE)
    out.extend(f"+{line}" for line in new_lines)
    if new_no_eol:
        out.append(_NO_NEWLINE)
    return _join(out)


def validate_patch_paths(paths: Iterable[str]) -> None:
    """Enforce path safety rules for diff entries."""
    for raw in paths:
        path = Path(raw)
        if path.is_absolute():
            raise PatchError(f"Absolute paths are not permitted in patches: {raw}")
        parts = list(path.parts)
        if any(part == ".." for part in parts):
            raise PatchError(f"Path escaping detected in patch: {raw}")
        if parts and parts[0] == ".git":
            raise PatchError("Patches may not target the .git directory.")


__all__ = [
    "PatchError",
    "build_replacement_diff",
    "convert_apply_patch_format",
    "ensure_diff_headers",
    "fix_missing_prefixes",
    "is_add_segment",
    "is_placeholder_patch",
    "normalize_patch",
    "parse_added_file_contents",
    "recount_hunk_headers",
    "resolve_against_workspace",
    "rewrite_paths",
    "split_patch_into_diffs",
    "strip_invalid_index_lines",
    "touched_files",
    "validate_patch_paths",
]
