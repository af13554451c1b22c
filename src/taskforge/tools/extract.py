"""Turn free-form agent output into patches and whole-file blocks."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Tuple

from .patch import is_placeholder_patch

LOGGER = logging.getLogger(__name__)

_FENCE = re.compile(
    r"^[ \t]*```[ \t]*(?P<lang>[\w.+-]*)[^\n]*\n(?P<body>.*?)^[ \t]*```[ \t]*$",
    re.MULTILINE | re.DOTALL,
)
_FILE_MARKER = re.compile(
    r"^[\s*#>-]*FILE:\s*[`*\"']*(?P<path>[^`*\"'\s]+?)[`*_\"']*\s*$",
    re.IGNORECASE,
)
_UNIFIED_PAIR = re.compile(r"^--- .+\n\+\+\+ .+$", re.MULTILINE)
_BEGIN_PATCH = re.compile(r"^\*\*\* Begin Patch\s*$.*?^\*\*\* End Patch\s*$", re.MULTILINE | re.DOTALL)
_DIFF_LINE_PREFIXES = (
    "diff --git ",
    "index ",
    "new file mode",
    "deleted file mode",
    "old mode",
    "new mode",
    "similarity index",
    "rename from",
    "rename to",
    "--- ",
    "+++ ",
    "@@",
    "+",
    "-",
    " ",
    "\\",
)
_PATCH_LANGS = {"patch", "diff", "udiff"}
_PATCH_KEYS = {"patch", "patches", "diff", "diffs", "unified_diff"}
_FILE_KEYS = {"files", "file_blocks", "changes", "file_changes"}
_PATH_KEYS = ("path", "file", "filename", "file_path")
_CONTENT_KEYS = ("content", "contents", "text", "body")


@dataclass(slots=True)
class FileBlock:
    """Whole-file payload announced with a ``FILE: <path>`` marker."""

    path: str
    content: str


@dataclass(slots=True)
class ExtractedChange:
    """Patches and file blocks recovered from one agent response."""

    patches: List[str] = field(default_factory=list)
    file_blocks: List[FileBlock] = field(default_factory=list)
    json_detected: bool = False
    placeholders_skipped: int = 0

    @property
    def empty(self) -> bool:
        return not self.patches and not self.file_blocks


def _looks_like_diff(text: str) -> bool:
    return (
        "diff --git " in text
        or text.lstrip().startswith("*** Begin Patch")
        or bool(_UNIFIED_PAIR.search(text))
    )


def _with_newline(text: str) -> str:
    return text if not text or text.endswith("\n") else f"{text}\n"


def _marker_before(output: str, position: int) -> str | None:
    """Return the ``FILE:`` path on the last non-blank line before ``position``."""
    preceding = output[:position].rstrip().splitlines()
    if not preceding:
        return None
    match = _FILE_MARKER.match(preceding[-1])
    return match.group("path") if match else None


def _fenced_blocks(output: str) -> Iterator[Tuple[str, str, str | None, Tuple[int, int]]]:
    for match in _FENCE.finditer(output):
        yield (
            match.group("lang").lower(),
            match.group("body"),
            _marker_before(output, match.start()),
            match.span(),
        )


def _unfenced_diffs(text: str) -> List[str]:
    """Collect ``diff --git`` runs that are not wrapped in a code fence."""
    diffs: List[str] = []
    current: List[str] = []
    for line in text.splitlines():
        if line.startswith("diff --git "):
            if current and not current[0].startswith("diff --git "):
                current = []
            current.append(line)
            continue
        if current and (not line.strip() or line.startswith(_DIFF_LINE_PREFIXES)):
            current.append(line)
            continue
        if current:
            diffs.append("\n".join(current).strip("\n"))
            current = []
    if current:
        diffs.append("\n".join(current).strip("\n"))
    return [entry for entry in diffs if entry.startswith("diff --git ")]


def _strip_code_fence(payload: str) -> str:
    text = payload.strip()
    if not text.startswith("```"):
        return text
    lines = text.splitlines()
    if lines and lines[0].startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


def _parse_json(output: str) -> Any:
    text = _strip_code_fence(output)
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        pass
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("no JSON object found")
    return json.loads(text[start : end + 1])


def _file_entry(value: Any) -> FileBlock | None:
    if not isinstance(value, dict):
        return None
    path = next((value[key] for key in _PATH_KEYS if isinstance(value.get(key), str)), None)
    content = next((value[key] for key in _CONTENT_KEYS if isinstance(value.get(key), str)), None)
    if not path or content is None:
        return None
    return FileBlock(path=path.strip(), content=_with_newline(content))


def _walk_json(value: Any, result: ExtractedChange, *, key: str | None = None) -> None:
    if isinstance(value, str):
        if key in _PATCH_KEYS or (key in _FILE_KEYS and _looks_like_diff(value)):
            if _looks_like_diff(value):
                result.patches.append(_with_newline(value.strip("\n")))
        return
    if isinstance(value, list):
        for item in value:
            _walk_json(item, result, key=key)
        return
    if not isinstance(value, dict):
        return
    block = _file_entry(value)
    if block is not None and key in _FILE_KEYS | _PATCH_KEYS | {None}:
        result.file_blocks.append(block)
        return
    for child_key, child in value.items():
        lowered = str(child_key).lower()
        if lowered in _FILE_KEYS and isinstance(child, dict):
            # {"files": {"path": "content"}} mapping form.
            for path, content in child.items():
                if isinstance(content, str):
                    result.file_blocks.append(FileBlock(path=str(path).strip(), content=_with_newline(content)))
                else:
                    _walk_json(content, result, key=lowered)
            continue
        _walk_json(child, result, key=lowered)


def extract_changes(output: str) -> ExtractedChange:
    """Scan agent ``output`` for patches and ``FILE:`` blocks."""

    result = ExtractedChange()
    if not output or not output.strip():
        return result

    candidates: List[str] = []
    consumed: List[Tuple[int, int]] = []
    for lang, body, marker, span in _fenced_blocks(output):
        if marker and not _looks_like_diff(body):
            result.file_blocks.append(FileBlock(path=marker, content=_with_newline(body.rstrip("\n"))))
            consumed.append(span)
            continue
        if lang in _PATCH_LANGS or _looks_like_diff(body):
            candidates.append(body)
            consumed.append(span)

    remainder = output
    for start, end in reversed(consumed):
        remainder = remainder[:start] + remainder[end:]
    for match in _BEGIN_PATCH.finditer(remainder):
        candidates.append(match.group(0))
    remainder = _BEGIN_PATCH.sub("", remainder)
    candidates.extend(_unfenced_diffs(remainder))

    for candidate in candidates:
        text = candidate.strip("\n")
        if not text.strip():
            continue
        if is_placeholder_patch(text):
            result.placeholders_skipped += 1
            LOGGER.info("Skipping placeholder patch from agent output")
            continue
        result.patches.append(_with_newline(text))

    if not result.empty or result.placeholders_skipped:
        return result

    try:
        payload = _parse_json(output)
    except ValueError:
        return result
    result.json_detected = True
    _walk_json(payload, result)
    kept: List[str] = []
    for patch in result.patches:
        if is_placeholder_patch(patch):
            result.placeholders_skipped += 1
            continue
        kept.append(patch)
    result.patches = kept
    return result


__all__ = ["ExtractedChange", "FileBlock", "extract_changes"]
