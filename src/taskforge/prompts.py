"""Prompt templates and helpers for task attempts."""

from __future__ import annotations

import math
from pathlib import Path
from typing import List, Sequence, Tuple

from .memory.schema import Task

OUTPUT_FORMAT_INSTRUCTION = (
    "Produce a concise plan and a patch in unified diff fenced with ```patch```. "
    "For brand new files you may instead emit `FILE: <path>` followed by a fenced block with the full content."
)

PATH_GUIDANCE = (
    "Verify target paths against the current workspace; do not assume generated or hashed file names exist. "
    "If a path is missing, emit a new-file diff with full content instead of editing a non-existent file "
    "so git apply succeeds."
)

PATCH_ONLY_INSTRUCTION = (
    "ONLY OUTPUT the code changes as unified diff inside ```patch``` fences. "
    "Do not include analysis or narration."
)

DOC_EXCERPT_CHARS = 240


def estimate_tokens(text: str) -> int:
    """Rough token estimate used for usage accounting: one token per four characters."""
    return max(1, math.ceil(len(text or "") / 4))


def gather_doc_context(root: Path | str, doc_links: Sequence[str]) -> Tuple[str, List[str]]:
    """Summarize ``doc_links``; local files contribute a short excerpt."""
    root_path = Path(root)
    parts: List[str] = []
    warnings: List[str] = []
    for link in doc_links:
        if "://" in link:
            parts.append(f"- [link] {link}")
            continue
        candidate = (root_path / link).resolve()
        try:
            candidate.relative_to(root_path.resolve())
        except ValueError:
            warnings.append(f"Doc link outside workspace ignored: {link}")
            continue
        if not candidate.is_file():
            warnings.append(f"Doc link not found: {link}")
            continue
        excerpt = " ".join(candidate.read_text(encoding="utf-8", errors="replace").split())[:DOC_EXCERPT_CHARS]
        parts.append(f"- [doc] {link}" + (f": {excerpt}" if excerpt else ""))
    return "\n".join(parts), warnings


def render_merge_conflict_note(conflicts: Sequence[str]) -> str:
    if not conflicts:
        return ""
    return (
        f"Merge conflicts detected in: {', '.join(conflicts)}. Resolve these conflicts before any other task work. "
        "Remove conflict markers and ensure the files are consistent."
    )


def build_task_prompt(
    task: Task,
    *,
    dependency_keys: Sequence[str] = (),
    allowed_files: Sequence[str] = (),
    doc_summary: str = "",
    merge_conflicts: Sequence[str] = (),
    remote_sync_note: str | None = None,
) -> str:
    """Render the task prompt; sync and conflict notes lead when present."""
    acceptance = "; ".join(task.acceptance_criteria)
    epic = task.epic_key or "n/a"
    story = task.story_key or "n/a"
    lines = [
        f"Task {task.key}: {task.title}",
        f"Description: {task.description or '(none)'}",
        f"Epic: {epic}, Story: {story}",
        f"Acceptance: {acceptance or 'Follow the task description and existing project conventions.'}",
        f"Depends on: {', '.join(dependency_keys)}" if dependency_keys else "No open dependencies.",
        f"Allowed files: {', '.join(allowed_files) if allowed_files else '(not constrained)'}",
        f"Doc context:\n{doc_summary or '(no linked documents)'}",
        PATH_GUIDANCE,
        OUTPUT_FORMAT_INSTRUCTION,
    ]
    body = "\n".join(lines)
    notes = [note for note in (remote_sync_note, render_merge_conflict_note(merge_conflicts)) if note]
    if notes:
        return "\n".join(notes) + "\n\n" + body
    return body


def with_patch_only_instruction(prompt: str) -> str:
    return f"{prompt}\n\n{PATCH_ONLY_INSTRUCTION}"


def with_test_feedback(prompt: str, attempt: int, summary: str) -> str:
    """Append the previous attempt's failing test output."""
    return (
        f"{prompt}\n\n## Test Failures (attempt {attempt})\n"
        "The previous changes were applied but the tests failed. Fix the failures below and output "
        "only the additional changes needed on top of the current workspace.\n"
        f"{summary.strip() or '(no output captured)'}"
    )


__all__ = [
    "OUTPUT_FORMAT_INSTRUCTION",
    "PATCH_ONLY_INSTRUCTION",
    "build_task_prompt",
    "estimate_tokens",
    "gather_doc_context",
    "render_merge_conflict_note",
    "with_patch_only_instruction",
    "with_test_feedback",
]
