from __future__ import annotations

from pathlib import Path

from taskforge.memory.schema import Task
from taskforge.prompts import (
    PATCH_ONLY_INSTRUCTION,
    build_task_prompt,
    estimate_tokens,
    gather_doc_context,
    with_patch_only_instruction,
    with_test_feedback,
)


def _task(**metadata) -> Task:
    return Task(id="id-T-1", key="T-1", title="Add login", description="Wire the form.", metadata=metadata)


def test_prompt_lists_task_details() -> None:
    task = _task(acceptance_criteria=["form submits", "errors shown"])

    prompt = build_task_prompt(task, dependency_keys=["T-0"], allowed_files=["src/login.py"], doc_summary="- [doc] README.md")

    assert prompt.startswith("Task T-1: Add login")
    assert "Acceptance: form submits; errors shown" in prompt
    assert "Depends on: T-0" in prompt
    assert "Allowed files: src/login.py" in prompt
    assert "- [doc] README.md" in prompt
    assert "```patch```" in prompt


def test_sync_and_conflict_notes_lead_the_prompt() -> None:
    prompt = build_task_prompt(_task(), merge_conflicts=["a.py", "b.py"], remote_sync_note="Remote is ahead.")

    first, second = prompt.splitlines()[:2]
    assert first == "Remote is ahead."
    assert second.startswith("Merge conflicts detected in: a.py, b.py.")
    assert "Allowed files: (not constrained)" in prompt


def test_retry_variants_extend_the_prompt() -> None:
    base = build_task_prompt(_task())

    assert with_patch_only_instruction(base).endswith(PATCH_ONLY_INSTRUCTION)
    feedback = with_test_feedback(base, 2, "AssertionError: boom\n")
    assert "## Test Failures (attempt 2)" in feedback
    assert feedback.endswith("AssertionError: boom")


def test_doc_context_excerpts_local_files(tmp_path: Path) -> None:
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "guide.md").write_text("# Guide\n\nUse   the  API.\n", encoding="utf-8")

    summary, warnings = gather_doc_context(
        tmp_path, ["docs/guide.md", "https://example.com/spec", "docs/missing.md", "../outside.md"]
    )

    assert summary.splitlines() == ["- [doc] docs/guide.md: # Guide Use the API.", "- [link] https://example.com/spec"]
    assert warnings == ["Doc link not found: docs/missing.md", "Doc link outside workspace ignored: ../outside.md"]


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
