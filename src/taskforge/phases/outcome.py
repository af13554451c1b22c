"""Tagged phase outcomes and the per-attempt mutable state."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

from ..interfaces import SelectedTask
from ..memory.schema import RunStatus, Task, TaskRun
from ..tools.extract import ExtractedChange
from ..tools.git_flow import BranchInfo
from . import TaskPhase


class OutcomeKind(str, Enum):
    CONTINUE = "continue"
    BLOCKED = "blocked"
    FAILED = "failed"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"


@dataclass(slots=True)
class PhaseOutcome:
    """Result of one phase handler.

    ``CONTINUE`` carries the next phase; every other kind is terminal and
    carries a machine-checkable reason (or the success notes).
    """

    kind: OutcomeKind
    next_phase: TaskPhase | None = None
    reason: str | None = None
    phase: TaskPhase | None = None

    @classmethod
    def advance(cls, next_phase: TaskPhase) -> "PhaseOutcome":
        return cls(OutcomeKind.CONTINUE, next_phase=next_phase)

    @classmethod
    def blocked(cls, reason: str, *, phase: TaskPhase | None = None) -> "PhaseOutcome":
        return cls(OutcomeKind.BLOCKED, reason=reason, phase=phase)

    @classmethod
    def failed(cls, reason: str, *, phase: TaskPhase | None = None) -> "PhaseOutcome":
        return cls(OutcomeKind.FAILED, reason=reason, phase=phase)

    @classmethod
    def skipped(cls, reason: str, *, phase: TaskPhase | None = None) -> "PhaseOutcome":
        return cls(OutcomeKind.SKIPPED, reason=reason, phase=phase)

    @classmethod
    def succeeded(cls, notes: str) -> "PhaseOutcome":
        return cls(OutcomeKind.SUCCEEDED, reason=notes, phase=TaskPhase.FINALIZE)

    @property
    def terminal(self) -> bool:
        return self.kind is not OutcomeKind.CONTINUE

    @property
    def result_status(self) -> str:
        """Status reported to callers; only selection-time blocks surface as ``blocked``."""
        if self.kind is OutcomeKind.BLOCKED:
            return "blocked" if self.phase is TaskPhase.SELECTION else "failed"
        if self.kind is OutcomeKind.CONTINUE:
            raise ValueError("A continue outcome has no result status.")
        return self.kind.value

    @property
    def run_status(self) -> RunStatus:
        if self.kind is OutcomeKind.SUCCEEDED:
            return RunStatus.SUCCEEDED
        if self.kind is OutcomeKind.SKIPPED:
            return RunStatus.SUCCEEDED if self.reason == "dry_run" else RunStatus.CANCELLED
        return RunStatus.FAILED


@dataclass(slots=True)
class AttemptState:
    """Everything one task attempt accumulates while moving through the phases."""

    selected: SelectedTask
    run: TaskRun
    job_id: str
    command_run_id: str
    agent_id: str
    branch_info: BranchInfo | None = None
    allowed_files: List[str] = field(default_factory=list)
    touched: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    soft_failures: List[str] = field(default_factory=list)
    prompt: str = ""
    system_prompt: str = ""
    prompt_estimate: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    extracted: ExtractedChange | None = None
    patch_applied: bool = False
    test_invocations: int = 0
    merge_status: str = "skipped"
    head_sha: str | None = None
    lock_acquired: bool = False
    current_phase: TaskPhase = TaskPhase.SELECTION
    phase_started: Dict[TaskPhase, float] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    started_monotonic: float = field(default_factory=time.monotonic)
    _log_sequence: int = 0

    @property
    def task(self) -> Task:
        return self.selected.task

    def next_log_seq(self) -> int:
        self._log_sequence += 1
        return self._log_sequence

    def add_touched(self, paths: List[str]) -> None:
        for path in paths:
            if path not in self.touched:
                self.touched.append(path)


__all__ = ["AttemptState", "OutcomeKind", "PhaseOutcome"]
