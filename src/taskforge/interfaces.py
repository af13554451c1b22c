"""Collaborator contracts consumed by the orchestrator.

The orchestrator only talks to these protocols.  :class:`~taskforge.memory.store.WorkspaceStore`
implements the lock, state and bookkeeping contracts; tests substitute their own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Protocol, runtime_checkable

from .memory.schema import (
    CommandRun,
    Job,
    JobCheckpoint,
    JobState,
    RunStatus,
    Task,
    TaskComment,
    TaskLock,
    TaskLog,
    TaskRun,
    TaskStatus,
    TokenUsage,
)


# ---------------------------------------------------------------- selection
@dataclass(slots=True)
class SelectionFilters:
    project_key: str | None = None
    epic_key: str | None = None
    story_key: str | None = None
    task_keys: List[str] = field(default_factory=list)
    statuses: List[TaskStatus] = field(default_factory=list)
    limit: int | None = None


@dataclass(slots=True)
class SelectedTask:
    task: Task
    dependency_keys: List[str] = field(default_factory=list)
    blocked_reason: str | None = None


@dataclass(slots=True)
class SelectionPlan:
    """Ordered tasks to work on plus the ones selection refused."""

    ordered: List[SelectedTask] = field(default_factory=list)
    blocked: List[SelectedTask] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@runtime_checkable
class TaskSelector(Protocol):
    def select_tasks(self, filters: SelectionFilters) -> SelectionPlan: ...


# -------------------------------------------------------------- task state
@runtime_checkable
class TaskStateService(Protocol):
    def mark_blocked(self, task: Task, reason: str) -> None: ...

    def mark_ready_to_review(self, task: Task, metadata: Mapping[str, Any] | None = None) -> None: ...

    def transition_to_in_progress(self, task: Task) -> None: ...


# ------------------------------------------------------------------- locks
@dataclass(slots=True)
class LockResult:
    acquired: bool
    lock: TaskLock | None = None


@runtime_checkable
class LockStore(Protocol):
    def try_acquire_lock(
        self,
        task_id: str,
        holder_run_id: str,
        job_id: str | None,
        ttl_seconds: float,
    ) -> LockResult: ...

    def refresh_lock(self, task_id: str, holder_run_id: str, ttl_seconds: float) -> bool: ...

    def release_lock(self, task_id: str, holder_run_id: str) -> bool: ...


# ------------------------------------------------------------- bookkeeping
@runtime_checkable
class JobBookkeeper(Protocol):
    def start_command_run(
        self,
        command_name: str,
        project_key: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> CommandRun: ...

    def finish_command_run(
        self,
        command_run_id: str,
        status: RunStatus,
        *,
        error_summary: str | None = None,
        sp_processed: float | None = None,
    ) -> CommandRun: ...

    def start_job(
        self,
        job_type: str,
        command_run_id: str | None,
        project_key: str | None = None,
        payload: Mapping[str, Any] | None = None,
        *,
        total_items: int | None = None,
    ) -> Job: ...

    def update_job_status(
        self,
        job_id: str,
        status: JobState,
        *,
        processed_items: int | None = None,
        total_items: int | None = None,
        error_summary: str | None = None,
    ) -> Job: ...

    def write_checkpoint(self, job_id: str, stage: str, details: Mapping[str, Any] | None = None) -> JobCheckpoint: ...

    def record_token_usage(self, usage: TokenUsage) -> None: ...

    def append_task_log(
        self,
        task_run_id: str,
        sequence: int,
        message: str,
        *,
        source: str = "",
        level: str = "info",
        details: Mapping[str, Any] | None = None,
    ) -> TaskLog: ...

    def create_task_run(self, run: TaskRun) -> TaskRun: ...

    def update_task_run(self, run_id: str, **fields: Any) -> TaskRun: ...

    def finish_task_run(self, run_id: str, status: RunStatus, **fields: Any) -> TaskRun: ...

    def add_task_comment(self, comment: TaskComment) -> None: ...

    def update_task(self, task_id: str, **fields: Any) -> Task: ...


# ------------------------------------------------------------------ rating
@runtime_checkable
class AgentRater(Protocol):
    def rate(self, task_key: str, command_name: str, agent_id: str) -> Optional[float]: ...


__all__ = [
    "AgentRater",
    "JobBookkeeper",
    "LockResult",
    "LockStore",
    "SelectedTask",
    "SelectionFilters",
    "SelectionPlan",
    "TaskSelector",
    "TaskStateService",
]
