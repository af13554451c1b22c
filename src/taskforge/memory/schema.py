"""Typed records tracked by the taskforge workspace store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class TaskStatus(str, Enum):
    """Lifecycle states for a task."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    READY_TO_REVIEW = "ready_to_review"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Lifecycle states for task runs and command runs."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class JobState(str, Enum):
    """Aggregate state of a work job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Task(RecordModel):
    """Backlog item the orchestrator works on."""

    id: str
    key: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    story_points: Optional[float] = None
    priority: int = 0
    project_key: str = ""
    epic_key: Optional[str] = None
    story_key: Optional[str] = None
    dependency_keys: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    vcs_branch: Optional[str] = None
    vcs_base_branch: Optional[str] = None
    vcs_last_commit_sha: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def _string_list(self, key: str) -> List[str]:
        value = self.metadata.get(key)
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if str(item).strip()]

    @property
    def allowed_files(self) -> List[str]:
        return self._string_list("files")

    @property
    def test_commands(self) -> List[str]:
        return self._string_list("tests")

    @property
    def doc_links(self) -> List[str]:
        return self._string_list("doc_links")

    @property
    def acceptance_criteria(self) -> List[str]:
        return self._string_list("acceptance_criteria")


class TaskRun(RecordModel):
    """One attempt at a task."""

    id: str
    task_id: str
    job_id: Optional[str] = None
    command_run_id: Optional[str] = None
    command: str = "work-on-tasks"
    agent_id: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    run_context: Dict[str, Any] = Field(default_factory=dict)
    git_branch: Optional[str] = None
    git_base_branch: Optional[str] = None
    git_commit_sha: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    story_points_at_run: Optional[float] = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None


class TaskLock(RecordModel):
    """Advisory lock row; at most one unexpired lock exists per task."""

    task_id: str
    holder_run_id: str
    job_id: Optional[str] = None
    acquired_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())


class TaskLog(RecordModel):
    """Sequence-numbered structured log line for a task run."""

    id: str
    task_run_id: str
    sequence: int
    level: str = "info"
    source: str = ""
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class CommandRun(RecordModel):
    """A single CLI command invocation."""

    id: str
    command_name: str
    project_key: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    payload: Dict[str, Any] = Field(default_factory=dict)
    error_summary: Optional[str] = None
    sp_processed: Optional[float] = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None


class Job(RecordModel):
    """Long-running unit of work spawned by a command run."""

    id: str
    job_type: str
    command_run_id: Optional[str] = None
    project_key: Optional[str] = None
    status: JobState = JobState.QUEUED
    payload: Dict[str, Any] = Field(default_factory=dict)
    total_items: Optional[int] = None
    processed_items: int = 0
    error_summary: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None


class JobCheckpoint(RecordModel):
    """Durable progress marker for a job."""

    id: str
    job_id: str
    stage: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class TokenUsage(RecordModel):
    """Prompt/completion token estimate for one agent call."""

    id: str
    job_id: Optional[str] = None
    command_run_id: Optional[str] = None
    task_run_id: Optional[str] = None
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    command_name: str = "work-on-tasks"
    phase: str = "agent"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class TaskComment(RecordModel):
    """Human-readable note attached to a task, e.g. why it is blocked."""

    id: str
    task_id: str
    task_run_id: Optional[str] = None
    job_id: Optional[str] = None
    author: str = "taskforge"
    category: str = "comment"
    body: str
    created_at: datetime = Field(default_factory=utc_now)


class AgentRating(RecordModel):
    """Quality score recorded for an agent after a task attempt."""

    id: str
    task_key: str
    command_name: str
    agent_id: str
    score: float
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "AgentRating",
    "CommandRun",
    "Job",
    "JobCheckpoint",
    "JobState",
    "RecordModel",
    "RunStatus",
    "Task",
    "TaskComment",
    "TaskLock",
    "TaskLog",
    "TaskRun",
    "TaskStatus",
    "TokenUsage",
    "utc_now",
]
