"""SQLite-backed workspace store: tasks, runs, advisory locks and job bookkeeping."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import yaml

from ..interfaces import LockResult
from ..telemetry import emit_event
from .schema import (
    AgentRating,
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
    utc_now,
)

DEFAULT_DB_PATH = Path(".taskforge/taskforge.sqlite")
LOGGER = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when a store operation violates a record invariant."""


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    if data is None:
        serialisable = default
    else:
        if isinstance(data, set):
            serialisable = list(data)
        else:
            serialisable = data
    return json.dumps(serialisable, default=str)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


def _new_id() -> str:
    return uuid.uuid4().hex


_TASK_RUN_COLUMNS = (
    "job_id",
    "command_run_id",
    "command",
    "agent_id",
    "status",
    "run_context",
    "git_branch",
    "git_base_branch",
    "git_commit_sha",
    "prompt_tokens",
    "completion_tokens",
    "story_points_at_run",
    "started_at",
    "finished_at",
)


class WorkspaceStore:
    """SQLite persistence for the orchestrator.

    Implements the lock, task-state and job bookkeeping contracts from
    :mod:`taskforge.interfaces`.  Lock mutations run inside ``BEGIN IMMEDIATE``
    transactions so concurrent orchestrator processes sharing the database
    serialise on the write lock.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH, *, timeout: float = 30.0) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "WorkspaceStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly in `_transaction`.
        connection = sqlite3.connect(str(self.db_path), timeout=self._timeout, isolation_level=None)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        connection.execute("PRAGMA journal_mode = WAL")
        return connection

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Workspace store is closed.")
        return self._conn

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, root: Path | str | None = None) -> "WorkspaceStore":
        paths = config.get("paths") or {}
        db_path = Path(paths.get("db_path") or DEFAULT_DB_PATH)
        if not db_path.is_absolute() and root is not None:
            db_path = Path(root) / db_path
        return cls(db_path)

    def _bootstrap(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                key TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                status TEXT NOT NULL,
                story_points REAL,
                priority INTEGER NOT NULL DEFAULT 0,
                project_key TEXT NOT NULL,
                epic_key TEXT,
                story_key TEXT,
                dependency_keys TEXT NOT NULL,
                metadata TEXT NOT NULL,
                vcs_branch TEXT,
                vcs_base_branch TEXT,
                vcs_last_commit_sha TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_tasks_status_priority
                ON tasks(status, priority);

            CREATE TABLE IF NOT EXISTS command_runs (
                id TEXT PRIMARY KEY,
                command_name TEXT NOT NULL,
                project_key TEXT,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                error_summary TEXT,
                sp_processed REAL,
                started_at TEXT NOT NULL,
                finished_at TEXT
            );

            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                job_type TEXT NOT NULL,
                command_run_id TEXT,
                project_key TEXT,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                total_items INTEGER,
                processed_items INTEGER NOT NULL DEFAULT 0,
                error_summary TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                finished_at TEXT,
                FOREIGN KEY(command_run_id) REFERENCES command_runs(id) ON DELETE SET NULL
            );

            CREATE TABLE IF NOT EXISTS job_checkpoints (
                id TEXT PRIMARY KEY,
                job_id TEXT NOT NULL,
                stage TEXT NOT NULL,
                details TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(job_id) REFERENCES jobs(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_job_checkpoints_job
                ON job_checkpoints(job_id, created_at);

            CREATE TABLE IF NOT EXISTS task_runs (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                job_id TEXT,
                command_run_id TEXT,
                command TEXT NOT NULL,
                agent_id TEXT,
                status TEXT NOT NULL,
                run_context TEXT NOT NULL,
                git_branch TEXT,
                git_base_branch TEXT,
                git_commit_sha TEXT,
                prompt_tokens INTEGER NOT NULL DEFAULT 0,
                completion_tokens INTEGER NOT NULL DEFAULT 0,
                story_points_at_run REAL,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_task_runs_task
                ON task_runs(task_id, started_at);

            CREATE TABLE IF NOT EXISTS task_locks (
                task_id TEXT PRIMARY KEY,
                holder_run_id TEXT NOT NULL,
                job_id TEXT,
                acquired_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS task_logs (
                id TEXT PRIMARY KEY,
                task_run_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                level TEXT NOT NULL,
                source TEXT NOT NULL,
                message TEXT NOT NULL,
                details TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_task_logs_run
                ON task_logs(task_run_id, sequence);

            CREATE TABLE IF NOT EXISTS token_usage (
                id TEXT PRIMARY KEY,
                job_id TEXT,
                command_run_id TEXT,
                task_run_id TEXT,
                task_id TEXT,
                agent_id TEXT,
                command_name TEXT NOT NULL,
                phase TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS task_comments (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                task_run_id TEXT,
                job_id TEXT,
                author TEXT NOT NULL,
                category TEXT NOT NULL,
                body TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS agent_ratings (
                id TEXT PRIMARY KEY,
                task_key TEXT NOT NULL,
                command_name TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                score REAL NOT NULL,
                details TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    # Task operations -----------------------------------------------------------------
    def upsert_task(self, task: Task) -> Task:
        record = task.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self.conn.execute(
                """
                INSERT INTO tasks (
                    id, key, title, description, status, story_points, priority, project_key,
                    epic_key, story_key, dependency_keys, metadata, vcs_branch, vcs_base_branch,
                    vcs_last_commit_sha, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    key = excluded.key,
                    title = excluded.title,
                    description = excluded.description,
                    status = excluded.status,
                    story_points = excluded.story_points,
                    priority = excluded.priority,
                    project_key = excluded.project_key,
                    epic_key = excluded.epic_key,
                    story_key = excluded.story_key,
                    dependency_keys = excluded.dependency_keys,
                    metadata = excluded.metadata,
                    vcs_branch = excluded.vcs_branch,
                    vcs_base_branch = excluded.vcs_base_branch,
                    vcs_last_commit_sha = excluded.vcs_last_commit_sha,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.key,
                    record.title,
                    record.description,
                    record.status.value,
                    record.story_points,
                    record.priority,
                    record.project_key,
                    record.epic_key,
                    record.story_key,
                    _dump_json(record.dependency_keys, default=[]),
                    _dump_json(record.metadata, default={}),
                    record.vcs_branch,
                    record.vcs_base_branch,
                    record.vcs_last_commit_sha,
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )
        return record

    def get_task(self, task_id: str) -> Optional[Task]:
        row = self.conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def get_task_by_key(self, key: str) -> Optional[Task]:
        row = self.conn.execute("SELECT * FROM tasks WHERE key = ?", (key,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(
        self,
        *,
        project_key: Optional[str] = None,
        epic_key: Optional[str] = None,
        story_key: Optional[str] = None,
        keys: Optional[Sequence[str]] = None,
        statuses: Optional[Sequence[TaskStatus]] = None,
    ) -> List[Task]:
        query = "SELECT * FROM tasks"
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (("project_key", project_key), ("epic_key", epic_key), ("story_key", story_key)):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if keys:
            clauses.append(f"key IN ({','.join('?' for _ in keys)})")
            params.extend(keys)
        if statuses:
            clauses.append(f"status IN ({','.join('?' for _ in statuses)})")
            params.extend(TaskStatus(status).value for status in statuses)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY priority ASC, key ASC"
        return [self._row_to_task(row) for row in self.conn.execute(query, params).fetchall()]

    def update_task(self, task_id: str, **fields: Any) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise StoreError(f"Unknown task: {task_id}")
        record = task.model_copy(update=fields)
        return self.upsert_task(Task.model_validate(record.model_dump()))

    def load_tasks_file(self, path: Path | str) -> List[Task]:
        """Import tasks from a YAML file (a list, or a mapping with a ``tasks`` list)."""

        with Path(path).open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
        defaults: Dict[str, Any] = {}
        entries = payload
        if isinstance(payload, Mapping):
            entries = payload.get("tasks") or []
            if payload.get("project"):
                defaults["project_key"] = str(payload["project"])
        if not isinstance(entries, list):
            raise StoreError(f"Task file {path} must contain a list of tasks.")

        imported: List[Task] = []
        for raw in entries:
            if not isinstance(raw, Mapping) or not raw.get("key"):
                raise StoreError(f"Task entries need at least a key: {raw!r}")
            data = {**defaults, **dict(raw)}
            if "depends_on" in data:
                data["dependency_keys"] = data.pop("depends_on") or []
            existing = self.get_task_by_key(str(data["key"]))
            data.setdefault("id", existing.id if existing else _new_id())
            data.setdefault("title", str(data["key"]))
            if existing is not None:
                data.setdefault("status", existing.status)
                data.setdefault("created_at", existing.created_at)
            imported.append(self.upsert_task(Task.model_validate(data)))
        LOGGER.info("Imported %d task(s) from %s", len(imported), path)
        return imported

    # Task state transitions ------------------------------------------------------------
    def mark_blocked(self, task: Task, reason: str) -> None:
        metadata = {**task.metadata, "blocked_reason": reason}
        self.update_task(task.id, status=TaskStatus.BLOCKED, metadata=metadata)
        LOGGER.info("Task %s blocked: %s", task.key, reason)

    def mark_ready_to_review(self, task: Task, metadata: Mapping[str, Any] | None = None) -> None:
        current = self.get_task(task.id) or task
        merged = {key: value for key, value in current.metadata.items() if key != "blocked_reason"}
        merged.update(metadata or {})
        self.update_task(task.id, status=TaskStatus.READY_TO_REVIEW, metadata=merged)

    def transition_to_in_progress(self, task: Task) -> None:
        current = self.get_task(task.id) or task
        if current.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
            raise StoreError(f"Task {task.key} is {current.status.value}; cannot move to in_progress.")
        if current.status is not TaskStatus.IN_PROGRESS:
            self.update_task(task.id, status=TaskStatus.IN_PROGRESS)

    # Lock operations -------------------------------------------------------------------
    def try_acquire_lock(
        self,
        task_id: str,
        holder_run_id: str,
        job_id: str | None,
        ttl_seconds: float,
    ) -> LockResult:
        now = utc_now()
        lock = TaskLock(
            task_id=task_id,
            holder_run_id=holder_run_id,
            job_id=job_id,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM task_locks WHERE task_id = ?", (task_id,)).fetchone()
            if row is not None:
                existing = self._row_to_lock(row)
                if existing.holder_run_id != holder_run_id and not existing.is_expired(now):
                    emit_event("lock_unavailable", task_id=task_id, holder=existing.holder_run_id)
                    return LockResult(acquired=False, lock=existing)
                if existing.holder_run_id != holder_run_id:
                    LOGGER.info("Taking over expired lock on %s from %s", task_id, existing.holder_run_id)
            conn.execute(
                """
                INSERT INTO task_locks (task_id, holder_run_id, job_id, acquired_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(task_id) DO UPDATE SET
                    holder_run_id = excluded.holder_run_id,
                    job_id = excluded.job_id,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                """,
                (task_id, holder_run_id, job_id, _as_iso(lock.acquired_at), _as_iso(lock.expires_at)),
            )
        emit_event("lock_acquired", task_id=task_id, holder=holder_run_id, ttl_seconds=ttl_seconds)
        return LockResult(acquired=True, lock=lock)

    def refresh_lock(self, task_id: str, holder_run_id: str, ttl_seconds: float) -> bool:
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE task_locks SET expires_at = ? WHERE task_id = ? AND holder_run_id = ? AND expires_at > ?",
                (_as_iso(now + timedelta(seconds=ttl_seconds)), task_id, holder_run_id, _as_iso(now)),
            )
            refreshed = cursor.rowcount == 1
        if not refreshed:
            emit_event("lock_lost", task_id=task_id, holder=holder_run_id)
        return refreshed

    def release_lock(self, task_id: str, holder_run_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM task_locks WHERE task_id = ? AND holder_run_id = ?",
                (task_id, holder_run_id),
            )
            released = cursor.rowcount == 1
        emit_event("lock_released", task_id=task_id, holder=holder_run_id, released=released)
        return released

    def get_lock(self, task_id: str) -> Optional[TaskLock]:
        row = self.conn.execute("SELECT * FROM task_locks WHERE task_id = ?", (task_id,)).fetchone()
        return self._row_to_lock(row) if row else None

    def list_locks(self, *, active_only: bool = True) -> List[TaskLock]:
        locks = [self._row_to_lock(row) for row in self.conn.execute("SELECT * FROM task_locks").fetchall()]
        if active_only:
            now = utc_now()
            locks = [lock for lock in locks if not lock.is_expired(now)]
        return locks

    # Command runs and jobs -------------------------------------------------------------
    def start_command_run(
        self,
        command_name: str,
        project_key: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> CommandRun:
        record = CommandRun(id=_new_id(), command_name=command_name, project_key=project_key, payload=dict(payload or {}))
        self._save_command_run(record)
        return record

    def finish_command_run(
        self,
        command_run_id: str,
        status: RunStatus,
        *,
        error_summary: str | None = None,
        sp_processed: float | None = None,
    ) -> CommandRun:
        current = self.get_command_run(command_run_id)
        if current is None:
            raise StoreError(f"Unknown command run: {command_run_id}")
        if current.status.terminal:
            raise StoreError(f"Command run {command_run_id} already finished as {current.status.value}.")
        record = current.model_copy(
            update={
                "status": RunStatus(status),
                "error_summary": error_summary,
                "sp_processed": sp_processed,
                "finished_at": utc_now(),
            }
        )
        self._save_command_run(record)
        return record

    def get_command_run(self, command_run_id: str) -> Optional[CommandRun]:
        row = self.conn.execute("SELECT * FROM command_runs WHERE id = ?", (command_run_id,)).fetchone()
        if not row:
            return None
        return CommandRun(
            id=row["id"],
            command_name=row["command_name"],
            project_key=row["project_key"],
            status=RunStatus(row["status"]),
            payload=_load_json(row["payload"], default={}),
            error_summary=row["error_summary"],
            sp_processed=row["sp_processed"],
            started_at=_from_iso(row["started_at"]),
            finished_at=_from_iso(row["finished_at"]),
        )

    def _save_command_run(self, record: CommandRun) -> None:
        with self._transaction():
            self.conn.execute(
                """
                INSERT INTO command_runs (
                    id, command_name, project_key, status, payload, error_summary, sp_processed,
                    started_at, finished_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    payload = excluded.payload,
                    error_summary = excluded.error_summary,
                    sp_processed = excluded.sp_processed,
                    finished_at = excluded.finished_at
                """,
                (
                    record.id,
                    record.command_name,
                    record.project_key,
                    record.status.value,
                    _dump_json(record.payload, default={}),
                    record.error_summary,
                    record.sp_processed,
                    _as_iso(record.started_at),
                    _as_iso(record.finished_at) if record.finished_at else None,
                ),
            )

    def start_job(
        self,
        job_type: str,
        command_run_id: str | None,
        project_key: str | None = None,
        payload: Mapping[str, Any] | None = None,
        *,
        total_items: int | None = None,
    ) -> Job:
        record = Job(
            id=_new_id(),
            job_type=job_type,
            command_run_id=command_run_id,
            project_key=project_key,
            status=JobState.RUNNING,
            payload=dict(payload or {}),
            total_items=total_items,
        )
        self._save_job(record)
        return record

    def update_job_status(
        self,
        job_id: str,
        status: JobState,
        *,
        processed_items: int | None = None,
        total_items: int | None = None,
        error_summary: str | None = None,
    ) -> Job:
        current = self.get_job(job_id)
        if current is None:
            raise StoreError(f"Unknown job: {job_id}")
        state = JobState(status)
        update: Dict[str, Any] = {"status": state, "updated_at": utc_now()}
        if processed_items is not None:
            update["processed_items"] = processed_items
        if total_items is not None:
            update["total_items"] = total_items
        if error_summary is not None:
            update["error_summary"] = error_summary
        if state not in (JobState.QUEUED, JobState.RUNNING):
            update["finished_at"] = utc_now()
        record = current.model_copy(update=update)
        self._save_job(record)
        return record

    def get_job(self, job_id: str) -> Optional[Job]:
        row = self.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            return None
        return Job(
            id=row["id"],
            job_type=row["job_type"],
            command_run_id=row["command_run_id"],
            project_key=row["project_key"],
            status=JobState(row["status"]),
            payload=_load_json(row["payload"], default={}),
            total_items=row["total_items"],
            processed_items=row["processed_items"],
            error_summary=row["error_summary"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
            finished_at=_from_iso(row["finished_at"]),
        )

    def _save_job(self, record: Job) -> None:
        with self._transaction():
            self.conn.execute(
                """
                INSERT INTO jobs (
                    id, job_type, command_run_id, project_key, status, payload, total_items,
                    processed_items, error_summary, created_at, updated_at, finished_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    payload = excluded.payload,
                    total_items = excluded.total_items,
                    processed_items = excluded.processed_items,
                    error_summary = excluded.error_summary,
                    updated_at = excluded.updated_at,
                    finished_at = excluded.finished_at
                """,
                (
                    record.id,
                    record.job_type,
                    record.command_run_id,
                    record.project_key,
                    record.status.value,
                    _dump_json(record.payload, default={}),
                    record.total_items,
                    record.processed_items,
                    record.error_summary,
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                    _as_iso(record.finished_at) if record.finished_at else None,
                ),
            )

    def write_checkpoint(self, job_id: str, stage: str, details: Mapping[str, Any] | None = None) -> JobCheckpoint:
        record = JobCheckpoint(id=_new_id(), job_id=job_id, stage=stage, details=dict(details or {}))
        with self._transaction():
            self.conn.execute(
                "INSERT INTO job_checkpoints (id, job_id, stage, details, created_at) VALUES (?, ?, ?, ?, ?)",
                (record.id, record.job_id, record.stage, _dump_json(record.details, default={}), _as_iso(record.created_at)),
            )
        return record

    def list_checkpoints(self, job_id: str) -> List[JobCheckpoint]:
        cursor = self.conn.execute(
            "SELECT * FROM job_checkpoints WHERE job_id = ? ORDER BY created_at ASC, rowid ASC",
            (job_id,),
        )
        return [
            JobCheckpoint(
                id=row["id"],
                job_id=row["job_id"],
                stage=row["stage"],
                details=_load_json(row["details"], default={}),
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    # Task runs -------------------------------------------------------------------------
    def create_task_run(self, run: TaskRun) -> TaskRun:
        if self.get_task_run(run.id) is not None:
            raise StoreError(f"Task run {run.id} already exists.")
        self._save_task_run(run)
        return run

    def update_task_run(self, run_id: str, **fields: Any) -> TaskRun:
        current = self.get_task_run(run_id)
        if current is None:
            raise StoreError(f"Unknown task run: {run_id}")
        if current.status.terminal:
            raise StoreError(f"Task run {run_id} is already {current.status.value}; it can no longer change.")
        record = TaskRun.model_validate({**current.model_dump(), **fields})
        self._save_task_run(record)
        return record

    def finish_task_run(self, run_id: str, status: RunStatus, **fields: Any) -> TaskRun:
        """Move a run to a terminal status; a second finalization raises :class:`StoreError`."""

        state = RunStatus(status)
        if not state.terminal:
            raise StoreError("finish_task_run requires a terminal status.")
        current = self.get_task_run(run_id)
        if current is None:
            raise StoreError(f"Unknown task run: {run_id}")
        if current.status.terminal:
            raise StoreError(f"Task run {run_id} already finished as {current.status.value}.")
        record = TaskRun.model_validate({**current.model_dump(), **fields, "status": state, "finished_at": utc_now()})
        self._save_task_run(record)
        return record

    def get_task_run(self, run_id: str) -> Optional[TaskRun]:
        row = self.conn.execute("SELECT * FROM task_runs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_task_run(row) if row else None

    def list_task_runs(self, *, task_id: Optional[str] = None, job_id: Optional[str] = None) -> List[TaskRun]:
        query = "SELECT * FROM task_runs"
        clauses: List[str] = []
        params: List[Any] = []
        if task_id:
            clauses.append("task_id = ?")
            params.append(task_id)
        if job_id:
            clauses.append("job_id = ?")
            params.append(job_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at ASC, rowid ASC"
        return [self._row_to_task_run(row) for row in self.conn.execute(query, params).fetchall()]

    def _save_task_run(self, record: TaskRun) -> None:
        values = [
            record.job_id,
            record.command_run_id,
            record.command,
            record.agent_id,
            record.status.value,
            _dump_json(record.run_context, default={}),
            record.git_branch,
            record.git_base_branch,
            record.git_commit_sha,
            record.prompt_tokens,
            record.completion_tokens,
            record.story_points_at_run,
            _as_iso(record.started_at),
            _as_iso(record.finished_at) if record.finished_at else None,
        ]
        columns = ", ".join(("id", "task_id", *_TASK_RUN_COLUMNS))
        placeholders = ", ".join("?" for _ in range(len(_TASK_RUN_COLUMNS) + 2))
        updates = ",\n".join(f"{column} = excluded.{column}" for column in _TASK_RUN_COLUMNS)
        with self._transaction():
            self.conn.execute(
                f"INSERT INTO task_runs ({columns}) VALUES ({placeholders}) ON CONFLICT(id) DO UPDATE SET {updates}",
                (record.id, record.task_id, *values),
            )

    # Logs, comments, tokens, ratings ---------------------------------------------------
    def append_task_log(
        self,
        task_run_id: str,
        sequence: int,
        message: str,
        *,
        source: str = "",
        level: str = "info",
        details: Mapping[str, Any] | None = None,
    ) -> TaskLog:
        record = TaskLog(
            id=_new_id(),
            task_run_id=task_run_id,
            sequence=sequence,
            level=level,
            source=source,
            message=message,
            details=dict(details or {}),
        )
        with self._transaction():
            self.conn.execute(
                """
                INSERT INTO task_logs (id, task_run_id, sequence, level, source, message, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.task_run_id,
                    record.sequence,
                    record.level,
                    record.source,
                    record.message,
                    _dump_json(record.details, default={}),
                    _as_iso(record.created_at),
                ),
            )
        return record

    def list_task_logs(self, task_run_id: str) -> List[TaskLog]:
        cursor = self.conn.execute(
            "SELECT * FROM task_logs WHERE task_run_id = ? ORDER BY sequence ASC",
            (task_run_id,),
        )
        return [
            TaskLog(
                id=row["id"],
                task_run_id=row["task_run_id"],
                sequence=row["sequence"],
                level=row["level"],
                source=row["source"],
                message=row["message"],
                details=_load_json(row["details"], default={}),
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    def add_task_comment(self, comment: TaskComment) -> None:
        with self._transaction():
            self.conn.execute(
                """
                INSERT INTO task_comments (id, task_id, task_run_id, job_id, author, category, body, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    comment.id,
                    comment.task_id,
                    comment.task_run_id,
                    comment.job_id,
                    comment.author,
                    comment.category,
                    comment.body,
                    _as_iso(comment.created_at),
                ),
            )

    def list_task_comments(self, task_id: str) -> List[TaskComment]:
        cursor = self.conn.execute(
            "SELECT * FROM task_comments WHERE task_id = ? ORDER BY created_at ASC, rowid ASC",
            (task_id,),
        )
        return [
            TaskComment(
                id=row["id"],
                task_id=row["task_id"],
                task_run_id=row["task_run_id"],
                job_id=row["job_id"],
                author=row["author"],
                category=row["category"],
                body=row["body"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    def record_token_usage(self, usage: TokenUsage) -> None:
        with self._transaction():
            self.conn.execute(
                """
                INSERT INTO token_usage (
                    id, job_id, command_run_id, task_run_id, task_id, agent_id, command_name, phase,
                    prompt_tokens, completion_tokens, total_tokens, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    usage.id,
                    usage.job_id,
                    usage.command_run_id,
                    usage.task_run_id,
                    usage.task_id,
                    usage.agent_id,
                    usage.command_name,
                    usage.phase,
                    usage.prompt_tokens,
                    usage.completion_tokens,
                    usage.total_tokens,
                    _as_iso(usage.created_at),
                ),
            )

    def list_token_usage(self, *, job_id: Optional[str] = None) -> List[TokenUsage]:
        query = "SELECT * FROM token_usage"
        params: List[Any] = []
        if job_id:
            query += " WHERE job_id = ?"
            params.append(job_id)
        query += " ORDER BY created_at ASC, rowid ASC"
        return [
            TokenUsage(
                id=row["id"],
                job_id=row["job_id"],
                command_run_id=row["command_run_id"],
                task_run_id=row["task_run_id"],
                task_id=row["task_id"],
                agent_id=row["agent_id"],
                command_name=row["command_name"],
                phase=row["phase"],
                prompt_tokens=row["prompt_tokens"],
                completion_tokens=row["completion_tokens"],
                total_tokens=row["total_tokens"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in self.conn.execute(query, params).fetchall()
        ]

    def rate(self, task_key: str, command_name: str, agent_id: str) -> Optional[float]:
        """Score the agent on the latest run of ``task_key`` and record the rating."""

        task = self.get_task_by_key(task_key)
        if task is None:
            return None
        runs = [run for run in self.list_task_runs(task_id=task.id) if run.command == command_name]
        if not runs:
            return None
        latest = runs[-1]
        score = 1.0 if latest.status is RunStatus.SUCCEEDED else 0.0
        warnings = latest.run_context.get("soft_failures") or []
        if score and warnings:
            score = 0.5
        rating = AgentRating(
            id=_new_id(),
            task_key=task_key,
            command_name=command_name,
            agent_id=agent_id,
            score=score,
            details={
                "task_run_id": latest.id,
                "status": latest.status.value,
                "prompt_tokens": latest.prompt_tokens,
                "completion_tokens": latest.completion_tokens,
            },
        )
        with self._transaction():
            self.conn.execute(
                """
                INSERT INTO agent_ratings (id, task_key, command_name, agent_id, score, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rating.id,
                    rating.task_key,
                    rating.command_name,
                    rating.agent_id,
                    rating.score,
                    _dump_json(rating.details, default={}),
                    _as_iso(rating.created_at),
                ),
            )
        return score

    def list_agent_ratings(self, agent_id: Optional[str] = None) -> List[AgentRating]:
        query = "SELECT * FROM agent_ratings"
        params: List[Any] = []
        if agent_id:
            query += " WHERE agent_id = ?"
            params.append(agent_id)
        query += " ORDER BY created_at ASC, rowid ASC"
        return [
            AgentRating(
                id=row["id"],
                task_key=row["task_key"],
                command_name=row["command_name"],
                agent_id=row["agent_id"],
                score=row["score"],
                details=_load_json(row["details"], default={}),
                created_at=_from_iso(row["created_at"]),
            )
            for row in self.conn.execute(query, params).fetchall()
        ]

    # Row mappers -----------------------------------------------------------------------
    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            key=row["key"],
            title=row["title"],
            description=row["description"],
            status=TaskStatus(row["status"]),
            story_points=row["story_points"],
            priority=row["priority"],
            project_key=row["project_key"],
            epic_key=row["epic_key"],
            story_key=row["story_key"],
            dependency_keys=_load_json(row["dependency_keys"], default=[]),
            metadata=_load_json(row["metadata"], default={}),
            vcs_branch=row["vcs_branch"],
            vcs_base_branch=row["vcs_base_branch"],
            vcs_last_commit_sha=row["vcs_last_commit_sha"],
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def _row_to_lock(self, row: sqlite3.Row) -> TaskLock:
        return TaskLock(
            task_id=row["task_id"],
            holder_run_id=row["holder_run_id"],
            job_id=row["job_id"],
            acquired_at=_from_iso(row["acquired_at"]),
            expires_at=_from_iso(row["expires_at"]),
        )

    def _row_to_task_run(self, row: sqlite3.Row) -> TaskRun:
        return TaskRun(
            id=row["id"],
            task_id=row["task_id"],
            job_id=row["job_id"],
            command_run_id=row["command_run_id"],
            command=row["command"],
            agent_id=row["agent_id"],
            status=RunStatus(row["status"]),
            run_context=_load_json(row["run_context"], default={}),
            git_branch=row["git_branch"],
            git_base_branch=row["git_base_branch"],
            git_commit_sha=row["git_commit_sha"],
            prompt_tokens=row["prompt_tokens"],
            completion_tokens=row["completion_tokens"],
            story_points_at_run=row["story_points_at_run"],
            started_at=_from_iso(row["started_at"]),
            finished_at=_from_iso(row["finished_at"]),
        )


__all__ = ["DEFAULT_DB_PATH", "StoreError", "WorkspaceStore"]
