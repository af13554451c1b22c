"""High-level orchestration loop working through a backlog of tasks."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from .interfaces import (
    AgentRater,
    JobBookkeeper,
    LockStore,
    SelectedTask,
    SelectionFilters,
    SelectionPlan,
    TaskSelector,
    TaskStateService,
)
from .memory.schema import JobState, RunStatus, TaskRun, TaskStatus
from .memory.store import WorkspaceStore
from .models.agent_client import AgentClient, CommandAgentClient
from .phases import TaskPhase
from .phases.machine import TaskAttemptRunner, default_refresh_interval
from .phases.outcome import AttemptState, PhaseOutcome
from .selection import StoreTaskSelector
from .telemetry import emit_event
from .tools.git_flow import GitChoreographer
from .tools.test_runner import DEFAULT_OUTPUT_LIMIT, MAX_TEST_ATTEMPTS
from .tools.vcs import GitError, GitRepository
from .tools.work_state import write_work_checkpoint
from .utils.abort import AbortSignal, TaskAbortedError
from .utils.resources import ResourceGuard

LOGGER = logging.getLogger(__name__)

COMMAND_NAME = "work-on-tasks"
DEFAULT_BASE_BRANCH = "taskforge-dev"
DEFAULT_BRANCH_PREFIX = "taskforge/task/"
DEFAULT_STATE_DIR = ".taskforge"
TASK_LOCK_TTL_SECONDS = 3600


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    return value if isinstance(value, Mapping) else {}


def _first_bool(*candidates: Any, default: bool) -> bool:
    for candidate in candidates:
        coerced = _coerce_bool(candidate)
        if coerced is not None:
            return coerced
    return default


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


@dataclass(slots=True)
class WorkOnTasksRequest:
    """Inputs for one ``work-on-tasks`` invocation; ``None`` defers to config."""

    project_key: str | None = None
    epic_key: str | None = None
    story_key: str | None = None
    task_keys: List[str] = field(default_factory=list)
    statuses: List[str] = field(default_factory=list)
    limit: int | None = None
    parallel: int | None = None
    no_commit: bool = False
    dry_run: bool = False
    agent_name: str | None = None
    agent_stream: bool | None = None
    base_branch: str | None = None
    auto_merge: bool | None = None
    auto_push: bool | None = None
    rate_agents: bool = False
    max_agent_seconds: float | None = None
    on_agent_chunk: Callable[[str], None] | None = None

    def payload(self) -> Dict[str, Any]:
        return {
            "project_key": self.project_key,
            "epic_key": self.epic_key,
            "story_key": self.story_key,
            "task_keys": list(self.task_keys),
            "statuses": list(self.statuses),
            "limit": self.limit,
            "parallel": self.parallel,
            "no_commit": self.no_commit,
            "dry_run": self.dry_run,
            "agent": self.agent_name,
            "agent_stream": self.agent_stream,
        }


@dataclass(slots=True)
class WorkSettings:
    """Resolved runtime settings: request overrides > config > defaults."""

    root: Path
    state_dir: Path
    base_branch: str = DEFAULT_BASE_BRANCH
    branch_prefix: str = DEFAULT_BRANCH_PREFIX
    remote: str = "origin"
    auto_merge: bool = True
    auto_push: bool = True
    agent_stream: bool = True
    lock_ttl_seconds: float = TASK_LOCK_TTL_SECONDS
    refresh_seconds: float | None = None
    max_test_attempts: int = MAX_TEST_ATTEMPTS
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    test_timeout: float | None = None
    allow_file_overwrite: bool = False
    system_prompt: str = ""
    dry_run: bool = False
    no_commit: bool = False
    rate_agents: bool = False

    @property
    def refresh_interval(self) -> float:
        if self.refresh_seconds:
            return self.refresh_seconds
        return default_refresh_interval(self.lock_ttl_seconds)

    @property
    def state_dir_name(self) -> str:
        try:
            return self.state_dir.relative_to(self.root).as_posix()
        except ValueError:
            return DEFAULT_STATE_DIR

    @classmethod
    def resolve(
        cls,
        config: Mapping[str, Any],
        *,
        root: Path | str,
        request: WorkOnTasksRequest | None = None,
    ) -> "WorkSettings":
        request = request or WorkOnTasksRequest()
        root_path = Path(root).resolve()
        git_cfg = _section(config, "git")
        agent_cfg = _section(config, "agent")
        lock_cfg = _section(config, "locks")
        test_cfg = _section(config, "tests")
        path_cfg = _section(config, "paths")

        state_dir = Path(path_cfg.get("state_dir") or DEFAULT_STATE_DIR)
        if not state_dir.is_absolute():
            state_dir = root_path / state_dir

        return cls(
            root=root_path,
            state_dir=state_dir,
            base_branch=request.base_branch or git_cfg.get("base_branch") or DEFAULT_BASE_BRANCH,
            branch_prefix=git_cfg.get("branch_prefix") or DEFAULT_BRANCH_PREFIX,
            remote=git_cfg.get("remote") or "origin",
            auto_merge=_first_bool(request.auto_merge, git_cfg.get("auto_merge"), default=True),
            auto_push=_first_bool(request.auto_push, git_cfg.get("auto_push"), default=True),
            agent_stream=_first_bool(request.agent_stream, agent_cfg.get("stream"), default=True),
            lock_ttl_seconds=_optional_float(lock_cfg.get("ttl_seconds")) or TASK_LOCK_TTL_SECONDS,
            refresh_seconds=_optional_float(lock_cfg.get("refresh_seconds")),
            max_test_attempts=min(max(1, int(test_cfg.get("max_attempts") or MAX_TEST_ATTEMPTS)), MAX_TEST_ATTEMPTS),
            output_limit=int(test_cfg.get("output_limit") or DEFAULT_OUTPUT_LIMIT),
            test_timeout=_optional_float(test_cfg.get("timeout_seconds")),
            allow_file_overwrite=_first_bool(agent_cfg.get("allow_file_overwrite"), default=False),
            system_prompt=str(agent_cfg.get("system_prompt") or ""),
            dry_run=request.dry_run,
            no_commit=request.no_commit,
            rate_agents=request.rate_agents,
        )


@dataclass(slots=True)
class TaskExecutionResult:
    task_key: str
    status: str
    notes: str | None = None
    branch: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {"task_key": self.task_key, "status": self.status, "notes": self.notes, "branch": self.branch}


@dataclass(slots=True)
class WorkOnTasksResult:
    """Outcome of a job: one result per attempted task plus aggregate state."""

    job_id: str
    command_run_id: str
    selection: SelectionPlan
    results: List[TaskExecutionResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    state: JobState = JobState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "command_run_id": self.command_run_id,
            "state": self.state.value,
            "selection": {
                "ordered": [entry.task.key for entry in self.selection.ordered],
                "blocked": [entry.task.key for entry in self.selection.blocked],
            },
            "results": [result.to_dict() for result in self.results],
            "warnings": list(self.warnings),
        }


def aggregate_job_state(results: Sequence[TaskExecutionResult]) -> JobState:
    """``completed`` with no failures, ``failed`` when all failed, else ``partial``."""
    failures = sum(1 for result in results if result.status in ("failed", "blocked"))
    if failures == 0:
        return JobState.COMPLETED
    if failures == len(results):
        return JobState.FAILED
    return JobState.PARTIAL


def ensure_state_dir(root: Path, state_dir: Path) -> None:
    """Create the state dir and keep it out of version control."""
    state_dir.mkdir(parents=True, exist_ok=True)
    try:
        entry = state_dir.relative_to(root).as_posix().rstrip("/") + "/"
    except ValueError:
        return
    gitignore = root / ".gitignore"
    lines = gitignore.read_text(encoding="utf-8").splitlines() if gitignore.exists() else []
    if entry in lines or entry.rstrip("/") in lines:
        return
    lines.append(entry)
    gitignore.write_text("\n".join(lines) + "\n", encoding="utf-8")
    LOGGER.info("Added %s to %s", entry, gitignore)


class TaskOrchestrator:
    """Coordinator that selects tasks and drives each one through the phase machine."""

    def __init__(
        self,
        *,
        selector: TaskSelector,
        state_service: TaskStateService,
        locks: LockStore,
        bookkeeper: JobBookkeeper,
        agent: AgentClient,
        repo: GitRepository,
        config: Mapping[str, Any] | None = None,
        rater: AgentRater | None = None,
        abort: AbortSignal | None = None,
    ) -> None:
        self.selector = selector
        self.state_service = state_service
        self.locks = locks
        self.bookkeeper = bookkeeper
        self.agent = agent
        self.repo = repo
        self.config = dict(config or {})
        self.rater = rater
        self.abort = abort or AbortSignal()
        self._current: AttemptState | None = None
        self._runner: TaskAttemptRunner | None = None
        self._owned_store: WorkspaceStore | None = None

    @classmethod
    def from_store(
        cls,
        store: WorkspaceStore,
        *,
        agent: AgentClient,
        repo: GitRepository,
        config: Mapping[str, Any] | None = None,
        abort: AbortSignal | None = None,
    ) -> "TaskOrchestrator":
        """Wire every collaborator role to a single :class:`WorkspaceStore`."""
        return cls(
            selector=StoreTaskSelector(store),
            state_service=store,
            locks=store,
            bookkeeper=store,
            agent=agent,
            repo=repo,
            config=config,
            rater=store,
            abort=abort,
        )

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        root: Path | str,
        agent: AgentClient | None = None,
        agent_name: str | None = None,
        max_agent_seconds: float | None = None,
        abort: AbortSignal | None = None,
    ) -> "TaskOrchestrator":
        """Convenience constructor used by the CLI."""
        abort = abort or AbortSignal()
        repo = GitRepository.ensure_repo(root)
        repo.ensure_identity()
        store = WorkspaceStore.from_config(config, root=repo.root)
        if agent is None:
            agent_cfg = _section(config, "agent")
            command = str(agent_cfg.get("command") or "").strip()
            if not command:
                raise ValueError("No agent command configured; set agent.command in the config file.")
            agent = CommandAgentClient(
                command,
                agent_id=agent_name or agent_cfg.get("default") or None,
                max_seconds=max_agent_seconds or _optional_float(agent_cfg.get("max_seconds")),
                abort=abort,
                cwd=repo.root,
            )
        orchestrator = cls.from_store(store, agent=agent, repo=repo, config=config, abort=abort)
        orchestrator._owned_store = store
        return orchestrator

    # -------------------------------------------------------------- logging
    def _git_log(self, message: str, details: Dict[str, Any]) -> None:
        if self._current is not None and self._runner is not None:
            self._runner.log(self._current, message, "vcs", details=details)

    # ----------------------------------------------------------------- main
    def work_on_tasks(self, request: WorkOnTasksRequest) -> WorkOnTasksResult:
        """Select tasks and work through them one at a time."""
        settings = WorkSettings.resolve(self.config, root=self.repo.root, request=request)
        ensure_state_dir(settings.root, settings.state_dir)
        git = GitChoreographer(
            self.repo,
            state_dir=settings.state_dir_name,
            remote=settings.remote,
            branch_prefix=settings.branch_prefix,
            log=self._git_log,
        )
        runner = TaskAttemptRunner(
            bookkeeper=self.bookkeeper,
            state_service=self.state_service,
            locks=self.locks,
            agent=self.agent,
            git=git,
            settings=settings,
            abort=self.abort,
            on_chunk=request.on_agent_chunk,
        )
        self._runner = runner
        agent_id = request.agent_name or self.agent.agent_id

        payload = {**request.payload(), "base_branch": settings.base_branch}
        command_run = self.bookkeeper.start_command_run(COMMAND_NAME, request.project_key, payload)
        job = self.bookkeeper.start_job(COMMAND_NAME, command_run.id, request.project_key, payload)
        LOGGER.info("Started job %s (command run %s)", job.id, command_run.id)

        results: List[TaskExecutionResult] = []
        story_points = 0.0
        guard = ResourceGuard()
        # Registered first so it closes after the agent.
        guard.register("store", self._owned_store)
        guard.register("agent", self.agent)
        try:
            if not settings.dry_run:
                git.checkout_base_branch(settings.base_branch)
            plan = self.selector.select_tasks(
                SelectionFilters(
                    project_key=request.project_key,
                    epic_key=request.epic_key,
                    story_key=request.story_key,
                    task_keys=list(request.task_keys),
                    statuses=[TaskStatus(status) for status in request.statuses],
                    limit=request.limit,
                )
            )
            selection_details = {
                "ordered": [entry.task.key for entry in plan.ordered],
                "blocked": [entry.task.key for entry in plan.blocked],
            }
            self.bookkeeper.write_checkpoint(job.id, "selection", selection_details)
            write_work_checkpoint(settings.state_dir, job.id, "selection", selection_details)
            self.bookkeeper.update_job_status(
                job.id,
                JobState.RUNNING,
                processed_items=0,
                total_items=len(plan.ordered),
            )
            warnings: List[str] = [*git.warnings, *plan.warnings]
            if request.parallel and request.parallel > 1:
                warnings.append("Parallel task execution is not supported; processing tasks sequentially.")

            for index, entry in enumerate(plan.ordered):
                self.abort.raise_if_aborted("task loop")
                result, state = self._run_task(entry, runner, settings, job.id, command_run.id, agent_id, results)
                warnings.extend(warning for warning in state.warnings if warning not in warnings)
                if result.status == "succeeded":
                    story_points += entry.task.story_points or 0
                    self.bookkeeper.write_checkpoint(job.id, "task_completed", {"task_key": entry.task.key})
                self.bookkeeper.update_job_status(job.id, JobState.RUNNING, processed_items=index + 1)
            warnings.extend(warning for warning in git.warnings if warning not in warnings)

            job_state = aggregate_job_state(results)
            failures = sum(1 for result in results if result.status in ("failed", "blocked"))
            error_summary = f"{failures} task(s) failed or blocked" if failures else None
            self.bookkeeper.update_job_status(
                job.id,
                job_state,
                processed_items=len(results),
                error_summary=error_summary,
            )
            self.bookkeeper.finish_command_run(
                command_run.id,
                RunStatus.SUCCEEDED if job_state is JobState.COMPLETED else RunStatus.FAILED,
                error_summary=error_summary,
                sp_processed=story_points or None,
            )
            emit_event("job_finished", job_id=job.id, state=job_state.value, results=len(results))
            return WorkOnTasksResult(
                job_id=job.id,
                command_run_id=command_run.id,
                selection=plan,
                results=results,
                warnings=warnings,
                state=job_state,
            )
        except TaskAbortedError as error:
            LOGGER.warning("Job %s aborted: %s", job.id, error)
            self.bookkeeper.update_job_status(job.id, JobState.CANCELLED, error_summary=str(error))
            self.bookkeeper.finish_command_run(
                command_run.id,
                RunStatus.CANCELLED,
                error_summary=str(error),
                sp_processed=story_points or None,
            )
            raise
        except Exception as error:
            LOGGER.error("Job %s failed: %s", job.id, error)
            self.bookkeeper.update_job_status(job.id, JobState.FAILED, error_summary=str(error))
            self.bookkeeper.finish_command_run(
                command_run.id,
                RunStatus.FAILED,
                error_summary=str(error),
                sp_processed=story_points or None,
            )
            raise
        finally:
            self._current = None
            if not settings.dry_run:
                try:
                    self.repo.checkout_branch(settings.base_branch)
                except GitError as error:
                    LOGGER.warning("Could not return to %s: %s", settings.base_branch, error)
            for name, close_error in guard.close_all():
                LOGGER.warning("Cleanup of %s failed: %s", name, close_error)

    # ------------------------------------------------------------- per task
    def _run_task(
        self,
        entry: SelectedTask,
        runner: TaskAttemptRunner,
        settings: WorkSettings,
        job_id: str,
        command_run_id: str,
        agent_id: str,
        results: List[TaskExecutionResult],
    ) -> tuple[TaskExecutionResult, AttemptState]:
        task = entry.task
        run = self.bookkeeper.create_task_run(
            TaskRun(
                id=uuid4().hex,
                task_id=task.id,
                job_id=job_id,
                command_run_id=command_run_id,
                command=COMMAND_NAME,
                agent_id=agent_id,
                story_points_at_run=task.story_points,
                git_branch=task.vcs_branch,
                git_base_branch=task.vcs_base_branch,
                git_commit_sha=task.vcs_last_commit_sha,
            )
        )
        state = AttemptState(
            selected=entry,
            run=run,
            job_id=job_id,
            command_run_id=command_run_id,
            agent_id=agent_id,
            head_sha=task.vcs_last_commit_sha,
        )
        self._current = state
        LOGGER.info("Starting task %s: %s", task.key, task.title)

        outcome = runner.select(state)
        if outcome.terminal:
            return self._finish(state, outcome, settings, results), state

        if not settings.dry_run:
            lock = self.locks.try_acquire_lock(task.id, run.id, job_id, settings.lock_ttl_seconds)
            if not lock.acquired:
                holder = lock.lock.holder_run_id if lock.lock else None
                runner.log(state, "Task already locked by another run; skipping.", "vcs", details={"holder": holder})
                outcome = PhaseOutcome.skipped("task_locked", phase=TaskPhase.SELECTION)
                return self._finish(state, outcome, settings, results), state
            state.lock_acquired = True

        try:
            outcome = runner.run(state)
        except TaskAbortedError as error:
            runner.log(state, f"Task aborted: {error}", "execution", level="warning")
            self._finish(state, PhaseOutcome.failed("aborted", phase=state.current_phase), settings, results)
            raise
        except Exception as error:
            runner.log(state, f"Task failed with an unexpected error: {error}", "execution", level="error")
            self._finish(state, PhaseOutcome.failed(str(error), phase=state.current_phase), settings, results)
            raise
        finally:
            if state.lock_acquired:
                released = self.locks.release_lock(task.id, run.id)
                if not released:
                    LOGGER.warning("Lock on %s was no longer held by run %s at release.", task.key, run.id)
        return self._finish(state, outcome, settings, results), state

    def _finish(
        self,
        state: AttemptState,
        outcome: PhaseOutcome,
        settings: WorkSettings,
        results: List[TaskExecutionResult],
    ) -> TaskExecutionResult:
        """Finalize the run record exactly once and append the task result."""
        info = state.branch_info
        run_context: Dict[str, Any] = {
            "phase": (outcome.phase or state.current_phase).value,
            "status": outcome.kind.value,
            "reason": outcome.reason,
        }
        if state.soft_failures:
            run_context["soft_failures"] = list(dict.fromkeys(state.soft_failures))
        if "sp_per_hour" in state.details:
            run_context["sp_per_hour"] = state.details["sp_per_hour"]
        self.bookkeeper.finish_task_run(
            state.run.id,
            outcome.run_status,
            run_context=run_context,
            git_branch=info.branch if info else state.run.git_branch,
            git_base_branch=info.base if info else state.run.git_base_branch,
            git_commit_sha=state.head_sha,
            prompt_tokens=state.prompt_tokens,
            completion_tokens=state.completion_tokens,
        )
        status = outcome.result_status
        result = TaskExecutionResult(
            task_key=state.task.key,
            status=status,
            notes=outcome.reason,
            branch=info.branch if info and status == "succeeded" else None,
        )
        results.append(result)
        elapsed = time.monotonic() - state.started_monotonic
        LOGGER.info(
            "Finished task %s: %s (%s) in %.1fs, tokens %d/%d, merge %s, files %d",
            state.task.key,
            status,
            outcome.reason or "-",
            elapsed,
            state.prompt_tokens,
            state.completion_tokens,
            state.merge_status,
            len(state.touched),
        )
        emit_event("task_finished", task=state.task.key, status=status, notes=outcome.reason)
        if settings.rate_agents and self.rater is not None:
            self._rate(state)
        self._current = None
        return result

    def _rate(self, state: AttemptState) -> Optional[float]:
        try:
            score = self.rater.rate(state.task.key, COMMAND_NAME, state.agent_id) if self.rater else None
        except RuntimeError as error:
            LOGGER.warning("Agent rating failed for %s: %s", state.task.key, error)
            return None
        if score is not None:
            LOGGER.info("Rated agent %s on %s: %.2f", state.agent_id, state.task.key, score)
        return score


__all__ = [
    "COMMAND_NAME",
    "DEFAULT_BASE_BRANCH",
    "TASK_LOCK_TTL_SECONDS",
    "TaskExecutionResult",
    "TaskOrchestrator",
    "WorkOnTasksRequest",
    "WorkOnTasksResult",
    "WorkSettings",
    "aggregate_job_state",
    "ensure_state_dir",
]
