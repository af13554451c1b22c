"""Per-task phase state machine.

The runner drives one attempt through ``context -> prompt -> agent -> apply
-> tests -> vcs -> finalize``. Each handler returns a :class:`PhaseOutcome`;
the driver checkpoints every transition (store, job work file and task log)
and refreshes the task lock at each boundary. Lock loss anywhere aborts the
attempt, auto-saves pending work and blocks the task.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Tuple
from uuid import uuid4

from ..interfaces import JobBookkeeper, LockStore, TaskStateService
from ..memory.schema import TaskComment, TokenUsage
from ..models.agent_client import AgentClient, AgentClientError, AgentRequest
from ..prompts import (
    build_task_prompt,
    estimate_tokens,
    gather_doc_context,
    with_patch_only_instruction,
    with_test_feedback,
)
from ..telemetry import emit_event
from ..tools.applier import ApplyResult, ScopeViolationError, apply_file_blocks, apply_patches, validate_scope
from ..tools.extract import ExtractedChange, extract_changes
from ..tools.git_flow import BranchInfo, CommitError, GitChoreographer, MergeConflictError
from ..tools.patch import PatchError
from ..tools.test_runner import (
    MAX_TEST_ATTEMPTS,
    TestRequirements,
    format_failure_summary,
    resolve_test_commands,
    run_test_commands,
)
from ..tools.vcs import GitError
from ..tools.work_state import write_work_checkpoint
from ..utils.abort import AbortSignal, TaskAbortedError
from . import TaskPhase, checkpoint_stage
from .outcome import AttemptState, PhaseOutcome

if TYPE_CHECKING:
    from ..orchestrator import WorkSettings

LOGGER = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]


class TaskLockLostError(RuntimeError):
    """Raised when the task lock could not be refreshed."""

    def __init__(self, label: str) -> None:
        self.label = label
        super().__init__(f"Task lock lost during {label}.")


def default_refresh_interval(ttl_seconds: float) -> float:
    """Refresh often enough that two misses still leave the lock valid."""
    ttl = max(1.0, float(ttl_seconds))
    return max(0.25, min(ttl - 0.25, ttl / 3))


class LockKeeper:
    """Refresh the task lock on a cadence and report loss."""

    def __init__(
        self,
        locks: LockStore,
        state: AttemptState,
        *,
        ttl_seconds: float,
        interval: float,
        log: Callable[..., None],
    ) -> None:
        self.locks = locks
        self.state = state
        self.ttl_seconds = ttl_seconds
        self.interval = interval
        self._log = log
        self._last_refresh = time.monotonic()

    def refresh(self, label: str, *, force: bool = False) -> bool:
        if not self.state.lock_acquired:
            return True
        now = time.monotonic()
        if not force and now - self._last_refresh < self.interval:
            return True
        task_id = self.state.task.id
        run_id = self.state.run.id
        try:
            refreshed = self.locks.refresh_lock(task_id, run_id, self.ttl_seconds)
        except Exception as error:  # noqa: BLE001 - any refresh failure counts as loss
            self._log(
                f"Failed to refresh task lock ({label}); treating as lock loss.",
                "vcs",
                level="warning",
                details={"error": str(error), "reason": "refresh_failed"},
            )
            return False
        if not refreshed:
            self._log(
                f"Task lock lost during {label}; another run may have taken it.",
                "vcs",
                level="warning",
                details={"reason": "lock_stolen"},
            )
            return False
        self._last_refresh = now
        emit_event("lock_refreshed", task_id=task_id, holder=run_id, label=label)
        return True

    def ensure(self, label: str, *, force: bool = False) -> None:
        if not self.refresh(label, force=force):
            raise TaskLockLostError(label)


class TaskAttemptRunner:
    """Run the phases of one task attempt against the configured collaborators."""

    def __init__(
        self,
        *,
        bookkeeper: JobBookkeeper,
        state_service: TaskStateService,
        locks: LockStore,
        agent: AgentClient,
        git: GitChoreographer,
        settings: "WorkSettings",
        abort: AbortSignal | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> None:
        self.bookkeeper = bookkeeper
        self.state_service = state_service
        self.locks = locks
        self.agent = agent
        self.git = git
        self.settings = settings
        self.abort = abort or AbortSignal()
        self.on_chunk = on_chunk
        self._handlers: Dict[TaskPhase, Callable[[AttemptState, LockKeeper], PhaseOutcome]] = {
            TaskPhase.CONTEXT: self._context,
            TaskPhase.PROMPT: self._prompt,
            TaskPhase.AGENT: self._agent,
            TaskPhase.APPLY: self._apply,
            TaskPhase.TESTS: self._tests,
            TaskPhase.VCS: self._vcs,
            TaskPhase.FINALIZE: self._finalize,
        }

    # ------------------------------------------------------------ recording
    def log(
        self,
        state: AttemptState,
        message: str,
        source: str,
        *,
        level: str = "info",
        details: Mapping[str, Any] | None = None,
    ) -> None:
        LOGGER.log(logging.WARNING if level == "warning" else logging.INFO, "[%s] %s", state.task.key, message)
        self.bookkeeper.append_task_log(
            state.run.id,
            state.next_log_seq(),
            message,
            source=source,
            level=level,
            details=details,
        )

    def checkpoint(
        self,
        state: AttemptState,
        phase: TaskPhase,
        status: str,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        """Record a phase transition in the store, the job work file and the task log."""
        payload: Dict[str, Any] = dict(details or {})
        if status == "start":
            state.phase_started[phase] = time.monotonic()
        elif phase in state.phase_started:
            payload.setdefault("duration_seconds", round(time.monotonic() - state.phase_started[phase], 3))
        payload["task_run_id"] = state.run.id
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()
        stage = checkpoint_stage(state.task.key, phase, status)
        self.bookkeeper.write_checkpoint(state.job_id, stage, payload)
        write_work_checkpoint(self.settings.state_dir, state.job_id, stage, payload)
        self.bookkeeper.update_task_run(state.run.id, run_context={"phase": phase.value, "status": status})
        self.log(state, f"{phase.value} {status}", phase.value, details=payload)
        emit_event("phase_transition", task=state.task.key, phase=phase.value, status=status)

    def _record_usage(self, state: AttemptState, phase: str, output: str) -> None:
        prompt_tokens = state.prompt_estimate or estimate_tokens(state.system_prompt + state.prompt)
        completion_tokens = estimate_tokens(output)
        state.prompt_tokens += prompt_tokens
        state.completion_tokens += completion_tokens
        self.bookkeeper.record_token_usage(
            TokenUsage(
                id=uuid4().hex,
                job_id=state.job_id,
                command_run_id=state.command_run_id,
                task_run_id=state.run.id,
                task_id=state.task.id,
                agent_id=state.agent_id,
                phase=phase,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            )
        )

    def _block(
        self,
        state: AttemptState,
        reason: str,
        message: str,
        *,
        source: str,
        comment: str | None = None,
        auto_save: bool = False,
    ) -> PhaseOutcome:
        self.log(state, message, source, level="warning", details={"reason": reason})
        self.state_service.mark_blocked(state.task, reason)
        if comment:
            self.bookkeeper.add_task_comment(
                TaskComment(
                    id=uuid4().hex,
                    task_id=state.task.id,
                    task_run_id=state.run.id,
                    job_id=state.job_id,
                    category="blocker",
                    body=comment,
                )
            )
        if auto_save:
            self._auto_save(state, f"auto-save ({reason})")
        return PhaseOutcome.blocked(reason, phase=state.current_phase)

    def _auto_save(self, state: AttemptState, reason: str) -> None:
        if self.settings.dry_run or self.settings.no_commit:
            return
        try:
            sha = self.git.commit_pending_changes(state.task.key, state.task.title, reason)
        except (GitError, CommitError) as error:
            self.log(state, f"Auto-save failed ({reason}): {error}", "vcs", level="warning")
            return
        if sha:
            state.head_sha = sha
            info = state.branch_info
            self.bookkeeper.update_task(
                state.task.id,
                vcs_last_commit_sha=sha,
                vcs_branch=info.branch if info else None,
                vcs_base_branch=info.base if info else None,
            )

    # -------------------------------------------------------------- driving
    def select(self, state: AttemptState) -> PhaseOutcome:
        """Selection phase; runs before the lock is taken."""
        entry = state.selected
        details = {"dependencies": entry.dependency_keys, "blocked_reason": entry.blocked_reason}
        state.current_phase = TaskPhase.SELECTION
        self.checkpoint(state, TaskPhase.SELECTION, "start", details)
        self.log(state, f"Selected task {state.task.key}", "selection", details=details)
        if entry.blocked_reason and not self.settings.dry_run:
            self.checkpoint(state, TaskPhase.SELECTION, "error", {"blocked_reason": entry.blocked_reason})
            self.state_service.mark_blocked(state.task, entry.blocked_reason)
            return PhaseOutcome.blocked(entry.blocked_reason, phase=TaskPhase.SELECTION)
        self.checkpoint(state, TaskPhase.SELECTION, "end")
        return PhaseOutcome.advance(TaskPhase.CONTEXT)

    def run(self, state: AttemptState) -> PhaseOutcome:
        """Drive the attempt from ``context`` to a terminal outcome."""
        keeper = LockKeeper(
            self.locks,
            state,
            ttl_seconds=self.settings.lock_ttl_seconds,
            interval=self.settings.refresh_interval,
            log=lambda message, source, **kw: self.log(state, message, source, **kw),
        )
        phase = TaskPhase.CONTEXT
        try:
            while True:
                self.abort.raise_if_aborted(phase.value)
                keeper.ensure(f"{phase.value}_start", force=True)
                state.current_phase = phase
                self.checkpoint(state, phase, "start")
                outcome = self._handlers[phase](state, keeper)
                if not outcome.terminal:
                    self.checkpoint(state, phase, "end")
                    phase = outcome.next_phase or phase
                    continue
                if outcome.phase is None:
                    outcome.phase = phase
                status = "end" if outcome.kind.value in ("succeeded", "skipped") else "error"
                self.checkpoint(state, phase, status, {"reason": outcome.reason})
                return outcome
        except TaskLockLostError as error:
            self.log(state, f"Task aborted: {error}", "vcs", level="warning")
            self.checkpoint(state, state.current_phase, "error", {"reason": "task_lock_lost"})
            self.state_service.mark_blocked(state.task, "task_lock_lost")
            self._auto_save(state, "auto-save (lock_lost)")
            return PhaseOutcome.blocked("task_lock_lost", phase=state.current_phase)

    # ------------------------------------------------------------- handlers
    def _context(self, state: AttemptState, keeper: LockKeeper) -> PhaseOutcome:
        task = state.task
        base = self.settings.base_branch
        state.allowed_files = list(task.allowed_files)
        if self.settings.dry_run:
            state.branch_info = BranchInfo(branch=task.vcs_branch or self.git.branch_name(task.key), base=base)
        else:
            try:
                info = self.git.ensure_branches(task.key, base)
            except (GitError, CommitError) as error:
                message = f"Failed to prepare branches: {error}"
                self.log(state, message, "vcs", level="warning")
                return PhaseOutcome.failed(message)
            state.branch_info = info
            if info.merge_conflicts and state.allowed_files:
                for path in info.merge_conflicts:
                    if path not in state.allowed_files:
                        state.allowed_files.append(path)
            self.bookkeeper.update_task(task.id, vcs_branch=info.branch, vcs_base_branch=info.base)
            self.log(state, f"Using branch {info.branch} (base {info.base})", "vcs")

        summary, doc_warnings = gather_doc_context(self.settings.root, task.doc_links)
        if doc_warnings:
            state.warnings.extend(doc_warnings)
            self.log(state, "; ".join(doc_warnings), "context", level="warning")
        state.details["doc_summary"] = summary
        return PhaseOutcome.advance(TaskPhase.PROMPT)

    def _prompt(self, state: AttemptState, keeper: LockKeeper) -> PhaseOutcome:
        info = state.branch_info
        state.system_prompt = self.settings.system_prompt
        state.prompt = build_task_prompt(
            state.task,
            dependency_keys=state.selected.dependency_keys,
            allowed_files=state.allowed_files,
            doc_summary=state.details.get("doc_summary", ""),
            merge_conflicts=info.merge_conflicts if info else (),
            remote_sync_note=info.remote_sync_note if info else None,
        )
        self.log(state, f"System prompt:\n{state.system_prompt or '(none)'}", "prompt")
        self.log(state, f"Task prompt:\n{state.prompt}", "prompt")
        state.prompt_estimate = estimate_tokens(state.system_prompt + state.prompt)

        if self.settings.dry_run:
            self.log(state, "Dry-run enabled; skipping execution.", "execution")
            return PhaseOutcome.skipped("dry_run")

        try:
            self.state_service.transition_to_in_progress(state.task)
        except RuntimeError as error:
            self.log(state, f"Failed to move task to in_progress: {error}", "state", level="warning")
        return PhaseOutcome.advance(TaskPhase.AGENT)

    def _full_prompt(self, state: AttemptState, prompt: str) -> str:
        return f"{state.system_prompt}\n\n{prompt}" if state.system_prompt else prompt

    def _agent(self, state: AttemptState, keeper: LockKeeper) -> PhaseOutcome:
        try:
            output = self._call_agent(state, keeper, self._full_prompt(state, state.prompt), "agent")
        except AgentClientError as error:
            message = str(error)
            self.log(state, f"Agent invocation failed: {message}", "agent", level="warning")
            return PhaseOutcome.failed(message)
        self._record_usage(state, "agent", output)
        keeper.ensure("agent")

        extracted = extract_changes(output)
        if extracted.empty:
            self.log(
                state,
                "Agent output did not include a patch; retrying with explicit patch-only instruction.",
                "agent",
                details={"json_detected": extracted.json_detected},
            )
            retry_prompt = with_patch_only_instruction(self._full_prompt(state, state.prompt))
            try:
                retry_output = self._call_agent(state, keeper, retry_prompt, "agent")
            except AgentClientError as error:
                self.log(state, f"Agent retry failed: {error}", "agent", level="warning")
            else:
                self._record_usage(state, "agent_retry", retry_output)
                extracted = extract_changes(retry_output)

        if extracted.empty:
            return self._block(state, "no_changes", "Agent output did not include a patch.", source="agent")
        state.extracted = extracted
        return PhaseOutcome.advance(TaskPhase.APPLY)

    def _call_agent(self, state: AttemptState, keeper: LockKeeper, prompt: str, label: str) -> str:
        """Invoke the agent on a worker thread while this thread keeps the lock fresh."""
        request = AgentRequest(input=prompt, metadata={"task_key": state.task.key})
        stream = self.settings.agent_stream
        channel: "queue.Queue[Tuple[str, Any]]" = queue.Queue()

        def _worker() -> None:
            try:
                if stream:
                    for chunk in self.agent.invoke_stream(state.agent_id, request):
                        channel.put(("chunk", chunk.output))
                else:
                    channel.put(("chunk", self.agent.invoke(state.agent_id, request).output))
            except Exception as error:  # noqa: BLE001 - re-raised on the calling thread
                channel.put(("error", error))
            else:
                channel.put(("done", None))

        worker = threading.Thread(target=_worker, name=f"agent-{state.task.key}", daemon=True)
        worker.start()
        parts: List[str] = []
        try:
            while True:
                try:
                    kind, payload = channel.get(timeout=keeper.interval)
                except queue.Empty:
                    if self.abort.aborted:
                        raise TaskAbortedError("Agent call aborted.", reason=self.abort.reason)
                    keeper.ensure(f"{label}_poll", force=True)
                    continue
                if kind == "error":
                    raise payload
                if kind == "done":
                    break
                text = payload or ""
                parts.append(text)
                if self.on_chunk is not None and text:
                    self.on_chunk(text)
                if stream and text:
                    self.log(state, text, label)
                keeper.ensure(f"{label}_stream")
        except (TaskLockLostError, TaskAbortedError):
            self.agent.cancel()
            raise
        finally:
            worker.join(timeout=keeper.interval)
        output = "".join(parts)
        if not stream:
            self.log(state, output, label)
        return output

    def _apply_changes(self, state: AttemptState, extracted: ExtractedChange) -> ApplyResult:
        root = self.settings.root
        patch_result = apply_patches(extracted.patches, root)
        file_result = apply_file_blocks(
            extracted.file_blocks,
            root,
            allow_noop=True,
            allow_overwrite=self.settings.allow_file_overwrite,
            covered_paths=patch_result.touched,
        )
        combined = ApplyResult(
            warnings=[*patch_result.warnings, *file_result.warnings],
            applied_count=patch_result.applied_count + file_result.applied_count,
        )
        for path in [*patch_result.touched, *file_result.touched]:
            combined.add_touched(path)
        if combined.applied_count == 0:
            errors = [error for error in (patch_result.error, file_result.error) if error]
            combined.error = "; ".join(errors) or "No change could be applied."
        return combined

    def _apply_and_check(self, state: AttemptState, extracted: ExtractedChange) -> PhaseOutcome | None:
        """Apply ``extracted`` and enforce the file scope; returns a terminal outcome on failure."""
        try:
            applied = self._apply_changes(state, extracted)
        except PatchError as error:
            applied = ApplyResult(error=str(error))
        if applied.warnings:
            state.warnings.extend(applied.warnings)
            self.log(state, "; ".join(applied.warnings), "patch", level="warning")
        if applied.error:
            return self._block(
                state,
                "patch_failed",
                f"Patch apply failed: {applied.error}",
                source="patch",
                auto_save=True,
            )
        state.patch_applied = True
        state.add_touched(applied.touched)
        self.log(state, f"Applied changes to {len(applied.touched)} file(s)", "patch", details={"touched": applied.touched})

        if state.allowed_files:
            dirty = self.git.dirty_paths()
            try:
                validate_scope(state.allowed_files, dirty).raise_for_violations()
            except ScopeViolationError as error:
                return self._block(
                    state,
                    "scope_violation",
                    str(error),
                    source="scope",
                    auto_save=True,
                )
        return None

    def _apply(self, state: AttemptState, keeper: LockKeeper) -> PhaseOutcome:
        if state.extracted is None:
            raise RuntimeError(f"No extracted changes recorded for {state.task.key} before apply.")
        failure = self._apply_and_check(state, state.extracted)
        if failure is not None:
            return failure
        keeper.ensure("apply")
        return PhaseOutcome.advance(TaskPhase.TESTS)

    def _tests(self, state: AttemptState, keeper: LockKeeper) -> PhaseOutcome:
        task = state.task
        root = self.settings.root
        requirements = TestRequirements.from_metadata(task.metadata.get("test_requirements"))
        resolved = resolve_test_commands(task.test_commands, requirements, state.touched, root)
        for warning in resolved.warnings:
            state.warnings.append(warning)
            self.log(state, warning, "tests", level="warning")
        if resolved.run_all_created:
            self.log(state, "Synthesized run-all test entrypoint.", "tests")
        if not resolved.commands:
            if resolved.not_configured:
                return self._block(
                    state,
                    "tests_not_configured",
                    "Test requirements are declared but no runnable test command was found.",
                    source="tests",
                    comment="Test requirements are declared but no test harness could be resolved.",
                )
            self.log(state, "No test commands configured; skipping tests.", "tests")
            return PhaseOutcome.advance(TaskPhase.VCS)

        max_attempts = min(max(1, self.settings.max_test_attempts), MAX_TEST_ATTEMPTS)
        summary = ""
        for attempt in range(1, max_attempts + 1):
            outcome = run_test_commands(
                resolved.commands,
                root,
                abort=self.abort,
                output_limit=self.settings.output_limit,
                timeout=self.settings.test_timeout,
            )
            state.test_invocations += 1
            self.log(
                state,
                f"Test results (attempt {attempt}/{max_attempts})",
                "tests",
                details={"ok": outcome.ok, "results": [result.to_dict() for result in outcome.results]},
            )
            keeper.ensure("tests")
            if outcome.ok:
                return PhaseOutcome.advance(TaskPhase.VCS)
            summary = format_failure_summary(outcome)
            if attempt >= max_attempts:
                break

            self.log(state, f"Tests failed; asking the agent for a fix (attempt {attempt + 1}).", "tests")
            feedback = with_test_feedback(self._full_prompt(state, state.prompt), attempt, summary)
            try:
                output = self._call_agent(state, keeper, feedback, "agent_retry")
            except AgentClientError as error:
                self.log(state, f"Agent retry failed: {error}", "agent", level="warning")
                break
            self._record_usage(state, "agent_retry", output)
            extracted = extract_changes(output)
            if extracted.empty:
                self.log(state, "Agent retry produced no changes.", "agent", level="warning")
                break
            failure = self._apply_and_check(state, extracted)
            if failure is not None:
                return failure
            keeper.ensure("apply_retry")

        return self._block(
            state,
            "tests_failed",
            f"Tests failed after {state.test_invocations} run(s).",
            source="tests",
            comment=f"Tests failed after {state.test_invocations} run(s).\n{summary}".strip(),
            auto_save=True,
        )

    def _vcs(self, state: AttemptState, keeper: LockKeeper) -> PhaseOutcome:
        if self.settings.no_commit:
            self.log(state, "no-commit set: skipped commit/push.", "vcs")
            return PhaseOutcome.advance(TaskPhase.FINALIZE)
        task = state.task
        info = state.branch_info
        if info is None:
            raise RuntimeError(f"No branch prepared for {state.task.key} before commit.")
        try:
            sha = self.git.commit_changes(f"[{task.key}] {task.title}", fallback_paths=state.touched)
            if sha:
                state.head_sha = sha
                self.bookkeeper.update_task(task.id, vcs_last_commit_sha=sha)
                self.log(state, f"Committed changes ({sha})", "vcs")
            else:
                self.log(state, "No changes to commit.", "vcs")

            scoped = bool(state.allowed_files)
            if self.settings.auto_merge and scoped:
                self.git.merge_back(info)
                state.merge_status = "merged"
                state.head_sha = self.git.repo.last_commit_sha() or state.head_sha
                self.log(state, f"Merged {info.branch} into {info.base}", "vcs")
                keeper.ensure("vcs_merge")
            else:
                why = "disabled" if not self.settings.auto_merge else "task has no file scope"
                self.log(state, f"Auto-merge skipped ({why}).", "vcs")

            if not (self.settings.auto_push and scoped):
                self.log(state, "Auto-push skipped.", "vcs")
            elif not self.git.has_remote():
                self.log(state, "No remote configured; merge completed locally.", "vcs")
            else:
                targets = [info.branch] + ([info.base] if state.merge_status == "merged" else [])
                for target in targets:
                    pushed = self.git.push_with_recovery(target)
                    if pushed.pushed:
                        self.log(state, f"Pushed {target} to {self.git.remote}", "vcs")
                    elif pushed.skipped:
                        state.soft_failures.append("push_skipped")
                        self.log(
                            state,
                            f"Skipped pushing {target} due to permissions/protection.",
                            "vcs",
                            level="warning",
                        )
                    keeper.ensure(f"vcs_push_{target}")
        except MergeConflictError as error:
            state.merge_status = "failed"
            return self._block(
                state,
                "merge_conflict",
                str(error),
                source="vcs",
                comment=f"Merge conflict while merging {error.source} into {error.target}: "
                f"{', '.join(error.conflicts) or 'unknown paths'}",
            )
        except (GitError, CommitError) as error:
            return self._block(state, "vcs_failed", f"VCS commit/push failed: {error}", source="vcs")
        return PhaseOutcome.advance(TaskPhase.FINALIZE)

    def _finalize(self, state: AttemptState, keeper: LockKeeper) -> PhaseOutcome:
        task = state.task
        finished = datetime.now(timezone.utc)
        metadata: Dict[str, Any] = {"last_run": finished.isoformat()}
        soft_failures = list(dict.fromkeys(state.soft_failures))
        if soft_failures:
            metadata["soft_failures"] = soft_failures
        self.state_service.mark_ready_to_review(task, metadata)
        elapsed = max(1.0, time.monotonic() - state.started_monotonic)
        if task.story_points and task.story_points > 0:
            state.details["sp_per_hour"] = task.story_points / elapsed * 3600
        if soft_failures:
            return PhaseOutcome.succeeded(f"ready_to_review_with_warnings:{','.join(soft_failures)}")
        return PhaseOutcome.succeeded("ready_to_review")


__all__ = ["LockKeeper", "TaskAttemptRunner", "TaskLockLostError", "default_refresh_interval"]
