from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from taskforge.memory.schema import JobState, RunStatus, Task, TaskComment, TaskRun, TaskStatus, TokenUsage
from taskforge.memory.store import StoreError, WorkspaceStore


def _task(store: WorkspaceStore, key: str = "T-1", **fields) -> Task:
    return store.upsert_task(Task(id=f"id-{key}", key=key, title=f"Task {key}", **fields))


def test_lock_is_exclusive_until_released(tmp_path: Path) -> None:
    with WorkspaceStore(tmp_path / "taskforge.sqlite") as store:
        task = _task(store)

        first = store.try_acquire_lock(task.id, "run-a", "job-1", 60)
        second = store.try_acquire_lock(task.id, "run-b", "job-2", 60)

        assert first.acquired
        assert not second.acquired
        assert second.lock is not None and second.lock.holder_run_id == "run-a"
        assert store.refresh_lock(task.id, "run-a", 60)
        assert not store.refresh_lock(task.id, "run-b", 60)
        assert not store.release_lock(task.id, "run-b")
        assert store.release_lock(task.id, "run-a")
        assert store.try_acquire_lock(task.id, "run-b", "job-2", 60).acquired


def test_expired_lock_can_be_taken_over(tmp_path: Path) -> None:
    with WorkspaceStore(tmp_path / "taskforge.sqlite") as store:
        task = _task(store)
        assert store.try_acquire_lock(task.id, "run-a", None, -1).acquired

        assert store.list_locks(active_only=True) == []
        assert not store.refresh_lock(task.id, "run-a", 60)

        takeover = store.try_acquire_lock(task.id, "run-b", None, 60)

        assert takeover.acquired
        assert store.get_lock(task.id).holder_run_id == "run-b"


def test_task_run_finishes_once(tmp_path: Path) -> None:
    with WorkspaceStore(tmp_path / "taskforge.sqlite") as store:
        task = _task(store)
        run = store.create_task_run(TaskRun(id="run-1", task_id=task.id, job_id="job-1"))

        store.update_task_run(run.id, run_context={"phase": "agent"})
        finished = store.finish_task_run(run.id, RunStatus.SUCCEEDED, prompt_tokens=10)

        assert finished.status is RunStatus.SUCCEEDED
        assert finished.finished_at is not None
        assert finished.run_context == {"phase": "agent"}
        with pytest.raises(StoreError):
            store.finish_task_run(run.id, RunStatus.FAILED)
        with pytest.raises(StoreError):
            store.update_task_run(run.id, run_context={})


def test_command_run_and_job_lifecycle(tmp_path: Path) -> None:
    with WorkspaceStore(tmp_path / "taskforge.sqlite") as store:
        command_run = store.start_command_run("work-on-tasks", "PROJ", {"limit": 1})
        job = store.start_job("work-on-tasks", command_run.id, "PROJ")
        store.write_checkpoint(job.id, "selection", {"ordered": ["T-1"]})

        updated = store.update_job_status(job.id, JobState.COMPLETED, processed_items=1, total_items=1)
        store.finish_command_run(command_run.id, RunStatus.SUCCEEDED)

        assert updated.finished_at is not None
        assert [checkpoint.stage for checkpoint in store.list_checkpoints(job.id)] == ["selection"]
        with pytest.raises(StoreError):
            store.finish_command_run(command_run.id, RunStatus.FAILED)


def test_state_transitions(tmp_path: Path) -> None:
    with WorkspaceStore(tmp_path / "taskforge.sqlite") as store:
        task = _task(store)

        store.transition_to_in_progress(task)
        assert store.get_task(task.id).status is TaskStatus.IN_PROGRESS

        store.mark_blocked(task, "tests_failed")
        blocked = store.get_task(task.id)
        assert blocked.status is TaskStatus.BLOCKED
        assert blocked.metadata["blocked_reason"] == "tests_failed"

        store.mark_ready_to_review(blocked, {"last_run": "now"})
        ready = store.get_task(task.id)
        assert ready.status is TaskStatus.READY_TO_REVIEW
        assert "blocked_reason" not in ready.metadata
        assert ready.metadata["last_run"] == "now"

        done = _task(store, "T-2", status=TaskStatus.COMPLETED)
        with pytest.raises(StoreError):
            store.transition_to_in_progress(done)


def test_logs_comments_and_tokens(tmp_path: Path) -> None:
    with WorkspaceStore(tmp_path / "taskforge.sqlite") as store:
        task = _task(store)
        run = store.create_task_run(TaskRun(id="run-1", task_id=task.id, job_id="job-1"))

        store.append_task_log(run.id, 1, "first", source="agent")
        store.append_task_log(run.id, 2, "second", source="tests", level="warning")
        store.add_task_comment(TaskComment(id="c-1", task_id=task.id, task_run_id=run.id, category="blocker", body="stuck"))
        store.record_token_usage(
            TokenUsage(
                id="u-1",
                task_id=task.id,
                task_run_id=run.id,
                job_id="job-1",
                agent_id="echo",
                phase="agent",
                prompt_tokens=5,
                completion_tokens=7,
            )
        )

        assert [log.message for log in store.list_task_logs(run.id)] == ["first", "second"]
        assert store.list_task_comments(task.id)[0].category == "blocker"
        assert store.list_token_usage(job_id="job-1")[0].completion_tokens == 7


def test_rate_scores_latest_run(tmp_path: Path) -> None:
    with WorkspaceStore(tmp_path / "taskforge.sqlite") as store:
        task = _task(store)
        store.create_task_run(TaskRun(id="run-1", task_id=task.id, agent_id="echo"))
        store.finish_task_run("run-1", RunStatus.SUCCEEDED)

        score = store.rate(task.key, "work-on-tasks", "echo")

        assert score == 1.0
        assert store.list_agent_ratings("echo")[0].task_key == "T-1"


def test_load_tasks_file(tmp_path: Path) -> None:
    tasks_file = tmp_path / "tasks.yaml"
    tasks_file.write_text(
        textwrap.dedent(
            """
            project: PROJ
            tasks:
              - key: T-1
                title: First task
                priority: 1
                story_points: 3
                metadata:
                  files: [src]
                  tests: ["pytest -q"]
              - key: T-2
                title: Second task
                depends_on: [T-1]
            """
        ).lstrip(),
        encoding="utf-8",
    )
    with WorkspaceStore(tmp_path / "taskforge.sqlite") as store:
        imported = store.load_tasks_file(tasks_file)
        again = store.load_tasks_file(tasks_file)

        assert [task.key for task in imported] == ["T-1", "T-2"]
        assert [task.id for task in again] == [task.id for task in imported]
        first = store.get_task_by_key("T-1")
        assert first.project_key == "PROJ"
        assert first.allowed_files == ["src"]
        assert first.test_commands == ["pytest -q"]
        assert store.get_task_by_key("T-2").dependency_keys == ["T-1"]


def test_load_tasks_file_rejects_entries_without_key(tmp_path: Path) -> None:
    tasks_file = tmp_path / "tasks.yaml"
    tasks_file.write_text("tasks:\n  - title: no key\n", encoding="utf-8")

    with WorkspaceStore(tmp_path / "taskforge.sqlite") as store:
        with pytest.raises(StoreError):
            store.load_tasks_file(tasks_file)
