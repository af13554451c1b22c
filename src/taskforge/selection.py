"""Dependency-aware task selection backed by the workspace store."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from .interfaces import SelectedTask, SelectionFilters, SelectionPlan
from .memory.schema import Task, TaskStatus
from .memory.store import WorkspaceStore

LOGGER = logging.getLogger(__name__)

DEFAULT_STATUSES = (TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS)
DONE_DEPENDENCY_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


def _sort_key(entry: SelectedTask) -> tuple:
    task = entry.task
    story_points = task.story_points if task.story_points is not None else float("inf")
    in_progress_first = 0 if task.status is TaskStatus.IN_PROGRESS else 1
    return (task.priority, story_points, task.created_at, in_progress_first, task.key)


def _topological_order(entries: List[SelectedTask]) -> tuple[List[SelectedTask], List[str]]:
    """Order ``entries`` so dependencies inside the selection come first."""
    by_key: Dict[str, SelectedTask] = {entry.task.key: entry for entry in entries}
    indegree: Dict[str, int] = {key: 0 for key in by_key}
    edges: Dict[str, List[str]] = {}
    for entry in entries:
        for dependency in entry.dependency_keys:
            if dependency not in by_key:
                continue
            indegree[entry.task.key] += 1
            edges.setdefault(dependency, []).append(entry.task.key)

    queue = [entry for entry in entries if indegree[entry.task.key] == 0]
    ordered: List[SelectedTask] = []
    while queue:
        queue.sort(key=_sort_key)
        current = queue.pop(0)
        ordered.append(current)
        for target in edges.get(current.task.key, []):
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(by_key[target])

    warnings: List[str] = []
    if len(ordered) != len(entries):
        warnings.append("Cycle detected in task dependencies; falling back to partial order.")
        remaining = sorted((entry for entry in entries if entry not in ordered), key=_sort_key)
        ordered.extend(remaining)
    return ordered, warnings


class StoreTaskSelector:
    """Select and order tasks from a :class:`WorkspaceStore`."""

    def __init__(self, store: WorkspaceStore) -> None:
        self.store = store

    def _dedupe(self, keys: Iterable[str]) -> List[str]:
        seen: Dict[str, None] = {}
        for key in keys:
            cleaned = key.strip()
            if cleaned:
                seen.setdefault(cleaned, None)
        return list(seen)

    def select_tasks(self, filters: SelectionFilters) -> SelectionPlan:
        statuses = [TaskStatus(status) for status in filters.statuses] or list(DEFAULT_STATUSES)
        allow_blocked = TaskStatus.BLOCKED in statuses
        explicit_keys = self._dedupe(filters.task_keys)
        tasks = self.store.list_tasks(
            project_key=filters.project_key,
            epic_key=filters.epic_key,
            story_key=filters.story_key,
            keys=explicit_keys or None,
            statuses=statuses,
        )

        plan = SelectionPlan()
        missing = sorted(set(explicit_keys) - {task.key for task in tasks})
        for key in missing:
            plan.warnings.append(f"Task {key} not found or not in a selectable status.")

        eligible: List[SelectedTask] = []
        for task in tasks:
            entry = SelectedTask(task=task, dependency_keys=list(task.dependency_keys))
            blocking = self._blocking_dependencies(task)
            if blocking:
                entry.blocked_reason = "dependency_not_ready"
                LOGGER.debug("Task %s waits on %s", task.key, ", ".join(blocking))
                if not (allow_blocked or task.key in explicit_keys):
                    plan.blocked.append(entry)
                    continue
            eligible.append(entry)

        ordered, warnings = _topological_order(eligible)
        plan.warnings.extend(warnings)
        if filters.limit is not None and filters.limit > 0:
            ordered = ordered[: filters.limit]
        plan.ordered = ordered
        return plan

    def _blocking_dependencies(self, task: Task) -> List[str]:
        blocking: List[str] = []
        for key in task.dependency_keys:
            dependency = self.store.get_task_by_key(key)
            if dependency is None or dependency.status not in DONE_DEPENDENCY_STATUSES:
                blocking.append(key)
        return blocking


__all__ = ["DEFAULT_STATUSES", "StoreTaskSelector"]
