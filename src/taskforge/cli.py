"""CLI commands for running taskforge against a workspace backlog."""

from __future__ import annotations

import copy
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from .memory.schema import JobState, TaskStatus
from .memory.store import StoreError, WorkspaceStore
from .orchestrator import TaskOrchestrator, WorkOnTasksRequest, WorkOnTasksResult
from .tools.vcs import GitError
from .utils.abort import AbortSignal, TaskAbortedError

APP_HELP = "taskforge: drive coding agents through a task backlog."
DEFAULT_CONFIG_NAME = "taskforge.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {"name": "", "key": "", "repo_root": "."},
    "git": {
        "base_branch": "taskforge-dev",
        "branch_prefix": "taskforge/task/",
        "remote": "origin",
        "auto_merge": True,
        "auto_push": True,
    },
    "agent": {"default": "", "command": "", "stream": True, "max_seconds": None},
    "locks": {"ttl_seconds": 3600, "refresh_seconds": None},
    "tests": {"max_attempts": 3, "output_limit": 1200},
    "paths": {"state_dir": ".taskforge", "db_path": ".taskforge/taskforge.sqlite"},
    "logging": {"level": "INFO"},
}

EXIT_CODES = {
    JobState.COMPLETED: 0,
    JobState.FAILED: 1,
    JobState.PARTIAL: 2,
}

app = typer.Typer(help=APP_HELP)


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be used."""


def _copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def read_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration layered over the default template."""
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as error:
        raise ConfigError(f"Cannot read config {config_path}: {error}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    for section in ("project", "git", "agent", "locks", "tests", "paths", "logging"):
        if section in data and data[section] is not None and not isinstance(data[section], dict):
            raise ConfigError(f"Config section '{section}' must be a mapping.")
    return _merge(_copy_config_template(), {key: value for key, value in data.items() if value is not None})


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load configuration for a command, exiting with a message on failure."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")
    try:
        return read_config(config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


def _configure_logging(config: Dict[str, Any], override: Optional[str]) -> None:
    level_name = (override or (config.get("logging") or {}).get("level") or "INFO").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        raise typer.BadParameter(f"Unknown log level: {level_name}")
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _resolve_repo_root(config: Dict[str, Any], config_path: Path) -> Path:
    """Resolve the repository root from configuration."""
    project_cfg = config.get("project") or {}
    repo_root_path = Path(project_cfg.get("repo_root") or ".")
    if not repo_root_path.is_absolute():
        repo_root_path = (config_path.parent / repo_root_path).resolve()
    return repo_root_path


def _render_result(result: WorkOnTasksResult) -> None:
    """Print a per-task table followed by warnings and the job summary."""
    if not result.results:
        typer.echo("No tasks selected.")
    else:
        width = max(len("TASK"), *(len(item.task_key) for item in result.results))
        typer.echo(f"{'TASK'.ljust(width)}  {'STATUS'.ljust(9)}  NOTES")
        for item in result.results:
            notes = item.notes or ""
            if item.branch:
                notes = f"{notes} [{item.branch}]".strip()
            typer.echo(f"{item.task_key.ljust(width)}  {item.status.ljust(9)}  {notes}")
    for entry in result.selection.blocked:
        typer.echo(f"Not selected: {entry.task.key} ({entry.blocked_reason})")
    for warning in result.warnings:
        typer.echo(f"Warning: {warning}")
    typer.echo(f"Job {result.job_id}: {result.state.value}")


def _print_chunk(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


@app.command("init-config")
def init_config(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Where to write the configuration file.",
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration template."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; pass --force to overwrite.")
        raise typer.Exit(code=1)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(_copy_config_template(), handle, sort_keys=False)
    typer.echo(f"Wrote default configuration to {config_path}")


@app.command("import-tasks")
def import_tasks(
    tasks_file: Path = typer.Argument(..., help="YAML file with the tasks to import."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Load tasks from YAML into the workspace store."""
    config_path = Path(config)
    config_data = load_config(config_path)
    _configure_logging(config_data, None)
    repo_root = _resolve_repo_root(config_data, config_path)
    try:
        with WorkspaceStore.from_config(config_data, root=repo_root) as store:
            imported = store.load_tasks_file(tasks_file)
    except (StoreError, OSError, yaml.YAMLError, ValueError) as error:
        typer.echo(f"Failed to import tasks: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(f"Imported {len(imported)} task(s).")
    for task in imported:
        typer.echo(f"- {task.key}: {task.title} [{task.status.value}]")


@app.command("work-on-tasks")
def work_on_tasks(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    project: Optional[str] = typer.Option(None, "--project", help="Only tasks of this project."),
    epic: Optional[str] = typer.Option(None, "--epic", help="Only tasks of this epic."),
    story: Optional[str] = typer.Option(None, "--story", help="Only tasks of this story."),
    task: List[str] = typer.Option([], "--task", help="Explicit task key; repeatable."),
    status: List[str] = typer.Option([], "--status", help="Selectable task status; repeatable."),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Maximum number of tasks to attempt."),
    parallel: Optional[int] = typer.Option(None, "--parallel", min=1, help="Accepted for compatibility; tasks run one at a time."),
    no_commit: bool = typer.Option(False, "--no-commit", help="Apply and test changes but skip commit, merge and push."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Build prompts without calling the agent or touching git."),
    agent: Optional[str] = typer.Option(None, "--agent", help="Agent identifier recorded for runs and ratings."),
    agent_stream: Optional[bool] = typer.Option(
        None,
        "--agent-stream/--no-agent-stream",
        help="Stream agent output to the terminal as it arrives.",
    ),
    base_branch: Optional[str] = typer.Option(None, "--base-branch", help="Shared base branch for task branches."),
    auto_merge: Optional[bool] = typer.Option(
        None,
        "--auto-merge/--no-auto-merge",
        help="Merge task branches back into the base branch.",
    ),
    auto_push: Optional[bool] = typer.Option(
        None,
        "--auto-push/--no-auto-push",
        help="Push task and base branches to the remote.",
    ),
    rate_agents: bool = typer.Option(False, "--rate-agents", help="Record an agent quality rating per task."),
    max_agent_seconds: Optional[float] = typer.Option(None, "--max-agent-seconds", help="Time budget per agent call."),
    json_output: bool = typer.Option(False, "--json", help="Emit the job result as JSON."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level."),
) -> None:
    """Select tasks and work on them with the configured agent."""
    config_path = Path(config)
    config_data = load_config(config_path)
    _configure_logging(config_data, log_level)
    repo_root = _resolve_repo_root(config_data, config_path)

    statuses: List[str] = []
    for value in status:
        try:
            statuses.append(TaskStatus(value.strip().lower()).value)
        except ValueError as error:
            raise typer.BadParameter(f"Unknown task status: {value}") from error

    abort = AbortSignal()
    try:
        orchestrator = TaskOrchestrator.from_config(
            config_data,
            root=repo_root,
            agent_name=agent,
            max_agent_seconds=max_agent_seconds,
            abort=abort,
        )
    except (ValueError, GitError, StoreError) as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    stream_to_terminal = agent_stream if agent_stream is not None else bool((config_data.get("agent") or {}).get("stream", True))
    request = WorkOnTasksRequest(
        project_key=project or (config_data.get("project") or {}).get("key") or None,
        epic_key=epic,
        story_key=story,
        task_keys=list(task),
        statuses=statuses,
        limit=limit,
        parallel=parallel,
        no_commit=no_commit,
        dry_run=dry_run,
        agent_name=agent,
        agent_stream=agent_stream,
        base_branch=base_branch,
        auto_merge=auto_merge,
        auto_push=auto_push,
        rate_agents=rate_agents,
        max_agent_seconds=max_agent_seconds,
        on_agent_chunk=_print_chunk if stream_to_terminal and not json_output else None,
    )

    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: abort.abort("interrupted"))
    try:
        result = orchestrator.work_on_tasks(request)
    except TaskAbortedError as error:
        typer.echo(f"Aborted: {error}")
        raise typer.Exit(code=1) from error
    except (GitError, StoreError) as error:
        typer.echo(f"work-on-tasks failed: {error}")
        raise typer.Exit(code=1) from error
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if json_output:
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _render_result(result)
    code = EXIT_CODES.get(result.state, 1)
    if code:
        raise typer.Exit(code=code)


@app.command()
def status(
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
) -> None:
    """Report task statuses and active locks."""
    config_path = Path(config)
    config_data = load_config(config_path)
    repo_root = _resolve_repo_root(config_data, config_path)
    project = config_data.get("project") or {}
    typer.echo(f"Loaded configuration from {config_path}")
    typer.echo(f"Project: {project.get('name') or 'unnamed'}")

    with WorkspaceStore.from_config(config_data, root=repo_root) as store:
        tasks = store.list_tasks()
        locks = store.list_locks(active_only=True)
        keys = {task.id: task.key for task in tasks}

    counts: Dict[str, int] = {}
    for item in tasks:
        counts[item.status.value] = counts.get(item.status.value, 0) + 1
    summary = " | ".join(f"{name} {count}" for name, count in sorted(counts.items()))
    typer.echo(f"Tasks: total {len(tasks)}" + (f" | {summary}" if summary else ""))
    for item in tasks:
        reason = item.metadata.get("blocked_reason") if item.status is TaskStatus.BLOCKED else None
        suffix = f" ({reason})" if reason else ""
        typer.echo(f"- {item.key} [{item.status.value}] {item.title}{suffix}")
    if locks:
        typer.echo("Active locks:")
        for lock in locks:
            typer.echo(f"- {keys.get(lock.task_id, lock.task_id)} held by {lock.holder_run_id} until {lock.expires_at.isoformat()}")
    else:
        typer.echo("No active locks.")


if __name__ == "__main__":
    app()
