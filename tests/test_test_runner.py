from __future__ import annotations

import shlex
import sys
import threading
import time
from pathlib import Path

import pytest

from taskforge.tools.test_runner import (
    TestRequirements,
    derive_scoped_command,
    format_failure_summary,
    resolve_test_commands,
    run_test_commands,
    sanitize_test_commands,
)
from taskforge.utils.abort import AbortSignal, TaskAbortedError

PYTHON = shlex.quote(sys.executable)


def test_requirements_from_metadata() -> None:
    requirements = TestRequirements.from_metadata({"unit": "pytest -q", "integration": ["make it", " "]})

    assert requirements.declared
    assert requirements.unit == ["pytest -q"]
    assert requirements.integration == ["make it"]
    assert requirements.has_commands
    assert not TestRequirements.from_metadata(None).declared


def test_package_manager_commands_need_package_json(tmp_path: Path) -> None:
    kept, dropped = sanitize_test_commands(["npm test", "npm test --prefix web", "pytest -q"], tmp_path)

    assert kept == ["npm test --prefix web", "pytest -q"]
    assert dropped == ["npm test"]


def test_scoped_command_walks_to_nearest_manifest(tmp_path: Path) -> None:
    package = tmp_path / "services" / "api"
    (package / "src").mkdir(parents=True)
    (package / "pyproject.toml").write_text("[project]\nname = 'api'\n", encoding="utf-8")

    command = derive_scoped_command(["services/api/src/handler.py"], tmp_path)

    assert command == f"{PYTHON} -m pytest services/api"


def test_resolve_synthesizes_run_all_script(tmp_path: Path) -> None:
    requirements = TestRequirements.from_metadata({"unit": ["pytest -q"]})

    resolved = resolve_test_commands(["pytest -q"], requirements, [], tmp_path)

    assert resolved.run_all_created
    assert (tmp_path / "tests" / "all.py").is_file()
    assert resolved.commands == ["pytest -q", f"{PYTHON} tests/all.py"]
    assert not resolved.not_configured


def test_declared_requirements_without_commands_are_not_configured(tmp_path: Path) -> None:
    requirements = TestRequirements.from_metadata({"unit": []})

    resolved = resolve_test_commands([], requirements, ["README.md"], tmp_path)

    assert resolved.commands == []
    assert resolved.not_configured


def test_no_requirements_means_nothing_to_run(tmp_path: Path) -> None:
    resolved = resolve_test_commands([], TestRequirements(), [], tmp_path)

    assert resolved.commands == []
    assert not resolved.not_configured


def test_run_stops_at_first_failure_and_truncates(tmp_path: Path) -> None:
    noisy = f"{PYTHON} -c \"import sys; print('x' * 50); sys.exit(3)\""
    never = f"{PYTHON} -c \"open('ran.txt', 'w').write('1')\""

    outcome = run_test_commands([noisy, never], tmp_path, output_limit=10)

    assert not outcome.ok
    assert len(outcome.results) == 1
    assert outcome.results[0].exit_code == 3
    assert "[truncated" in outcome.results[0].stdout
    assert not (tmp_path / "ran.txt").exists()
    assert "exited with code 3" in format_failure_summary(outcome)


def test_run_passes(tmp_path: Path) -> None:
    outcome = run_test_commands([f"{PYTHON} -c \"print('ok')\""], tmp_path)

    assert outcome.ok
    assert outcome.results[0].stdout.strip() == "ok"


def test_aborted_signal_stops_run(tmp_path: Path) -> None:
    abort = AbortSignal()
    abort.abort("user cancelled")

    with pytest.raises(TaskAbortedError) as excinfo:
        run_test_commands([f"{PYTHON} -c \"print('never')\""], tmp_path, abort=abort)

    assert excinfo.value.reason == "user cancelled"


def test_abort_stops_commands_started_by_the_shell(tmp_path: Path) -> None:
    abort = AbortSignal()
    timer = threading.Timer(0.3, abort.abort, args=("user cancelled",))
    started = time.monotonic()
    timer.start()

    try:
        with pytest.raises(TaskAbortedError):
            run_test_commands(["sleep 8 && true"], tmp_path, abort=abort)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 5


def test_timeout_stops_compound_command(tmp_path: Path) -> None:
    started = time.monotonic()

    outcome = run_test_commands(["sleep 8 && echo late"], tmp_path, timeout=0.3)

    assert time.monotonic() - started < 5
    assert not outcome.ok
    assert "late" not in outcome.results[0].stdout
    assert "Timed out after 0.3 seconds" in outcome.results[0].stderr
