from __future__ import annotations

import threading
import time

import pytest

from taskforge.models.agent_client import (
    AgentRequest,
    AgentTimeoutError,
    AgentTransportError,
    CommandAgentClient,
)
from taskforge.utils.abort import AbortSignal, TaskAbortedError


def test_command_agent_receives_prompt_on_stdin() -> None:
    client = CommandAgentClient("cat")

    response = client.invoke(client.agent_id, AgentRequest(input="Task T-1: hello\n"))

    assert client.agent_id == "cat"
    assert response.output == "Task T-1: hello\n"


def test_command_agent_streams_lines() -> None:
    client = CommandAgentClient("printf 'one\\ntwo\\n'", agent_id="printer")

    chunks = [chunk.output for chunk in client.invoke_stream("printer", AgentRequest(input=""))]

    assert chunks == ["one\n", "two\n"]


def test_non_zero_exit_is_retried_then_raised() -> None:
    client = CommandAgentClient("echo broken >&2; exit 3", agent_id="flaky", max_attempts=2)
    client._retry_delay = 0

    with pytest.raises(AgentTransportError) as excinfo:
        client.invoke("flaky", AgentRequest(input="x"))

    assert "after 2 attempt(s)" in str(excinfo.value)
    assert "broken" in str(excinfo.value.__cause__)


def test_slow_agent_times_out() -> None:
    client = CommandAgentClient("exec sleep 5", agent_id="slow", max_seconds=0.2)

    with pytest.raises(AgentTimeoutError):
        client.invoke("slow", AgentRequest(input=""))


def test_aborted_signal_prevents_call() -> None:
    abort = AbortSignal()
    abort.abort("stop")
    client = CommandAgentClient("cat", abort=abort)

    with pytest.raises(TaskAbortedError):
        client.invoke("cat", AgentRequest(input="x"))


def test_empty_command_is_rejected() -> None:
    with pytest.raises(ValueError):
        CommandAgentClient("  ")


def test_timeout_stops_commands_started_by_the_shell() -> None:
    client = CommandAgentClient("cat >/dev/null; sleep 6; echo late", agent_id="slow", max_seconds=0.5)
    started = time.monotonic()

    with pytest.raises(AgentTimeoutError):
        client.invoke("slow", AgentRequest(input="prompt"))

    assert time.monotonic() - started < 4


def test_abort_during_call_stops_the_agent() -> None:
    abort = AbortSignal()
    client = CommandAgentClient("cat >/dev/null; sleep 6; echo late", agent_id="slow", abort=abort)
    started = time.monotonic()
    chunks = client.invoke_stream("slow", AgentRequest(input="prompt"))
    timer = threading.Timer(0.3, abort.abort, args=("stop",))
    timer.start()

    try:
        with pytest.raises(TaskAbortedError):
            list(chunks)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 4
