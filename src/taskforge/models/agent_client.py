"""Agent client base class and the shell-command transport."""

from __future__ import annotations

import functools
import logging
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ..utils.abort import AbortSignal, TaskAbortedError
from ..utils.processes import terminate_process_group

__all__ = [
    "AgentChunk",
    "AgentClient",
    "AgentClientError",
    "AgentRequest",
    "AgentResponse",
    "AgentTimeoutError",
    "AgentTransportError",
    "CommandAgentClient",
]

LOGGER = logging.getLogger(__name__)


class AgentClientError(RuntimeError):
    """Base error raised for agent invocation failures."""


class AgentTransportError(AgentClientError):
    """Raised when the underlying transport fails to return output."""


class AgentTimeoutError(AgentClientError):
    """Raised when an agent call exceeds its time budget."""


@dataclass(slots=True)
class AgentRequest:
    """Prompt payload sent to an agent."""

    input: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentResponse:
    output: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentChunk:
    output: str


class AgentClient:
    """Base class for agent integrations.

    Subclasses implement :meth:`_raw_invoke`; streaming transports also
    override :meth:`_raw_stream` and set ``supports_streaming``.
    Transport errors are retried up to ``max_attempts`` times.
    """

    supports_streaming = False

    def __init__(self, agent_id: str = "default", *, max_attempts: int = 1, retry_delay: float = 0.5) -> None:
        self._agent_id = agent_id
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    @property
    def agent_id(self) -> str:
        """Return the identifier recorded against runs, tokens and ratings."""
        return self._agent_id

    def invoke(self, agent_id: str, request: AgentRequest) -> AgentResponse:
        """Invoke the agent and return its complete output."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                output = self._raw_invoke(agent_id, request)
                return AgentResponse(output=output or "")
            except AgentTransportError as error:
                last_error = error
                LOGGER.warning("Agent %s attempt %d/%d failed: %s", agent_id, attempt, self._max_attempts, error)
                if attempt >= self._max_attempts:
                    break
                time.sleep(self._retry_delay)
        raise AgentTransportError(
            f"Agent {agent_id} failed after {self._max_attempts} attempt(s)"
        ) from last_error

    def invoke_stream(self, agent_id: str, request: AgentRequest) -> Iterator[AgentChunk]:
        """Yield output chunks; non-streaming transports yield one chunk."""
        if not self.supports_streaming:
            yield AgentChunk(output=self.invoke(agent_id, request).output)
            return
        yield from self._raw_stream(agent_id, request)

    def cancel(self) -> None:
        """Stop any in-flight call. The base client has nothing to stop."""

    def close(self) -> None:
        """Release transport resources."""
        self.cancel()

    def _raw_invoke(self, agent_id: str, request: AgentRequest) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    def _raw_stream(self, agent_id: str, request: AgentRequest) -> Iterator[AgentChunk]:
        raise NotImplementedError("Streaming transports must implement _raw_stream().")


class CommandAgentClient(AgentClient):
    """Run a shell command as the agent, feeding the prompt on stdin.

    Stdout lines are streamed back as chunks. ``max_seconds`` bounds each
    call and the optional abort signal terminates the running process.
    """

    supports_streaming = True

    def __init__(
        self,
        command: str,
        *,
        agent_id: str | None = None,
        max_seconds: float | None = None,
        abort: AbortSignal | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        max_attempts: int = 1,
    ) -> None:
        if not command or not command.strip():
            raise ValueError("An agent command is required.")
        super().__init__(agent_id or _default_agent_id(command), max_attempts=max_attempts)
        self.command = command
        self.max_seconds = max_seconds
        self.abort = abort
        self.cwd = Path(cwd) if cwd is not None else None
        self.env = dict(env) if env is not None else None
        self._active: List[subprocess.Popen] = []
        self._active_lock = threading.Lock()

    def _spawn(self) -> subprocess.Popen:
        process = subprocess.Popen(  # noqa: S602 - the agent command is user configuration
            self.command,
            shell=True,
            cwd=str(self.cwd) if self.cwd else None,
            env=self.env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
        with self._active_lock:
            self._active.append(process)
        return process

    def _forget(self, process: subprocess.Popen) -> None:
        with self._active_lock:
            if process in self._active:
                self._active.remove(process)

    def _raw_invoke(self, agent_id: str, request: AgentRequest) -> str:
        return "".join(chunk.output for chunk in self._raw_stream(agent_id, request))

    def _raw_stream(self, agent_id: str, request: AgentRequest) -> Iterator[AgentChunk]:
        if self.abort is not None:
            self.abort.raise_if_aborted("agent")
        process = self._spawn()
        timed_out = threading.Event()

        def _kill_on_timeout() -> None:
            timed_out.set()
            terminate_process_group(process)

        timer: threading.Timer | None = None
        if self.max_seconds and self.max_seconds > 0:
            timer = threading.Timer(self.max_seconds, _kill_on_timeout)
            timer.daemon = True
            timer.start()
        unregister = None
        if self.abort is not None:
            unregister = self.abort.add_listener(functools.partial(terminate_process_group, process))

        stderr_parts: List[str] = []
        reader = threading.Thread(target=_drain, args=(process.stderr, stderr_parts), daemon=True)
        writer = threading.Thread(target=_feed, args=(process.stdin, request.input), daemon=True)
        reader.start()
        writer.start()
        try:
            assert process.stdout is not None
            for line in process.stdout:
                yield AgentChunk(output=line)
            process.wait()
        finally:
            if timer is not None:
                timer.cancel()
            if unregister is not None:
                unregister()
            terminate_process_group(process)
            process.wait()
            writer.join(timeout=1)
            reader.join(timeout=1)
            self._forget(process)

        if self.abort is not None and self.abort.aborted:
            raise TaskAbortedError("Agent call aborted.", reason=self.abort.reason)
        if timed_out.is_set():
            raise AgentTimeoutError(f"Agent {agent_id} exceeded {self.max_seconds} seconds.")
        if process.returncode != 0:
            stderr = "".join(stderr_parts).strip()
            raise AgentTransportError(
                f"Agent command exited with code {process.returncode}: {stderr[-500:] or 'no stderr'}"
            )

    def cancel(self) -> None:
        with self._active_lock:
            active = list(self._active)
        for process in active:
            LOGGER.warning("Terminating agent process group %s", process.pid)
            terminate_process_group(process)
            process.wait()


def _default_agent_id(command: str) -> str:
    try:
        parts = shlex.split(command)
    except ValueError:
        parts = command.split()
    return Path(parts[0]).name if parts else "command"


def _feed(stream: Any, text: str) -> None:
    if stream is None:
        return
    try:
        stream.write(text)
    except BrokenPipeError:
        LOGGER.debug("Agent process closed stdin early")
    finally:
        try:
            stream.close()
        except BrokenPipeError:
            LOGGER.debug("Agent stdin already closed")


def _drain(stream: Any, sink: List[str]) -> None:
    if stream is None:
        return
    for line in stream:
        sink.append(line)
