"""Stopping shell commands together with everything they started."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time

LOGGER = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 2.0


def _signal_group(pgid: int, signum: int) -> bool:
    """Send ``signum`` to the group; ``False`` once the group is gone."""
    try:
        os.killpg(pgid, signum)
    except ProcessLookupError:
        return False
    return True


def terminate_process_group(process: subprocess.Popen, *, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> None:
    """SIGTERM the process group, then SIGKILL whatever outlives the grace period.

    ``process`` must have been started with ``start_new_session=True`` so its
    pid is also the group id of every command the shell spawned.
    """
    pgid = process.pid
    if not _signal_group(pgid, signal.SIGTERM):
        return
    deadline = time.monotonic() + max(0.0, grace_seconds)
    while time.monotonic() < deadline:
        process.poll()
        if not _signal_group(pgid, 0):
            return
        time.sleep(0.05)
    if _signal_group(pgid, signal.SIGKILL):
        LOGGER.warning("Process group %s ignored SIGTERM; killed", pgid)


__all__ = ["DEFAULT_GRACE_SECONDS", "terminate_process_group"]
