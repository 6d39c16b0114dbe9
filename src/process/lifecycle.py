"""OS-level process helpers: spawn, liveness, graceful termination."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Sequence

from src.shared.constants import TERMINATE_POLL_MS, TERMINATE_TIMEOUT_MS
from src.shared.errors import SpawnFailedError, TerminateTimeoutError

logger = logging.getLogger(__name__)


def build_run_command(
    java_command: str,
    artifact: str,
    secret_flag: str,
    secret: str,
    extra_flags: Sequence[str] = (),
) -> list[str]:
    """Argument vector used to start a packaged artifact."""
    return [java_command, "-jar", artifact, f"{secret_flag}={secret}", *extra_flags]


def pid_alive(pid: int, handle: subprocess.Popen | None = None) -> bool:
    """Whether *pid* refers to a live process.

    With a *handle* (a child we spawned) the handle is polled, which
    also reaps it once it exits.  Foreign pids are probed with signal 0.
    """
    if pid <= 0:
        return False
    if handle is not None and handle.pid == pid:
        return handle.poll() is None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by another user.
        return True
    return True


async def terminate_process(
    pid: int,
    handle: subprocess.Popen | None = None,
    timeout_ms: int = TERMINATE_TIMEOUT_MS,
    poll_ms: int = TERMINATE_POLL_MS,
) -> None:
    """Send SIGINT to *pid* and wait for it to exit.

    Raises:
        TerminateTimeoutError: The process is still alive after
            *timeout_ms* milliseconds.
    """
    if not pid_alive(pid, handle):
        return
    try:
        os.kill(pid, signal.SIGINT)
    except ProcessLookupError:
        return
    logger.info("Sent SIGINT to process %d", pid, extra={"pid": pid})

    deadline = time.monotonic() + timeout_ms / 1000
    while True:
        await asyncio.sleep(poll_ms / 1000)
        if not pid_alive(pid, handle):
            logger.info("Process %d exited", pid, extra={"pid": pid})
            return
        if time.monotonic() >= deadline:
            logger.error(
                "Process %d still alive after %dms", pid, timeout_ms, extra={"pid": pid}
            )
            raise TerminateTimeoutError(pid, timeout_ms)


def spawn_artifact(argv: Sequence[str], run_log: Path | str) -> subprocess.Popen:
    """Start *argv* detached from our session, output appended to *run_log*.

    Raises:
        SpawnFailedError: The process could not be started.
    """
    run_log = Path(run_log)
    artifact = argv[2] if len(argv) > 2 else " ".join(argv)
    try:
        run_log.parent.mkdir(parents=True, exist_ok=True)
        with open(run_log, "ab") as log_fh:
            handle = subprocess.Popen(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=log_fh,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
    except OSError as exc:
        raise SpawnFailedError(artifact, str(exc)) from exc

    if not handle.pid:
        raise SpawnFailedError(artifact)
    logger.info("Started %s as process %d", artifact, handle.pid, extra={"pid": handle.pid})
    return handle
