"""Process lifecycle manager -- at most one running artifact per pipeline."""

from __future__ import annotations

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Mapping

from src.engine.config import PipelineDefinition
from src.engine.log_sink import read_log_text, run_log_path
from src.process.lifecycle import (
    build_run_command,
    pid_alive,
    spawn_artifact,
    terminate_process,
)
from src.process.state_machine import create_lifecycle_machine
from src.registry.store import PipelineRegistry
from src.shared.constants import TERMINATE_POLL_MS, TERMINATE_TIMEOUT_MS
from src.shared.errors import (
    ActivationInProgressError,
    UnknownBranchError,
    UnknownPipelineError,
)
from src.shared.models.pipeline import BranchInfo, Pipeline

logger = logging.getLogger(__name__)


class ProcessSlot:
    """Lifecycle model for one pipeline; ``state`` is owned by the machine.

    ``reaped_pid`` is the last pid this manager saw exit.  The registry can
    still hold it after a failed spawn, and the OS may since have handed the
    number to an unrelated process, so it is never signalled again.
    """

    def __init__(self, pipeline_name: str, pid: int = 0) -> None:
        self.pipeline_name = pipeline_name
        self.pid = pid
        self.handle: subprocess.Popen | None = None
        self.reaped_pid = 0
        self.lock = asyncio.Lock()
        self.state: str = "idle"

    def track(self, pid: int, handle: subprocess.Popen | None = None) -> None:
        self.pid = pid
        self.handle = handle
        if handle is not None and pid == self.reaped_pid:
            self.reaped_pid = 0

    def reaped(self) -> None:
        self.reaped_pid = self.pid
        self.clear()

    def clear(self) -> None:
        self.track(0)


class ProcessManager:
    """Activates built artifacts and terminates the ones they replace."""

    def __init__(
        self,
        registry: PipelineRegistry,
        definitions: Mapping[str, PipelineDefinition],
        log_dir: Path | str,
        java_command: str = "java",
        secret_flag: str = "--jasypt.encryptor.password",
        secret: str = "",
        terminate_timeout_ms: int = TERMINATE_TIMEOUT_MS,
        terminate_poll_ms: int = TERMINATE_POLL_MS,
    ) -> None:
        self.registry = registry
        self.definitions = dict(definitions)
        self.log_dir = Path(log_dir)
        self.java_command = java_command
        self.secret_flag = secret_flag
        self.secret = secret
        self.terminate_timeout_ms = terminate_timeout_ms
        self.terminate_poll_ms = terminate_poll_ms
        self._slots: dict[str, ProcessSlot] = {}

    def _definition(self, pipeline_name: str) -> PipelineDefinition:
        try:
            return self.definitions[pipeline_name]
        except KeyError:
            raise UnknownPipelineError(pipeline_name) from None

    def _slot(self, pipeline_name: str) -> ProcessSlot:
        slot = self._slots.get(pipeline_name)
        if slot is None:
            pid = self.registry.get_by_name(pipeline_name).active_pid
            slot = ProcessSlot(pipeline_name, pid)
            create_lifecycle_machine(slot, "running" if pid_alive(pid) else "idle")
            self._slots[pipeline_name] = slot
        return slot

    def state_of(self, pipeline_name: str) -> str:
        self._definition(pipeline_name)
        return self._slot(pipeline_name).state

    async def activate_branch(self, pipeline_name: str, commit_id: str) -> BranchInfo:
        """Activate the available branch built from *commit_id*."""
        self._definition(pipeline_name)
        branch = self.registry.find_branch(pipeline_name, commit_id)
        await self.activate(pipeline_name, branch)
        return branch

    async def activate(self, pipeline_name: str, branch: BranchInfo) -> Pipeline:
        """Replace the pipeline's running artifact with *branch*.

        The old process must be gone before the new one is started, and
        ``activeBranch``, ``activeResourcesPath`` and ``activePID`` are
        committed in a single registry update.

        Raises:
            ActivationInProgressError: Another activation is in flight.
            TerminateTimeoutError: The old process did not exit; nothing
                was started and the registry is unchanged.
            SpawnFailedError: The new process could not be started; the
                registry is unchanged.
        """
        definition = self._definition(pipeline_name)
        slot = self._slot(pipeline_name)
        if slot.lock.locked():
            raise ActivationInProgressError(pipeline_name)

        async with slot.lock:
            if not definition.runnable:
                logger.info(
                    "Publishing %s as active resources of %s", branch.name, pipeline_name,
                    extra={"pipeline": pipeline_name},
                )
                return await self.registry.update_fields(
                    pipeline_name,
                    active_branch=branch.name,
                    active_resources_path=branch.path,
                )

            current = self.registry.get_by_name(pipeline_name)
            await self._stop(slot, current.active_pid)

            await slot.begin_start()
            argv = build_run_command(
                self.java_command,
                branch.path,
                self.secret_flag,
                self.secret,
                definition.run_flags,
            )
            try:
                handle = spawn_artifact(argv, run_log_path(self.log_dir, branch.name))
            except BaseException:
                await slot.start_failed()
                raise

            try:
                pipeline = await self.registry.update_fields(
                    pipeline_name,
                    active_branch=branch.name,
                    active_resources_path=branch.path,
                    active_pid=handle.pid,
                )
            except BaseException:
                logger.error(
                    "Registry update failed, killing freshly started process %d", handle.pid,
                    extra={"pipeline": pipeline_name, "pid": handle.pid},
                )
                handle.kill()
                await asyncio.to_thread(handle.wait)
                await slot.start_failed()
                raise

            slot.track(handle.pid, handle)
            await slot.started()
            logger.info(
                "Activated %s for %s as process %d", branch.name, pipeline_name, handle.pid,
                extra={"pipeline": pipeline_name, "pid": handle.pid},
            )
            return pipeline

    async def deactivate(self, pipeline_name: str) -> Pipeline:
        """Terminate the active process and clear ``activePID``."""
        self._definition(pipeline_name)
        slot = self._slot(pipeline_name)
        if slot.lock.locked():
            raise ActivationInProgressError(pipeline_name)

        async with slot.lock:
            current = self.registry.get_by_name(pipeline_name)
            if current.active_pid == 0:
                return current
            await self._stop(slot, current.active_pid)
            return await self.registry.update_field(pipeline_name, "active_pid", 0)

    async def _stop(self, slot: ProcessSlot, pid: int) -> None:
        if pid <= 0:
            if slot.state == "running":
                await slot.exited()
            slot.clear()
            return

        if slot.pid != pid:
            slot.track(pid)
        if slot.state == "idle":
            await slot.adopt()

        if pid == slot.reaped_pid:
            logger.info(
                "Recorded process %d of %s already exited, not signalling it",
                pid, slot.pipeline_name,
                extra={"pipeline": slot.pipeline_name, "pid": pid},
            )
            await slot.exited()
            slot.clear()
            return

        if not pid_alive(pid, slot.handle):
            await slot.exited()
            slot.reaped()
            return

        await slot.begin_stop()
        try:
            await terminate_process(
                pid,
                slot.handle,
                timeout_ms=self.terminate_timeout_ms,
                poll_ms=self.terminate_poll_ms,
            )
        except BaseException:
            await slot.stop_failed()
            raise
        await slot.stopped()
        slot.reaped()

    async def read_run_log(self, pipeline_name: str) -> str:
        """Run log of the pipeline's active branch."""
        pipeline = self.registry.get_by_name(pipeline_name)
        if not pipeline.active_branch:
            raise UnknownBranchError(pipeline_name)
        path = run_log_path(self.log_dir, pipeline.active_branch)
        if not path.is_file():
            raise UnknownBranchError(pipeline_name, pipeline.active_branch)
        return await read_log_text(path)
