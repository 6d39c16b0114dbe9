"""Tests for the process lifecycle manager."""
from __future__ import annotations

import asyncio
import subprocess
import sys
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from src.engine.log_sink import run_log_path
from src.process.lifecycle import pid_alive
from src.process.manager import ProcessManager
from src.shared.errors import (
    ActivationInProgressError,
    RegistryWriteError,
    SpawnFailedError,
    TerminateTimeoutError,
    UnknownBranchError,
    UnknownPipelineError,
)
from src.shared.models.pipeline import BranchInfo

_IGNORE_SIGINT = (
    "import signal, time; "
    "signal.signal(signal.SIGINT, signal.SIG_IGN); "
    "print('ready', flush=True); time.sleep(30)"
)


@pytest.fixture
def manager(registry, definitions, log_dir, fake_java):
    return ProcessManager(
        registry,
        definitions,
        log_dir,
        java_command=str(fake_java),
        secret="s3cret",
        terminate_timeout_ms=3000,
        terminate_poll_ms=20,
    )


def _branch(name: str) -> BranchInfo:
    return BranchInfo(name=name, path=f"/srv/artifacts/fps/{name}.jar")


async def _wait_for_text(path: Path, text: str, timeout: float = 5.0) -> str:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if path.exists() and text in path.read_text():
            return path.read_text()
        await asyncio.sleep(0.02)
    raise AssertionError(f"{text!r} never appeared in {path}")


class TestActivate:
    @pytest.mark.asyncio
    async def test_first_activation_spawns_and_records(self, manager, registry, log_dir):
        with patch("src.process.manager.terminate_process", new=AsyncMock()) as terminate:
            pipeline = await manager.activate("fps", _branch("abc123"))
        try:
            terminate.assert_not_awaited()
            assert pipeline.active_branch == "abc123"
            assert pipeline.active_resources_path == "/srv/artifacts/fps/abc123.jar"
            assert pipeline.active_pid > 0
            assert pid_alive(pipeline.active_pid)
            assert manager.state_of("fps") == "running"
            stored = registry.get_by_name("fps")
            assert stored.active_pid == pipeline.active_pid

            text = await _wait_for_text(run_log_path(log_dir, "abc123"), "started")
            assert "-jar /srv/artifacts/fps/abc123.jar" in text
            assert "--jasypt.encryptor.password=s3cret" in text
            assert "--server.port=8080" in text
        finally:
            await manager.deactivate("fps")

    @pytest.mark.asyncio
    async def test_reactivation_replaces_process(self, manager, registry):
        first = await manager.activate("fps", _branch("abc123"))
        old_handle = manager._slots["fps"].handle
        second = await manager.activate("fps", _branch("def456"))
        try:
            assert old_handle.poll() is not None
            assert second.active_pid != first.active_pid
            assert registry.get_by_name("fps").active_branch == "def456"
            assert manager.state_of("fps") == "running"
        finally:
            await manager.deactivate("fps")

    @pytest.mark.asyncio
    async def test_terminate_timeout_leaves_state_untouched(self, manager, registry, log_dir):
        manager.terminate_timeout_ms = 200
        old = subprocess.Popen(
            [sys.executable, "-c", _IGNORE_SIGINT], stdout=subprocess.PIPE, start_new_session=True
        )
        try:
            assert old.stdout.readline().strip() == b"ready"
            await registry.update_fields(
                "fps", active_branch="old000", active_pid=old.pid
            )

            with pytest.raises(TerminateTimeoutError):
                await manager.activate("fps", _branch("abc123"))

            fps = registry.get_by_name("fps")
            assert fps.active_pid == old.pid
            assert fps.active_branch == "old000"
            assert old.poll() is None
            assert not run_log_path(log_dir, "abc123").exists()
            assert manager.state_of("fps") == "running"
        finally:
            old.kill()
            old.wait()
            old.stdout.close()

    @pytest.mark.asyncio
    async def test_dead_recorded_pid_is_not_terminated(self, manager, registry):
        gone = subprocess.Popen([sys.executable, "-c", "pass"])
        gone.wait()
        await registry.update_field("fps", "active_pid", gone.pid)

        with patch("src.process.manager.terminate_process", new=AsyncMock()) as terminate:
            pipeline = await manager.activate("fps", _branch("abc123"))
        try:
            terminate.assert_not_awaited()
            assert pipeline.active_pid not in (0, gone.pid)
        finally:
            await manager.deactivate("fps")

    @pytest.mark.asyncio
    async def test_spawn_failure_leaves_registry_unchanged(self, manager, registry):
        manager.java_command = "no-such-java-xyz"
        before = registry.get_by_name("fps")
        with pytest.raises(SpawnFailedError):
            await manager.activate("fps", _branch("abc123"))
        assert registry.get_by_name("fps") == before
        assert manager.state_of("fps") == "idle"

    @pytest.mark.asyncio
    async def test_reaped_pid_left_by_spawn_failure_is_not_signalled(self, manager, registry):
        first = await manager.activate("fps", _branch("abc123"))
        java = manager.java_command
        manager.java_command = "no-such-java-xyz"
        with pytest.raises(SpawnFailedError):
            await manager.activate("fps", _branch("def456"))
        assert registry.get_by_name("fps").active_pid == first.active_pid

        manager.java_command = java
        # the number now belongs to some unrelated process
        with patch("src.process.manager.pid_alive", return_value=True), patch(
            "src.process.manager.terminate_process", new=AsyncMock()
        ) as terminate:
            pipeline = await manager.activate("fps", _branch("def456"))
        try:
            terminate.assert_not_awaited()
            assert pipeline.active_pid not in (0, first.active_pid)
            assert manager.state_of("fps") == "running"
        finally:
            await manager.deactivate("fps")

    @pytest.mark.asyncio
    async def test_registry_failure_kills_new_process(self, manager, registry):
        with patch("src.registry.store.atomic_write_json", side_effect=OSError("disk full")):
            with pytest.raises(RegistryWriteError):
                await manager.activate("fps", _branch("abc123"))
        assert registry.get_by_name("fps").active_pid == 0
        assert manager.state_of("fps") == "idle"
        assert manager._slots["fps"].handle is None

    @pytest.mark.asyncio
    async def test_concurrent_activation_rejected(self, manager):
        slot = manager._slot("fps")
        async with slot.lock:
            with pytest.raises(ActivationInProgressError):
                await manager.activate("fps", _branch("abc123"))

    @pytest.mark.asyncio
    async def test_non_runnable_pipeline_publishes_only(self, manager, registry):
        branch = BranchInfo(name="main-abc123", path="/srv/www/abc123")
        pipeline = await manager.activate("frontend", branch)
        assert pipeline.active_branch == "main-abc123"
        assert pipeline.active_resources_path == "/srv/www/abc123"
        assert pipeline.active_pid == 0
        assert manager.state_of("frontend") == "idle"

    @pytest.mark.asyncio
    async def test_unknown_pipeline(self, manager):
        with pytest.raises(UnknownPipelineError):
            await manager.activate("nope", _branch("abc123"))


class TestActivateBranch:
    @pytest.mark.asyncio
    async def test_resolves_branch_by_commit(self, manager, registry):
        await registry.add_available_branch("fps", _branch("abc123"))
        branch = await manager.activate_branch("fps", "abc123")
        try:
            assert branch.name == "abc123"
            assert registry.get_by_name("fps").active_branch == "abc123"
        finally:
            await manager.deactivate("fps")

    @pytest.mark.asyncio
    async def test_unknown_commit(self, manager):
        with pytest.raises(UnknownBranchError):
            await manager.activate_branch("fps", "zzz999")


class TestDeactivate:
    @pytest.mark.asyncio
    async def test_stops_process_and_clears_pid(self, manager, registry):
        pipeline = await manager.activate("fps", _branch("abc123"))
        handle = manager._slots["fps"].handle

        result = await manager.deactivate("fps")

        assert result.active_pid == 0
        assert result.active_branch == "abc123"
        assert handle.poll() is not None
        assert not pid_alive(pipeline.active_pid, handle)
        assert manager.state_of("fps") == "idle"

    @pytest.mark.asyncio
    async def test_nothing_active(self, manager, registry):
        result = await manager.deactivate("fps")
        assert result.active_pid == 0


class TestReadRunLog:
    @pytest.mark.asyncio
    async def test_reads_active_branch_log(self, manager, registry, log_dir):
        await registry.update_field("fps", "activeBranch", "abc123")
        run_log_path(log_dir, "abc123").write_text("Started Application in 3.2 seconds")
        assert "Started Application" in await manager.read_run_log("fps")

    @pytest.mark.asyncio
    async def test_no_active_branch(self, manager):
        with pytest.raises(UnknownBranchError):
            await manager.read_run_log("fps")

    @pytest.mark.asyncio
    async def test_missing_log_file(self, manager, registry):
        await registry.update_field("fps", "activeBranch", "abc123")
        with pytest.raises(UnknownBranchError):
            await manager.read_run_log("fps")
