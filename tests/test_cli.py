"""Tests for the deploy-orchestrator command-line interface."""
from __future__ import annotations

import json
import os
import signal
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from src.deploy_api.cli import app
from src.registry.store import PipelineRegistry

runner = CliRunner()


@pytest.fixture
def files(tmp_path: Path) -> tuple[Path, Path]:
    state = tmp_path / "state.json"
    state.write_text(
        json.dumps(
            {
                "schemaVersion": 2,
                "pipelines": [
                    {
                        "pipelineName": "fps",
                        "activeBranch": "",
                        "activeResourcesPath": "",
                        "activePID": 0,
                        "availableBranches": [
                            {"name": "abc123", "path": "/srv/artifacts/fps/abc123.jar"}
                        ],
                        "buildStatus": [
                            {
                                "commitId": "abc123",
                                "branchName": "main",
                                "status": "Success",
                                "progression": 100,
                            },
                            {
                                "commitId": "def456",
                                "branchName": "dev",
                                "status": "Failure",
                                "progression": 0,
                            },
                        ],
                    }
                ],
            }
        )
    )
    pipelines = tmp_path / "pipelines.yaml"
    pipelines.write_text(
        yaml.safe_dump({"pipelines": {"fps": {"type": "spring_boot", "repo_path": str(tmp_path)}}})
    )
    return state, pipelines


def _args(files) -> list[str]:
    state, pipelines = files
    return ["--state", str(state), "--pipelines", str(pipelines)]


class TestStatus:
    def test_prints_build_history(self, files):
        result = runner.invoke(app, ["status", *_args(files)])
        assert result.exit_code == 0, result.output
        assert "abc123" in result.output
        assert "Success" in result.output
        assert "def456" in result.output
        assert "Failure" in result.output

    def test_single_pipeline(self, files):
        result = runner.invoke(app, ["status", "fps", *_args(files)])
        assert result.exit_code == 0, result.output
        assert "fps" in result.output

    def test_unknown_pipeline(self, files):
        result = runner.invoke(app, ["status", "nope", *_args(files)])
        assert result.exit_code == 1
        assert "Unknown pipeline" in result.output

    def test_corrupt_state(self, files):
        state, _ = files
        state.write_text("[1, 2")
        result = runner.invoke(app, ["status", *_args(files)])
        assert result.exit_code == 1
        assert "corrupt" in result.output


class TestActivate:
    def test_activates_artifact(self, files, fake_java, tmp_path, monkeypatch):
        monkeypatch.setenv("JAVA_COMMAND", str(fake_java))
        monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
        result = runner.invoke(app, ["activate", "fps", "abc123", *_args(files)])
        state, _ = files
        pid = json.loads(state.read_text())["pipelines"][0]["activePID"]
        try:
            assert result.exit_code == 0, result.output
            assert "Activated" in result.output
            assert pid > 0
        finally:
            if pid:
                os.kill(pid, signal.SIGKILL)

    def test_unknown_commit(self, files):
        result = runner.invoke(app, ["activate", "fps", "zzz999", *_args(files)])
        assert result.exit_code == 1
        assert "zzz999" in result.output

    def test_refused_while_service_owns_state(self, files, fake_java, monkeypatch):
        monkeypatch.setenv("JAVA_COMMAND", str(fake_java))
        state, _ = files
        service_registry = PipelineRegistry(state)
        service_registry.load()
        try:
            result = runner.invoke(app, ["activate", "fps", "abc123", *_args(files)])
        finally:
            service_registry.close()
        assert result.exit_code == 1
        assert "in use by another process" in " ".join(result.output.split())
        assert json.loads(state.read_text())["pipelines"][0]["activePID"] == 0

    def test_status_works_while_service_owns_state(self, files):
        state, _ = files
        service_registry = PipelineRegistry(state)
        service_registry.load()
        try:
            result = runner.invoke(app, ["status", *_args(files)])
        finally:
            service_registry.close()
        assert result.exit_code == 0, result.output
        assert "abc123" in result.output


class TestServe:
    def test_runs_uvicorn(self, monkeypatch):
        monkeypatch.delenv("HOST", raising=False)
        monkeypatch.delenv("PORT", raising=False)
        with patch("uvicorn.run") as run:
            result = runner.invoke(app, ["serve", "--port", "8099"])
        assert result.exit_code == 0, result.output
        args, kwargs = run.call_args
        assert args == ("src.deploy_api.main:app",)
        assert kwargs["port"] == 8099
        assert kwargs["host"] == "0.0.0.0"


def test_no_args_shows_help():
    result = runner.invoke(app, [])
    assert "status" in result.output
