"""Shared test fixtures for the deploy-orchestrator test suite."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Iterator

import pytest

from src.engine.config import PipelineDefinition
from src.registry.store import PipelineRegistry
from src.shared.config import DeploySettings


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "pipeline_state.json"


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    d = tmp_path / "logs"
    d.mkdir()
    return d


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@pytest.fixture
def registry(state_path: Path) -> Iterator[PipelineRegistry]:
    """A loaded registry seeded with ``demo``, ``fps`` and ``frontend``."""
    reg = PipelineRegistry(state_path, seed_names=["demo", "fps", "frontend"])
    reg.load()
    yield reg
    reg.close()


def read_state(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def read_state_file():
    return read_state


# ---------------------------------------------------------------------------
# Pipeline definitions
# ---------------------------------------------------------------------------


@pytest.fixture
def spring_definition(tmp_path: Path) -> PipelineDefinition:
    repo = tmp_path / "repos" / "fps"
    repo.mkdir(parents=True)
    return PipelineDefinition(
        name="fps",
        type="spring_boot",
        repo_path=str(repo),
        output_dir=str(tmp_path / "artifacts" / "fps"),
        run_flags=["--server.port=8080"],
    )


@pytest.fixture
def frontend_definition(tmp_path: Path) -> PipelineDefinition:
    repo = tmp_path / "repos" / "frontend"
    repo.mkdir(parents=True)
    return PipelineDefinition(
        name="frontend",
        type="frontend",
        repo_path=str(repo),
        resources_dir=str(tmp_path / "www"),
    )


@pytest.fixture
def definitions(spring_definition, frontend_definition) -> dict[str, PipelineDefinition]:
    demo = PipelineDefinition(
        name="demo",
        type="spring_boot",
        repo_path=spring_definition.repo_path,
        output_dir=spring_definition.output_dir,
    )
    return {"demo": demo, "fps": spring_definition, "frontend": frontend_definition}


@pytest.fixture
def settings(tmp_path: Path, state_path: Path, log_dir: Path) -> DeploySettings:
    return DeploySettings(
        state_path=str(state_path),
        log_dir=str(log_dir),
        pipelines_config=str(tmp_path / "pipelines.yaml"),
        java_command=sys.executable,
        artifact_secret="s3cret",
        terminate_timeout_ms=2000,
        terminate_poll_ms=20,
    )


@pytest.fixture
def fake_java(tmp_path: Path) -> Path:
    """Stand-in for ``java``: echoes its arguments, then sleeps until interrupted."""
    script = tmp_path / "bin" / "fake-java"
    script.parent.mkdir()
    script.write_text('#!/bin/sh\necho "started $@"\nexec sleep 30\n')
    script.chmod(0o755)
    return script
