"""Tests for shared error classes and exception handlers."""
from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.shared.errors import (
    ActivationInProgressError,
    AppError,
    BranchNotFoundError,
    BuildInProgressError,
    CommitNotFoundError,
    ConflictError,
    DuplicateBuildError,
    NotARepositoryError,
    NotFoundError,
    NotInitializedError,
    RegistryDegradedError,
    RegistryLockedError,
    RegistryWriteError,
    SpawnFailedError,
    StateCorruptError,
    StepCommandFailedError,
    TerminateTimeoutError,
    UnknownBranchError,
    UnknownPipelineError,
    register_exception_handlers,
)


class TestAppError:
    """Tests for the base AppError exception."""

    def test_default_status_code(self):
        err = AppError(detail="something broke")
        assert err.status_code == 500
        assert err.detail == "something broke"

    def test_custom_status_code(self):
        err = AppError(detail="bad request", status_code=400)
        assert err.status_code == 400

    def test_str_is_detail(self):
        err = AppError(detail="human readable")
        assert str(err) == "human readable"


class TestDomainErrors:
    def test_unknown_pipeline(self):
        err = UnknownPipelineError("fps")
        assert err.status_code == 404
        assert err.pipeline_name == "fps"
        assert "fps" in err.detail
        assert isinstance(err, NotFoundError)

    def test_unknown_branch_with_commit(self):
        err = UnknownBranchError("fps", "abc123")
        assert err.status_code == 404
        assert err.commit_id == "abc123"
        assert "abc123" in err.detail

    def test_unknown_branch_without_commit_mentions_active(self):
        err = UnknownBranchError("fps")
        assert "no active branch" in err.detail

    def test_duplicate_build_is_conflict(self):
        err = DuplicateBuildError("abc123")
        assert err.status_code == 409
        assert err.commit_id == "abc123"
        assert isinstance(err, ConflictError)

    def test_activation_in_progress_is_conflict(self):
        assert ActivationInProgressError("fps").status_code == 409

    def test_build_in_progress_names_running_build(self):
        err = BuildInProgressError("fps", "aaa111")
        assert err.status_code == 409
        assert (err.pipeline_name, err.commit_id) == ("fps", "aaa111")
        assert "aaa111" in err.detail

    def test_registry_locked_is_conflict(self):
        err = RegistryLockedError("/var/lib/deploy/state.json")
        assert err.status_code == 409
        assert err.path == "/var/lib/deploy/state.json"

    @pytest.mark.parametrize(
        "err",
        [
            TerminateTimeoutError(4242, 5000),
            SpawnFailedError("/a/b.jar", "no such file"),
            NotARepositoryError("/srv/repo"),
            RegistryWriteError("/state.json", "disk full"),
            RegistryDegradedError(3),
            StateCorruptError("/state.json", "bad json"),
            NotInitializedError(),
            StepCommandFailedError("mvn clean install", 1),
        ],
    )
    def test_server_side_errors_are_500(self, err):
        assert err.status_code == 500

    @pytest.mark.parametrize(
        "err", [CommitNotFoundError("abc123"), BranchNotFoundError("main", "abc123")]
    )
    def test_source_lookup_errors_are_404(self, err):
        assert err.status_code == 404

    def test_terminate_timeout_attributes(self):
        err = TerminateTimeoutError(4242, 5000)
        assert err.pid == 4242
        assert err.timeout_ms == 5000
        assert "5000ms" in err.detail

    def test_step_command_failed_attributes(self):
        err = StepCommandFailedError("pnpm run lint", 2)
        assert err.command == "pnpm run lint"
        assert err.exit_code == 2

    def test_not_initialized_default_detail(self):
        assert NotInitializedError().detail == "Build chain executed before init"

    def test_branch_not_found_without_commit(self):
        assert BranchNotFoundError("feature").detail == "Branch 'feature' not found"


class TestExceptionHandlers:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/missing")
        async def missing():
            raise UnknownPipelineError("nope")

        @app.get("/dup")
        async def dup():
            raise DuplicateBuildError("abc123")

        @app.get("/timeout")
        async def timeout():
            raise TerminateTimeoutError(7, 5000)

        return TestClient(app)

    def test_not_found_maps_to_404(self, client):
        resp = client.get("/missing")
        assert resp.status_code == 404
        assert resp.json() == {"detail": "Unknown pipeline 'nope'"}

    def test_conflict_maps_to_409(self, client):
        resp = client.get("/dup")
        assert resp.status_code == 409
        assert "abc123" in resp.json()["detail"]

    def test_lifecycle_failure_maps_to_500(self, client):
        resp = client.get("/timeout")
        assert resp.status_code == 500
