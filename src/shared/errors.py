"""Custom exception classes and FastAPI exception handlers."""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str, status_code: int = 500) -> None:
        self.detail = detail
        self.status_code = status_code
        super().__init__(detail)


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, detail: str = "Resource not found") -> None:
        super().__init__(detail=detail, status_code=404)


class ConflictError(AppError):
    """Conflict error (409)."""

    def __init__(self, detail: str = "Conflict") -> None:
        super().__init__(detail=detail, status_code=409)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class UnknownPipelineError(NotFoundError):
    """No pipeline record with the given name."""

    def __init__(self, pipeline_name: str) -> None:
        self.pipeline_name = pipeline_name
        super().__init__(detail=f"Unknown pipeline '{pipeline_name}'")


class UnknownBranchError(NotFoundError):
    """No available branch (or log) matches the given commit."""

    def __init__(self, pipeline_name: str, commit_id: str = "") -> None:
        self.pipeline_name = pipeline_name
        self.commit_id = commit_id
        if commit_id:
            detail = f"No build of commit '{commit_id}' for pipeline '{pipeline_name}'"
        else:
            detail = f"Pipeline '{pipeline_name}' has no active branch"
        super().__init__(detail=detail)


class StateCorruptError(AppError):
    """The registry document cannot be parsed or fails validation.

    Fatal: the service must not start on top of a corrupt document.
    """

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(detail=f"State document {path} is corrupt: {reason}")


class RegistryWriteError(AppError):
    """Writing the registry document failed; the update was not applied."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(detail=f"Failed to write state document {path}: {reason}")


class RegistryDegradedError(AppError):
    """The registry refuses writes after repeated write failures."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        super().__init__(
            detail=(
                f"Registry is degraded after {failures} consecutive write failures; "
                "restart the service to reload the state document"
            )
        )


class RegistryLockedError(ConflictError):
    """Another process holds the state document."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(
            detail=(
                f"State document {path} is in use by another process; "
                "use the running service instead"
            )
        )


# ---------------------------------------------------------------------------
# Execution engine
# ---------------------------------------------------------------------------


class DuplicateBuildError(ConflictError):
    """A build log already exists for the commit and ``force`` was not set."""

    def __init__(self, commit_id: str) -> None:
        self.commit_id = commit_id
        super().__init__(detail=f"Commit '{commit_id}' has already been built")


class BuildInProgressError(ConflictError):
    """A build of the same pipeline is still using its working copy."""

    def __init__(self, pipeline_name: str, commit_id: str) -> None:
        self.pipeline_name = pipeline_name
        self.commit_id = commit_id
        super().__init__(
            detail=f"Pipeline '{pipeline_name}' is still building commit '{commit_id}'"
        )


class NotInitializedError(AppError):
    """The build chain was run before ``init``."""

    def __init__(self, detail: str = "Build chain executed before init") -> None:
        super().__init__(detail=detail)


class StepCommandFailedError(AppError):
    """An external build tool exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int) -> None:
        self.command = command
        self.exit_code = exit_code
        super().__init__(detail=f"Command '{command}' exited with code {exit_code}")


# ---------------------------------------------------------------------------
# Process lifecycle
# ---------------------------------------------------------------------------


class TerminateTimeoutError(AppError):
    """The active process did not exit within the termination budget."""

    def __init__(self, pid: int, timeout_ms: int) -> None:
        self.pid = pid
        self.timeout_ms = timeout_ms
        super().__init__(detail=f"Process {pid} still alive after {timeout_ms}ms")


class SpawnFailedError(AppError):
    """Starting the artifact did not yield a process id."""

    def __init__(self, artifact: str, reason: str = "") -> None:
        self.artifact = artifact
        self.reason = reason
        super().__init__(detail=f"Failed to start {artifact}: {reason or 'no pid'}")


class ActivationInProgressError(ConflictError):
    """Another activation for the same pipeline is still in flight."""

    def __init__(self, pipeline_name: str) -> None:
        self.pipeline_name = pipeline_name
        super().__init__(detail=f"An activation for '{pipeline_name}' is already in progress")


# ---------------------------------------------------------------------------
# Source control
# ---------------------------------------------------------------------------


class NotARepositoryError(AppError):
    """The configured working copy is not a git repository."""

    def __init__(self, repo_path: str) -> None:
        self.repo_path = repo_path
        super().__init__(
            detail=f"{repo_path} is not a git repository (is git installed and the path correct?)"
        )


class CommitNotFoundError(NotFoundError):
    """The commit does not exist in the repository."""

    def __init__(self, commit_id: str) -> None:
        self.commit_id = commit_id
        super().__init__(detail=f"Commit '{commit_id}' not found in the repository")


class BranchNotFoundError(NotFoundError):
    """The branch does not exist, or the commit is not on it."""

    def __init__(self, branch_name: str, commit_id: str = "") -> None:
        self.branch_name = branch_name
        self.commit_id = commit_id
        detail = f"Branch '{branch_name}' not found"
        if commit_id:
            detail = f"Commit '{commit_id}' not found on branch '{branch_name}'"
        super().__init__(detail=detail)


def register_exception_handlers(app: FastAPI) -> None:
    """Register custom exception handlers with a FastAPI app."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )
