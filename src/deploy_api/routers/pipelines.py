"""Pipeline build, status and activation endpoints.

The ``activeBranch`` routes are registered before the generic
``/{branch}/{commit}`` ones so that they win the path match.
"""
from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import PlainTextResponse

from src.engine.builds import BuildService
from src.process.manager import ProcessManager
from src.registry.store import PipelineRegistry
from src.shared.models.pipeline import BuildStatusResponse, MessageResponse, Pipeline

router = APIRouter(tags=["pipelines"])


def _registry(request: Request) -> PipelineRegistry:
    return request.app.state.registry


def _builds(request: Request) -> BuildService:
    return request.app.state.builds


def _processes(request: Request) -> ProcessManager:
    return request.app.state.processes


@router.get("/api/pipelines", response_model=list[Pipeline])
async def list_pipelines(request: Request) -> list[Pipeline]:
    return _registry(request).list_pipelines()


@router.get("/pipeline/{pipeline_name}", response_model=BuildStatusResponse)
async def get_build_status(pipeline_name: str, request: Request) -> BuildStatusResponse:
    """Build history of a pipeline."""
    pipeline = _registry(request).get_by_name(pipeline_name)
    return BuildStatusResponse(msg="Return build status", building_status=pipeline.build_status)


@router.post("/pipeline/{pipeline_name}/activeBranch/{commit_id}", response_model=MessageResponse)
async def activate_branch(pipeline_name: str, commit_id: str, request: Request) -> MessageResponse:
    """Stop the running artifact (if any) and start the one built from *commit_id*."""
    await _processes(request).activate_branch(pipeline_name, commit_id)
    return MessageResponse(msg="The given branch is considered active")


@router.get("/pipeline/{pipeline_name}/activeBranch", response_class=PlainTextResponse)
async def get_run_log(pipeline_name: str, request: Request) -> str:
    return await _processes(request).read_run_log(pipeline_name)


@router.delete("/pipeline/{pipeline_name}/activeBranch", response_model=MessageResponse)
async def deactivate(pipeline_name: str, request: Request) -> MessageResponse:
    await _processes(request).deactivate(pipeline_name)
    return MessageResponse(msg="The active process has been stopped")


@router.post("/pipeline/{pipeline_name}/{branch_name}/{commit_id}", response_class=PlainTextResponse)
async def trigger_build(
    pipeline_name: str,
    branch_name: str,
    commit_id: str,
    request: Request,
    force: bool = Query(False),
) -> str:
    """Pull the commit and start its build in the background."""
    return await _builds(request).trigger(pipeline_name, branch_name, commit_id, force=force)


@router.get("/pipeline/{pipeline_name}/{branch_name}/{commit_id}", response_class=PlainTextResponse)
async def get_build_log(
    pipeline_name: str, branch_name: str, commit_id: str, request: Request
) -> str:
    return await _builds(request).read_build_log(pipeline_name, commit_id)
