"""Deploy orchestrator FastAPI application."""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.engine.builds import BuildService, SourcePuller
from src.engine.config import load_pipelines_config
from src.process.manager import ProcessManager
from src.registry.store import PipelineRegistry
from src.shared.config import DeploySettings
from src.shared.constants import SERVICE_NAME, VERSION
from src.shared.errors import register_exception_handlers
from src.shared.logging import TraceIDMiddleware, setup_logging
from src.shared.utils import ensure_dir
from src.source_control.git import GitPuller


def create_app(
    settings: DeploySettings | None = None,
    puller: SourcePuller | None = None,
) -> FastAPI:
    """Build the application.

    The registry, build service and process manager are constructed in
    the lifespan and stored on ``app.state``.  A corrupt state document
    raises ``StateCorruptError`` there and aborts startup.
    """
    settings = settings or DeploySettings()
    logger = setup_logging(SERVICE_NAME, settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.start_time = time.time()
        app.state.settings = settings

        definitions = load_pipelines_config(settings.pipelines_config)
        ensure_dir(settings.log_path)

        registry = PipelineRegistry(settings.state_path, seed_names=list(definitions))
        registry.load()

        app.state.definitions = definitions
        app.state.registry = registry
        app.state.builds = BuildService(
            registry, definitions, settings.log_path, puller or GitPuller()
        )
        app.state.processes = ProcessManager(
            registry,
            definitions,
            settings.log_path,
            java_command=settings.java_command,
            secret_flag=settings.secret_flag,
            secret=settings.artifact_secret,
            terminate_timeout_ms=settings.terminate_timeout_ms,
            terminate_poll_ms=settings.terminate_poll_ms,
        )

        logger.info(
            "Service started: name=%s version=%s pipelines=%s state=%s",
            SERVICE_NAME, VERSION, ",".join(definitions) or "-", settings.state_path,
        )
        try:
            yield
        finally:
            await app.state.builds.shutdown()
            registry.close()
            logger.info("Service stopped: name=%s", SERVICE_NAME)

    app = FastAPI(
        title="Deploy Orchestrator",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(TraceIDMiddleware)
    register_exception_handlers(app)

    from src.deploy_api.routers.health import router as health_router
    from src.deploy_api.routers.pipelines import router as pipelines_router

    app.include_router(health_router)
    app.include_router(pipelines_router)
    return app


app = create_app()
