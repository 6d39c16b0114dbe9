"""Command-line entry point: run the service or inspect pipeline state."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from src.engine.config import load_pipelines_config
from src.process.manager import ProcessManager
from src.registry.store import PipelineRegistry, read_document
from src.shared.config import DeploySettings
from src.shared.errors import AppError, UnknownPipelineError
from src.shared.models.pipeline import BuildState, Pipeline

app = typer.Typer(
    name="deploy-orchestrator",
    help="Build-and-deploy orchestrator for independently deployable pipelines.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)

console = Console()

_STATUS_STYLES = {
    BuildState.IN_PROGRESS: "yellow",
    BuildState.SUCCESS: "green",
    BuildState.FAILURE: "red",
}


def _settings(state: str | None, pipelines: str | None) -> DeploySettings:
    settings = DeploySettings()
    if state:
        settings.state_path = state
    if pipelines:
        settings.pipelines_config = pipelines
    return settings


def _records(settings: DeploySettings, pipeline: str | None) -> list[Pipeline]:
    document = read_document(settings.state_path)
    if pipeline is None:
        return document.pipelines
    record = document.get(pipeline)
    if record is None:
        raise UnknownPipelineError(pipeline)
    return [record]


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address"),
    port: int | None = typer.Option(None, "--port", help="Bind port"),
) -> None:
    """Run the HTTP service."""
    import uvicorn

    settings = DeploySettings()
    uvicorn.run(
        "src.deploy_api.main:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def status(
    pipeline: str | None = typer.Argument(None, help="Only show this pipeline"),
    state: str | None = typer.Option(None, "--state", help="State document path"),
    pipelines: str | None = typer.Option(None, "--pipelines", help="Pipelines YAML path"),
) -> None:
    """Print the active branch and build history of each pipeline."""
    try:
        records = _records(_settings(state, pipelines), pipeline)
    except AppError as exc:
        console.print(f"[red]Error:[/red] {exc.detail}")
        raise typer.Exit(code=1)

    for record in records:
        table = Table(
            title=f"{record.pipeline_name}  active={record.active_branch or '-'}  pid={record.active_pid}",
            show_header=True,
        )
        table.add_column("Commit")
        table.add_column("Branch")
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        for entry in record.build_status:
            style = _STATUS_STYLES.get(entry.status, "white")
            table.add_row(
                entry.commit_id,
                entry.branch_name,
                f"[{style}]{entry.status.value}[/{style}]",
                f"{entry.progression}%",
            )
        console.print(table)


@app.command()
def activate(
    pipeline: str = typer.Argument(..., help="Pipeline name"),
    commit: str = typer.Argument(..., help="Commit id of a successful build"),
    state: str | None = typer.Option(None, "--state", help="State document path"),
    pipelines: str | None = typer.Option(None, "--pipelines", help="Pipelines YAML path"),
) -> None:
    """Activate a built artifact without going through the HTTP service.

    Fails while the service is running, since the service owns the state
    document for its whole lifetime.
    """
    settings = _settings(state, pipelines)
    definitions = load_pipelines_config(settings.pipelines_config)
    registry = PipelineRegistry(settings.state_path, seed_names=list(definitions))
    try:
        registry.load()
        manager = ProcessManager(
            registry,
            definitions,
            settings.log_path,
            java_command=settings.java_command,
            secret_flag=settings.secret_flag,
            secret=settings.artifact_secret,
            terminate_timeout_ms=settings.terminate_timeout_ms,
            terminate_poll_ms=settings.terminate_poll_ms,
        )
        branch = asyncio.run(manager.activate_branch(pipeline, commit))
        record = registry.get_by_name(pipeline)
    except AppError as exc:
        console.print(f"[red]Error:[/red] {exc.detail}")
        raise typer.Exit(code=1)
    finally:
        registry.close()

    console.print(
        f"[green]Activated[/green] {branch.name} for {pipeline} (pid {record.active_pid})"
    )


if __name__ == "__main__":
    app()
