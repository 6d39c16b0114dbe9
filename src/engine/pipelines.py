"""Step recipes per pipeline type and the chain assembler."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from src.engine.chain import BuildChain, Step
from src.engine.config import PipelineDefinition
from src.engine.steps import CommandStep, CopyArtifactStep, PublishDirectoryStep
from src.registry.store import PipelineRegistry
from src.shared.constants import (
    PIPELINE_TYPE_FRONTEND,
    PIPELINE_TYPE_SPRING_BOOT,
    PROGRESS_INSTALLED,
    PROGRESS_LINTED,
    PROGRESS_PACKAGED,
)

SPRING_BOOT_PACKAGE = [
    "mvn",
    "clean",
    "install",
    "spring-boot:repackage",
    "-DskipTests",
    "-Denv.config=local",
    "-Dspring.profiles=local",
]


def frontend_steps(definition: PipelineDefinition) -> list[Step]:
    repo = definition.repo_path
    return [
        CommandStep("Installing dependencies", ["pnpm", "i"], repo, PROGRESS_INSTALLED),
        CommandStep("Linting", ["pnpm", "run", "lint"], repo, PROGRESS_LINTED),
        CommandStep("Building", ["pnpm", "run", "build"], repo, PROGRESS_PACKAGED),
        PublishDirectoryStep(definition.build_output_dir, definition.resources_dir),
    ]


def spring_boot_steps(definition: PipelineDefinition) -> list[Step]:
    return [
        CommandStep("Packaging", SPRING_BOOT_PACKAGE, definition.repo_path, PROGRESS_PACKAGED),
        CopyArtifactStep(definition.build_output_dir, definition.output_dir, ".jar"),
    ]


STEP_FACTORIES: dict[str, Callable[[PipelineDefinition], list[Step]]] = {
    PIPELINE_TYPE_FRONTEND: frontend_steps,
    PIPELINE_TYPE_SPRING_BOOT: spring_boot_steps,
}


def assemble_chain(
    definition: PipelineDefinition,
    registry: PipelineRegistry,
    log_dir: Path | str,
) -> BuildChain:
    """Build an un-initialised chain for *definition*."""
    chain = BuildChain(definition.name, registry, log_dir)
    for step in STEP_FACTORIES[definition.type](definition):
        chain.add_step(step, timeout=definition.step_timeout)
    return chain
