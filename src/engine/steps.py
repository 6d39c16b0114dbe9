"""Concrete build steps.

Every step follows the same contract: forward the external command's
combined output to the build log first, then decide.  On success the
status advances and the step returns :class:`Continue`; on failure the
status is set to ``Failure`` and the step returns :class:`Halt`.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import shutil
from pathlib import Path
from typing import Sequence

from src.engine.chain import BuildContext, Continue, Halt, StepOutcome
from src.shared.errors import StepCommandFailedError
from src.shared.models.pipeline import BranchInfo

logger = logging.getLogger(__name__)


class CommandStep:
    """Run an external command in *cwd*, streaming its output into the log."""

    def __init__(
        self,
        title: str,
        argv: Sequence[str],
        cwd: Path | str,
        progression: int,
    ) -> None:
        self.name = title
        self.argv = list(argv)
        self.cwd = str(cwd)
        self.progression = progression

    @property
    def command(self) -> str:
        return shlex.join(self.argv)

    async def __call__(self, ctx: BuildContext) -> StepOutcome:
        ctx.log.write_title(self.name)
        logger.info(
            "Running '%s' in %s", self.command, self.cwd,
            extra={"pipeline": ctx.pipeline_name, "commit_id": ctx.commit_id},
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            ctx.log.write(f"Failed to start '{self.command}': {exc}\r\n")
            await ctx.status.fail()
            return Halt(f"Failed to start '{self.command}': {exc}")

        try:
            await ctx.log.pump(proc.stdout)
            exit_code = await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        if exit_code != 0:
            error = StepCommandFailedError(self.command, exit_code)
            ctx.log.write(f"\r\n{error.detail}\r\n")
            logger.error(
                "Build %s failed on '%s' (exit %d)", ctx.commit_id, self.command, exit_code,
                extra={"pipeline": ctx.pipeline_name, "commit_id": ctx.commit_id},
            )
            await ctx.status.fail()
            return Halt(error.detail)

        await ctx.status.advance(self.progression)
        return Continue()


def _find_artifact(source_dir: Path, suffix: str) -> Path | None:
    if not source_dir.is_dir():
        return None
    for entry in sorted(source_dir.iterdir()):
        if entry.is_file() and entry.name.endswith(suffix):
            return entry
    return None


def _copy_file(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, destination)


class CopyArtifactStep:
    """Copy the packaged artifact out of the build tree and register it.

    The artifact lands at ``<output_dir>/<commitId><suffix>`` and is
    registered as available branch ``commitId``.  This is a final step:
    it marks the build ``Success``.
    """

    name = "Moving output resources to target dir"

    def __init__(self, source_dir: Path | str, output_dir: Path | str, suffix: str = ".jar") -> None:
        self.source_dir = Path(source_dir)
        self.output_dir = Path(output_dir)
        self.suffix = suffix

    async def __call__(self, ctx: BuildContext) -> StepOutcome:
        ctx.log.write_title(self.name)
        artifact = await asyncio.to_thread(_find_artifact, self.source_dir, self.suffix)
        if artifact is None:
            reason = f"No *{self.suffix} artifact found in {self.source_dir}"
            ctx.log.write(f"{reason}\r\n")
            await ctx.status.fail()
            return Halt(reason)

        destination = self.output_dir / f"{ctx.commit_id}{self.suffix}"
        try:
            await asyncio.to_thread(_copy_file, artifact, destination)
        except OSError as exc:
            reason = f"Failed to copy {artifact} to {destination}: {exc}"
            ctx.log.write(f"{reason}\r\n")
            await ctx.status.fail()
            return Halt(reason)

        ctx.log.write(f"Copied {artifact.name} to {destination}\r\n")
        await ctx.registry.add_available_branch(
            ctx.pipeline_name, BranchInfo(name=ctx.commit_id, path=str(destination))
        )
        await ctx.status.succeed()
        return Continue()


class PublishDirectoryStep:
    """Publish a built web bundle to ``<resources_dir>/<commitId>``.

    Registered as available branch ``<branch>-<commitId>``.  Final step.
    """

    name = "Publishing web resources"

    def __init__(self, source_dir: Path | str, resources_dir: Path | str) -> None:
        self.source_dir = Path(source_dir)
        self.resources_dir = Path(resources_dir)

    async def __call__(self, ctx: BuildContext) -> StepOutcome:
        ctx.log.write_title(self.name)
        destination = self.resources_dir / ctx.commit_id
        if not self.source_dir.is_dir():
            reason = f"Build output {self.source_dir} does not exist"
            ctx.log.write(f"{reason}\r\n")
            await ctx.status.fail()
            return Halt(reason)
        try:
            await asyncio.to_thread(
                shutil.copytree, self.source_dir, destination, dirs_exist_ok=True
            )
        except OSError as exc:
            reason = f"Failed to publish {self.source_dir} to {destination}: {exc}"
            ctx.log.write(f"{reason}\r\n")
            await ctx.status.fail()
            return Halt(reason)

        ctx.log.write(f"Published {self.source_dir} to {destination}\r\n")
        await ctx.registry.add_available_branch(
            ctx.pipeline_name,
            BranchInfo(name=f"{ctx.branch_name}-{ctx.commit_id}", path=str(destination)),
        )
        await ctx.status.succeed()
        return Continue()
