"""Build service -- pulls sources and runs build chains in the background."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Mapping, Protocol

from src.engine.chain import BuildChain, ChainResult
from src.engine.config import PipelineDefinition
from src.engine.log_sink import build_log_path, read_log_text
from src.engine.pipelines import assemble_chain
from src.registry.store import PipelineRegistry
from src.shared.errors import (
    BuildInProgressError,
    DuplicateBuildError,
    UnknownBranchError,
    UnknownPipelineError,
)

logger = logging.getLogger(__name__)

ChainFactory = Callable[[PipelineDefinition, PipelineRegistry, Path], BuildChain]
BuildKey = tuple[str, str]


class SourcePuller(Protocol):
    async def pull(self, repo_path: str, branch_name: str, commit_id: str) -> None: ...


class BuildService:
    """Entry point for build triggers.

    ``trigger`` does the fallible synchronous part (lookup, source pull,
    duplicate guard) inline so that errors reach the caller, then hands
    the chain to a tracked background task.

    A working copy is claimed from the source pull until its build ends,
    so one checkout never feeds two builds.  Triggers that would need a
    claimed working copy are rejected with :class:`BuildInProgressError`.
    """

    def __init__(
        self,
        registry: PipelineRegistry,
        definitions: Mapping[str, PipelineDefinition],
        log_dir: Path | str,
        puller: SourcePuller,
        chain_factory: ChainFactory = assemble_chain,
    ) -> None:
        self.registry = registry
        self.definitions = dict(definitions)
        self.log_dir = Path(log_dir)
        self.puller = puller
        self.chain_factory = chain_factory
        self._tasks: dict[BuildKey, asyncio.Task[ChainResult]] = {}
        # working copy -> (pipeline, commit) currently using it
        self._claims: dict[str, BuildKey] = {}

    @property
    def active_builds(self) -> list[str]:
        return [commit for (_, commit), task in self._tasks.items() if not task.done()]

    def definition(self, pipeline_name: str) -> PipelineDefinition:
        try:
            return self.definitions[pipeline_name]
        except KeyError:
            raise UnknownPipelineError(pipeline_name) from None

    def _claim(self, definition: PipelineDefinition, commit_id: str) -> str:
        working_copy = os.path.realpath(definition.repo_path)
        holder = self._claims.get(working_copy)
        if holder is not None:
            raise BuildInProgressError(*holder)
        if any(commit == commit_id for _, commit in self._claims.values()):
            # another pipeline is writing this commit's log
            raise DuplicateBuildError(commit_id)
        self._claims[working_copy] = (definition.name, commit_id)
        return working_copy

    def _release(self, working_copy: str, key: BuildKey) -> None:
        if self._claims.get(working_copy) == key:
            del self._claims[working_copy]

    async def trigger(
        self,
        pipeline_name: str,
        branch_name: str,
        commit_id: str,
        force: bool = False,
    ) -> str:
        """Start a build of *commit_id* and return an acknowledgement.

        Raises:
            UnknownPipelineError: No such pipeline.
            BuildInProgressError: The pipeline's working copy is still in
                use by another build, forced or not.
            DuplicateBuildError: The commit was built before and *force*
                is False.
            NotARepositoryError, BranchNotFoundError, CommitNotFoundError:
                The source pull failed.
        """
        definition = self.definition(pipeline_name)
        self.registry.get_by_name(pipeline_name)

        key = (pipeline_name, commit_id)
        working_copy = self._claim(definition, commit_id)
        try:
            await self.puller.pull(definition.repo_path, branch_name, commit_id)
            chain = self.chain_factory(definition, self.registry, self.log_dir)
            await chain.init(commit_id, branch_name, force=force)
        except BaseException:
            self._release(working_copy, key)
            raise

        task = asyncio.create_task(
            self._run(chain, working_copy, key), name=f"build-{pipeline_name}-{commit_id}"
        )
        self._tasks[key] = task
        task.add_done_callback(lambda t: self._on_build_done(chain, working_copy, key, t))
        logger.info(
            "Triggered build of %s (%s) for %s", commit_id, branch_name, pipeline_name,
            extra={"pipeline": pipeline_name, "commit_id": commit_id},
        )
        return f"triggered the build process for commit: {commit_id}"

    async def _run(self, chain: BuildChain, working_copy: str, key: BuildKey) -> ChainResult:
        try:
            return await chain.run()
        finally:
            self._release(working_copy, key)

    def _on_build_done(
        self,
        chain: BuildChain,
        working_copy: str,
        key: BuildKey,
        task: asyncio.Task[ChainResult],
    ) -> None:
        pipeline_name, commit_id = key
        if self._tasks.get(key) is task:
            del self._tasks[key]
        # a task cancelled before its first step never reached _run's cleanup
        self._release(working_copy, key)
        if chain.context is not None:
            chain.context.log.close()

        if task.cancelled():
            logger.warning(
                "Build %s was cancelled", commit_id,
                extra={"pipeline": pipeline_name, "commit_id": commit_id},
            )
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Build %s crashed: %s", commit_id, exc,
                exc_info=exc,
                extra={"pipeline": pipeline_name, "commit_id": commit_id},
            )

    async def wait(self) -> None:
        """Wait for all running builds to finish."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel running builds and wait for them to unwind."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d running build(s)", len(tasks))

    async def read_build_log(self, pipeline_name: str, commit_id: str) -> str:
        self.registry.get_by_name(pipeline_name)
        path = build_log_path(self.log_dir, commit_id)
        if not path.is_file():
            raise UnknownBranchError(pipeline_name, commit_id)
        return await read_log_text(path)
