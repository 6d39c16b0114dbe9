"""Build step chain -- runs one build's steps strictly in order.

Each step is an async callable taking a :class:`BuildContext` and
returning a tagged outcome:

* :class:`Continue` -- proceed to the next step;
* :class:`Halt` -- stop the chain.  Unless ``mark_failure=False`` the
  engine records the build as ``Failure``.

Whatever way the chain ends (last step, halt, exception) the build log
is closed before :meth:`BuildChain.run` returns.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Union

from src.engine.log_sink import BuildLog, build_log_path
from src.engine.status import BuildStatusTracker
from src.registry.store import PipelineRegistry
from src.shared.constants import PROGRESS_STARTED
from src.shared.errors import DuplicateBuildError, NotInitializedError
from src.shared.models.pipeline import BuildState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Continue:
    """Proceed to the next step."""


@dataclass(frozen=True)
class Halt:
    """Stop the chain after this step."""

    reason: str
    mark_failure: bool = True


StepOutcome = Union[Continue, Halt]


@dataclass
class BuildContext:
    """What a step can see and touch during one build."""

    pipeline_name: str
    commit_id: str
    branch_name: str
    log: BuildLog
    status: BuildStatusTracker
    registry: PipelineRegistry


Step = Callable[[BuildContext], Awaitable[StepOutcome]]
ErrorHandler = Callable[[Exception], None]


@dataclass
class ChainResult:
    completed: bool
    steps_run: int
    halt_reason: str = ""


def _reraise(exc: Exception) -> None:
    raise exc


def step_name(step: Step) -> str:
    return getattr(step, "name", None) or getattr(step, "__name__", None) or type(step).__name__


class BuildChain:
    """Ordered list of build steps for one (branch, commit) build."""

    def __init__(
        self,
        pipeline_name: str,
        registry: PipelineRegistry,
        log_dir: Path | str,
    ) -> None:
        self.pipeline_name = pipeline_name
        self.registry = registry
        self.log_dir = Path(log_dir)
        self._steps: list[tuple[Step, float | None]] = []
        self._handle_error: ErrorHandler = _reraise
        self._context: BuildContext | None = None
        self._ran = False

    @property
    def context(self) -> BuildContext | None:
        return self._context

    @property
    def steps(self) -> list[Step]:
        return [step for step, _ in self._steps]

    async def init(self, commit_id: str, branch_name: str, force: bool = False) -> BuildContext:
        """Claim the commit's log file and record the build as started.

        Raises:
            DuplicateBuildError: If a log already exists for *commit_id*
                and *force* is False.
        """
        path = build_log_path(self.log_dir, commit_id)
        if path.exists() and not force:
            raise DuplicateBuildError(commit_id)

        # Claim the log before the first suspension point so a concurrent
        # init for the same commit sees it.
        log = BuildLog(path)
        log.open()
        tracker = BuildStatusTracker(self.registry, self.pipeline_name, commit_id, branch_name)
        try:
            await tracker.update(BuildState.IN_PROGRESS, PROGRESS_STARTED)
        except BaseException:
            log.close()
            path.unlink(missing_ok=True)
            raise

        self._context = BuildContext(
            pipeline_name=self.pipeline_name,
            commit_id=commit_id,
            branch_name=branch_name,
            log=log,
            status=tracker,
            registry=self.registry,
        )
        return self._context

    def on_error(self, handler: ErrorHandler) -> None:
        """Replace the handler for exceptions raised by steps.

        The default handler re-raises to the caller of :meth:`run`.
        """
        self._handle_error = handler

    def add_step(self, step: Step, timeout: float | None = None) -> None:
        """Append a step.  *timeout* (seconds) cancels a step that runs too long."""
        self._steps.append((step, timeout))

    async def _invoke(self, step: Step, timeout: float | None, ctx: BuildContext) -> StepOutcome:
        if timeout is None:
            return await step(ctx)
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                return await step(ctx)
        except TimeoutError:
            # a TimeoutError raised by the step itself is an ordinary exception
            if not deadline.expired():
                raise
            reason = f"Step '{step_name(step)}' timed out after {timeout}s"
            ctx.log.write(f"\r\n{reason}\r\n")
            return Halt(reason)

    async def run(self) -> ChainResult:
        """Run every step in registration order.

        Raises:
            NotInitializedError: If called before :meth:`init` or twice.
        """
        ctx = self._context
        if ctx is None:
            raise NotInitializedError()
        if self._ran:
            raise NotInitializedError("Build chain has already run")
        self._ran = True

        steps_run = 0
        try:
            for step, timeout in self._steps:
                steps_run += 1
                try:
                    outcome = await self._invoke(step, timeout, ctx)
                except Exception as exc:
                    logger.error(
                        "Step '%s' of build %s raised: %s",
                        step_name(step), ctx.commit_id, exc,
                        extra={"pipeline": ctx.pipeline_name, "commit_id": ctx.commit_id},
                    )
                    self._handle_error(exc)
                    return ChainResult(completed=False, steps_run=steps_run, halt_reason=str(exc))

                if isinstance(outcome, Halt):
                    logger.warning(
                        "Build %s halted at step '%s': %s",
                        ctx.commit_id, step_name(step), outcome.reason,
                        extra={"pipeline": ctx.pipeline_name, "commit_id": ctx.commit_id},
                    )
                    if outcome.mark_failure:
                        await ctx.status.fail()
                    return ChainResult(
                        completed=False, steps_run=steps_run, halt_reason=outcome.reason
                    )

            logger.info(
                "Build %s of %s finished after %d steps",
                ctx.commit_id, ctx.pipeline_name, steps_run,
                extra={"pipeline": ctx.pipeline_name, "commit_id": ctx.commit_id},
            )
            return ChainResult(completed=True, steps_run=steps_run)
        finally:
            ctx.log.close()
