"""Per-build status tracking, committed through the registry."""

from __future__ import annotations

import logging

from src.registry.store import PipelineRegistry
from src.shared.constants import PROGRESS_DONE
from src.shared.models.pipeline import BuildState, BuildStatus

logger = logging.getLogger(__name__)


class BuildStatusTracker:
    """Mutable (commit, branch, status, progression) record of one build.

    Every accepted change is upserted into the registry before the
    in-memory copy moves.  ``Success`` and ``Failure`` are terminal, and
    progression never goes backwards while the build is in progress.
    """

    def __init__(
        self,
        registry: PipelineRegistry,
        pipeline_name: str,
        commit_id: str,
        branch_name: str,
    ) -> None:
        self.registry = registry
        self.pipeline_name = pipeline_name
        self.commit_id = commit_id
        self.branch_name = branch_name
        self.status = BuildState.IN_PROGRESS
        self.progression = 0

    @property
    def terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> BuildStatus:
        return BuildStatus(
            commit_id=self.commit_id,
            branch_name=self.branch_name,
            status=self.status,
            progression=self.progression,
        )

    async def update(self, status: BuildState, progression: int) -> bool:
        """Commit a new status.  Returns False if the change was refused."""
        if self.terminal:
            logger.warning(
                "Ignoring %s/%d for commit %s: build already finished as %s",
                status.value, progression, self.commit_id, self.status.value,
            )
            return False
        if status is BuildState.IN_PROGRESS and progression < self.progression:
            logger.warning(
                "Ignoring progression %d for commit %s: already at %d",
                progression, self.commit_id, self.progression,
            )
            return False
        if status is BuildState.SUCCESS:
            progression = PROGRESS_DONE

        entry = BuildStatus(
            commit_id=self.commit_id,
            branch_name=self.branch_name,
            status=status,
            progression=progression,
        )
        await self.registry.upsert_build_status(self.pipeline_name, self.commit_id, entry)
        self.status = status
        self.progression = progression
        logger.info(
            "Build %s of %s: %s %d%%",
            self.commit_id, self.pipeline_name, status.value, progression,
            extra={"pipeline": self.pipeline_name, "commit_id": self.commit_id},
        )
        return True

    async def advance(self, progression: int) -> bool:
        return await self.update(BuildState.IN_PROGRESS, progression)

    async def succeed(self) -> bool:
        return await self.update(BuildState.SUCCESS, PROGRESS_DONE)

    async def fail(self) -> bool:
        return await self.update(BuildState.FAILURE, 0)
