"""Git working-copy puller.

Brings a pipeline's working copy to the requested commit before a build
starts.  Failures are translated into typed errors so the HTTP layer can
map them to 404/500 responses unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from src.shared.errors import BranchNotFoundError, CommitNotFoundError, NotARepositoryError

logger = logging.getLogger(__name__)


class GitPuller:
    """Fetch a branch from ``origin`` and check out one of its commits."""

    def __init__(self, git_command: str = "git", remote: str = "origin") -> None:
        self.git_command = git_command
        self.remote = remote

    async def _git(self, repo_path: str, *args: str) -> tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            self.git_command,
            *args,
            cwd=repo_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return (
            proc.returncode or 0,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def pull(self, repo_path: str, branch_name: str, commit_id: str) -> None:
        """Leave *repo_path* checked out at *commit_id* of *branch_name*.

        Raises:
            NotARepositoryError: *repo_path* is missing or not a work tree.
            BranchNotFoundError: The branch cannot be fetched, or the commit
                is not reachable from it.
            CommitNotFoundError: The commit does not exist.
        """
        if not repo_path or not Path(repo_path).is_dir():
            raise NotARepositoryError(repo_path)
        try:
            code, _, _ = await self._git(repo_path, "rev-parse", "--is-inside-work-tree")
        except OSError as exc:
            logger.error("Cannot run %s in %s: %s", self.git_command, repo_path, exc)
            raise NotARepositoryError(repo_path) from exc
        if code != 0:
            raise NotARepositoryError(repo_path)

        code, _, stderr = await self._git(repo_path, "fetch", self.remote, branch_name)
        if code != 0:
            logger.warning("git fetch %s %s failed: %s", self.remote, branch_name, stderr.strip())
            raise BranchNotFoundError(branch_name)

        code, _, _ = await self._git(repo_path, "cat-file", "-e", f"{commit_id}^{{commit}}")
        if code != 0:
            raise CommitNotFoundError(commit_id)

        code, _, _ = await self._git(
            repo_path, "merge-base", "--is-ancestor", commit_id, "FETCH_HEAD"
        )
        if code != 0:
            raise BranchNotFoundError(branch_name, commit_id)

        code, _, stderr = await self._git(repo_path, "checkout", "--force", commit_id)
        if code != 0:
            logger.warning("git checkout %s failed: %s", commit_id, stderr.strip())
            raise CommitNotFoundError(commit_id)

        logger.info(
            "Checked out %s (%s) in %s", commit_id, branch_name, repo_path,
            extra={"commit_id": commit_id},
        )
