"""Append-only build and run log files."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import BinaryIO

from src.shared.constants import BUILD_LOG_SUFFIX, RUN_LOG_SUFFIX

_CHUNK_SIZE = 64 * 1024


def build_log_path(log_dir: Path | str, commit_id: str) -> Path:
    return Path(log_dir) / f"{commit_id}{BUILD_LOG_SUFFIX}"


def run_log_path(log_dir: Path | str, branch_name: str) -> Path:
    return Path(log_dir) / f"{branch_name}{RUN_LOG_SUFFIX}"


class BuildLog:
    """One build's log file, fed by the output of external commands.

    The file is exclusive to its build, so writes need no locking.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._fh: BinaryIO | None = None

    @property
    def closed(self) -> bool:
        return self._fh is None

    def open(self) -> None:
        """Create (or truncate) the log file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "wb")

    def write(self, data: bytes | str) -> None:
        if self._fh is None:
            raise ValueError(f"Log {self.path} is closed")
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._fh.write(data)
        self._fh.flush()

    def write_title(self, title: str) -> None:
        self.write(f"\r\n=============={title}===========\r\n")

    async def pump(self, reader: asyncio.StreamReader) -> None:
        """Copy *reader* into the log until EOF."""
        while True:
            chunk = await reader.read(_CHUNK_SIZE)
            if not chunk:
                break
            self.write(chunk)

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


async def read_log_text(path: Path | str) -> str:
    """Read a log file as text, replacing undecodable bytes."""
    path = Path(path)
    return await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
