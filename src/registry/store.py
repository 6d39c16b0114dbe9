"""Persistent pipeline-state registry.

The registry is the single source of truth for every pipeline's build
history, available artifacts and active process.  It is backed by one
JSON document on disk and is constructed once per process, then handed
to every collaborator that needs it.

Write discipline:

* All updates pass through one ``asyncio.Lock``; each read-modify-write
  sees every previously accepted update.
* An update is applied to a deep copy of the document, the whole copy is
  written atomically, and only then swapped in.  A failed write leaves
  both memory and disk at the previous document.
* The apply step is shielded from caller cancellation so a write that
  reached the disk is always reflected in memory.
* A loaded registry holds an exclusive ``flock`` on a ``.lock`` sidecar
  until :meth:`PipelineRegistry.close`, so a second process cannot load
  the same document and overwrite it from a stale copy.  Read-only
  inspection goes through :func:`read_document` instead.
"""
from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from src.registry.migrations import parse_document
from src.shared.constants import MAX_WRITE_FAILURES
from src.shared.errors import (
    RegistryDegradedError,
    RegistryLockedError,
    RegistryWriteError,
    StateCorruptError,
    UnknownBranchError,
    UnknownPipelineError,
)
from src.shared.models.pipeline import (
    PIPELINE_FIELDS,
    BranchInfo,
    BuildStatus,
    Pipeline,
    RegistryDocument,
)
from src.shared.utils import atomic_write_json

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LOCK_SUFFIX = ".lock"


def _index_of(document: RegistryDocument, name: str) -> int:
    for index, pipeline in enumerate(document.pipelines):
        if pipeline.pipeline_name == name:
            return index
    raise UnknownPipelineError(name)


def _read_raw(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise StateCorruptError(str(path), str(exc)) from exc


def read_document(path: Path | str) -> RegistryDocument:
    """Parse the state document without locking or writing it.

    Legacy documents are migrated in memory only.  A missing document
    reads as empty.
    """
    path = Path(path)
    if not path.exists():
        return RegistryDocument()
    document, _ = parse_document(_read_raw(path), str(path))
    return document


class PipelineRegistry:
    """File-backed registry of pipeline records with a single writer."""

    def __init__(
        self,
        path: Path | str,
        seed_names: Iterable[str] = (),
        max_write_failures: int = MAX_WRITE_FAILURES,
    ) -> None:
        self._path = Path(path)
        self._seed_names = list(seed_names)
        self._max_write_failures = max_write_failures
        self._document: RegistryDocument | None = None
        self._lock = asyncio.Lock()
        self._lock_fd: int | None = None
        self._write_failures = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._path.with_suffix(self._path.suffix + _LOCK_SUFFIX)

    @property
    def loaded(self) -> bool:
        return self._document is not None

    @property
    def degraded(self) -> bool:
        """True once consecutive write failures reach the configured limit."""
        return self._write_failures >= self._max_write_failures

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> RegistryDocument:
        """Read and validate the state document.

        Only the first call touches the disk; later calls return the
        in-memory copy.  A missing document is seeded with one empty
        record per configured pipeline name.

        Raises:
            RegistryLockedError: If another process has the document loaded.
            StateCorruptError: If the document cannot be read, parsed, or
                validated.
        """
        if self._document is not None:
            return self._document.model_copy(deep=True)

        self._acquire_file_lock()
        try:
            needs_write = False
            if not self._path.exists():
                logger.info("State document %s not found, seeding a new one", self._path)
                document = RegistryDocument()
                needs_write = True
            else:
                document, needs_write = parse_document(_read_raw(self._path), str(self._path))

            for name in self._seed_names:
                if document.get(name) is None:
                    logger.info("Registering configured pipeline '%s'", name)
                    document.pipelines.append(Pipeline(pipeline_name=name))
                    needs_write = True

            if needs_write:
                self._write(document)
        except BaseException:
            self._release_file_lock()
            raise

        self._document = document
        logger.info(
            "Registry loaded from %s with %d pipelines",
            self._path, len(document.pipelines),
        )
        return document.model_copy(deep=True)

    def close(self) -> None:
        """Release the state document; the registry must be loaded again before use."""
        self._document = None
        self._release_file_lock()

    def _acquire_file_lock(self) -> None:
        lock_path = self.lock_path
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT)
        except OSError as exc:
            raise RegistryWriteError(str(lock_path), str(exc)) from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise RegistryLockedError(str(self._path)) from None
        self._lock_fd = fd

    def _release_file_lock(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    def _require_loaded(self) -> RegistryDocument:
        if self._document is None:
            raise RuntimeError("PipelineRegistry.load() must be called before use")
        return self._document

    def _write(self, document: RegistryDocument) -> None:
        try:
            atomic_write_json(self._path, document.model_dump(by_alias=True, mode="json"))
        except OSError as exc:
            raise RegistryWriteError(str(self._path), str(exc)) from exc

    # ------------------------------------------------------------------
    # Reads (always copies)
    # ------------------------------------------------------------------

    def document(self) -> RegistryDocument:
        return self._require_loaded().model_copy(deep=True)

    def list_pipelines(self) -> list[Pipeline]:
        return [p.model_copy(deep=True) for p in self._require_loaded().pipelines]

    def get_by_name(self, name: str) -> Pipeline:
        """Return a copy of the named pipeline record.

        Raises:
            UnknownPipelineError: If no record has that name.
        """
        document = self._require_loaded()
        return document.pipelines[_index_of(document, name)].model_copy(deep=True)

    def find_branch(self, name: str, commit_id: str) -> BranchInfo:
        """Return the first available branch whose name contains *commit_id*."""
        pipeline = self.get_by_name(name)
        for branch in pipeline.available_branches:
            if commit_id and commit_id in branch.name:
                return branch
        raise UnknownBranchError(name, commit_id)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def _commit(self, mutator: Callable[[RegistryDocument], T]) -> T:
        return await asyncio.shield(self._apply(mutator))

    async def _apply(self, mutator: Callable[[RegistryDocument], T]) -> T:
        async with self._lock:
            if self.degraded:
                raise RegistryDegradedError(self._write_failures)
            draft = self._require_loaded().model_copy(deep=True)
            result = mutator(draft)
            payload = draft.model_dump(by_alias=True, mode="json")
            try:
                await asyncio.to_thread(atomic_write_json, self._path, payload)
            except OSError as exc:
                self._write_failures += 1
                logger.error(
                    "State write failed (%d consecutive): %s",
                    self._write_failures, exc,
                )
                raise RegistryWriteError(str(self._path), str(exc)) from exc
            self._write_failures = 0
            self._document = draft
            return result

    async def update_field(self, name: str, field: str, value: Any) -> Pipeline:
        """Replace one field of a pipeline record and persist the document.

        *field* may be the attribute name (``active_pid``) or the on-disk
        name (``activePID``).
        """
        return await self.update_fields(name, **{field: value})

    async def update_fields(self, name: str, **fields: Any) -> Pipeline:
        """Replace several fields of one record as a single accepted update."""
        changes: dict[str, Any] = {}
        for key, value in fields.items():
            attr = PIPELINE_FIELDS.get(key)
            if attr is None:
                raise ValueError(f"Unknown pipeline field '{key}'")
            if attr == "pipeline_name":
                raise ValueError("pipelineName is the record key and cannot be updated")
            changes[attr] = value

        def mutate(document: RegistryDocument) -> Pipeline:
            index = _index_of(document, name)
            data = document.pipelines[index].model_dump()
            data.update(changes)
            updated = Pipeline.model_validate(data)
            document.pipelines[index] = updated
            return updated.model_copy(deep=True)

        return await self._commit(mutate)

    async def upsert_build_status(
        self, name: str, commit_id: str, status: BuildStatus
    ) -> Pipeline:
        """Replace the build-status entry for *commit_id*, or append one."""
        if status.commit_id != commit_id:
            raise ValueError(
                f"Status is for commit '{status.commit_id}', not '{commit_id}'"
            )

        def mutate(document: RegistryDocument) -> Pipeline:
            pipeline = document.pipelines[_index_of(document, name)]
            entry = status.model_copy()
            for index, existing in enumerate(pipeline.build_status):
                if existing.commit_id == commit_id:
                    pipeline.build_status[index] = entry
                    break
            else:
                pipeline.build_status.append(entry)
            return pipeline.model_copy(deep=True)

        return await self._commit(mutate)

    async def add_available_branch(self, name: str, branch: BranchInfo) -> Pipeline:
        """Register a built artifact.

        A branch with the same name (a forced rebuild) is replaced in
        place, keeping its original position.
        """

        def mutate(document: RegistryDocument) -> Pipeline:
            pipeline = document.pipelines[_index_of(document, name)]
            entry = branch.model_copy()
            for index, existing in enumerate(pipeline.available_branches):
                if existing.name == branch.name:
                    pipeline.available_branches[index] = entry
                    break
            else:
                pipeline.available_branches.append(entry)
            return pipeline.model_copy(deep=True)

        return await self._commit(mutate)
