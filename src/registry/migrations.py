"""Schema detection and migration for the persisted registry document.

Version 1 documents are a bare JSON array of pipeline records, written by
earlier releases that did not yet track ``activePID`` and spelled the
in-progress status ``"In Progress"``.  Version 2 wraps the array in an
object carrying ``schemaVersion``.
"""
from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from src.shared.constants import LEGACY_SCHEMA_VERSION, SCHEMA_VERSION
from src.shared.errors import StateCorruptError
from src.shared.models.pipeline import PIPELINE_ALIASES, RegistryDocument

logger = logging.getLogger(__name__)

_LEGACY_DEFAULTS: dict[str, Any] = {
    "activeBranch": "",
    "activeResourcesPath": "",
    "activePID": 0,
    "availableBranches": [],
    "buildStatus": [],
}

_LEGACY_STATUS = {"In Progress": "InProgress"}


def detect_version(raw: Any) -> int:
    """Return the schema version of a decoded document, or 0 if unrecognised."""
    if isinstance(raw, list):
        return LEGACY_SCHEMA_VERSION
    if isinstance(raw, dict):
        version = raw.get("schemaVersion")
        if isinstance(version, int) and not isinstance(version, bool):
            return version
    return 0


def _migrate_v1(raw: list[Any], path: str) -> dict[str, Any]:
    pipelines: list[dict[str, Any]] = []
    for index, record in enumerate(raw):
        if not isinstance(record, dict):
            raise StateCorruptError(path, f"pipeline record #{index} is not an object")
        migrated = {**_LEGACY_DEFAULTS, **record}
        entries = migrated["buildStatus"]
        if isinstance(entries, list):
            migrated["buildStatus"] = [
                {**entry, "status": _LEGACY_STATUS[entry["status"]]}
                if isinstance(entry, dict) and entry.get("status") in _LEGACY_STATUS
                else entry
                for entry in entries
            ]
        pipelines.append(migrated)
    return {"schemaVersion": SCHEMA_VERSION, "pipelines": pipelines}


def _check_v2_shape(raw: dict[str, Any], path: str) -> None:
    pipelines = raw.get("pipelines")
    if not isinstance(pipelines, list):
        raise StateCorruptError(path, "'pipelines' must be an array")
    for index, record in enumerate(pipelines):
        if not isinstance(record, dict):
            raise StateCorruptError(path, f"pipeline record #{index} is not an object")
        missing = sorted(PIPELINE_ALIASES - record.keys())
        if missing:
            raise StateCorruptError(
                path, f"pipeline record #{index} is missing {', '.join(missing)}"
            )


def parse_document(raw: Any, path: str) -> tuple[RegistryDocument, bool]:
    """Validate a decoded document, migrating older shapes.

    Args:
        raw: The decoded JSON value.
        path: Document path, used in error messages.

    Returns:
        Tuple of (document, migrated).  ``migrated`` is True when the
        caller should write the upgraded document back.

    Raises:
        StateCorruptError: If the shape is unknown or fails validation.
    """
    version = detect_version(raw)
    migrated = False
    if version == LEGACY_SCHEMA_VERSION:
        logger.info("Migrating state document %s from schema v1", path)
        raw = _migrate_v1(raw, path)
        migrated = True
    elif version == SCHEMA_VERSION:
        _check_v2_shape(raw, path)
    else:
        raise StateCorruptError(path, "unrecognised document shape or schemaVersion")

    try:
        return RegistryDocument.model_validate(raw), migrated
    except ValidationError as exc:
        raise StateCorruptError(path, str(exc)) from exc
