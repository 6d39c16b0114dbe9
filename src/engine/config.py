"""Pipeline definitions and their YAML loader."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.shared.constants import (
    PIPELINE_TYPE_FRONTEND,
    PIPELINE_TYPE_SPRING_BOOT,
    SUPPORTED_PIPELINE_TYPES,
)


@dataclass
class PipelineDefinition:
    """How one pipeline is built and run."""

    name: str
    type: str = PIPELINE_TYPE_SPRING_BOOT
    repo_path: str = ""
    build_output_dir: str = ""
    output_dir: str = ""
    resources_dir: str = ""
    runnable: bool | None = None
    run_flags: list[str] = field(default_factory=list)
    step_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.type not in SUPPORTED_PIPELINE_TYPES:
            raise ValueError(
                f"Pipeline '{self.name}': unsupported type '{self.type}' "
                f"(expected one of {', '.join(SUPPORTED_PIPELINE_TYPES)})"
            )
        if self.runnable is None:
            self.runnable = self.type == PIPELINE_TYPE_SPRING_BOOT
        if not self.build_output_dir and self.repo_path:
            subdir = "dist" if self.type == PIPELINE_TYPE_FRONTEND else "target"
            self.build_output_dir = str(Path(self.repo_path) / subdir)


def load_pipelines_config(path: Path | str | None = None) -> dict[str, PipelineDefinition]:
    """Load pipeline definitions from a YAML file.

    Expected layout::

        pipelines:
          fps:
            type: spring_boot
            repo_path: /srv/streams2/fps
            output_dir: /srv/artifacts/fps
            run_flags: ["--server.port=8080"]

    Unknown keys are ignored so that forward-compatible config files work.

    Args:
        path: Path to the YAML file.  If ``None`` or the file does not
              exist, no pipelines are defined.

    Returns:
        Mapping of pipeline name to definition, in file order.
    """
    if path is None:
        return {}

    path = Path(path)
    if not path.exists():
        return {}

    with open(path, "r", encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}

    valid = {f.name for f in PipelineDefinition.__dataclass_fields__.values()}
    definitions: dict[str, PipelineDefinition] = {}
    for name, data in (raw.get("pipelines") or {}).items():
        data = {k: v for k, v in (data or {}).items() if k in valid and k != "name"}
        definitions[str(name)] = PipelineDefinition(name=str(name), **data)
    return definitions
