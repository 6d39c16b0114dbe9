"""Pipeline registry Pydantic v2 data models.

Field names on disk are camelCase (``pipelineName``, ``activePID`` ...);
Python attributes are snake_case.  Always dump with ``by_alias=True``.
"""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, StrictInt, StrictStr, field_validator

from src.shared.constants import SCHEMA_VERSION


class BuildState(str, Enum):
    """Lifecycle status of one build."""
    IN_PROGRESS = "InProgress"
    SUCCESS = "Success"
    FAILURE = "Failure"

    @property
    def is_terminal(self) -> bool:
        return self is not BuildState.IN_PROGRESS


class BranchInfo(BaseModel):
    """A built artifact that can be activated."""
    name: StrictStr
    path: StrictStr

    model_config = {"extra": "forbid"}


class BuildStatus(BaseModel):
    """Status of one build, keyed by commit id."""
    commit_id: StrictStr = Field(alias="commitId")
    branch_name: StrictStr = Field(alias="branchName")
    status: BuildState = BuildState.IN_PROGRESS
    progression: StrictInt = Field(default=0, ge=0, le=100)

    model_config = {"populate_by_name": True, "extra": "forbid"}


class Pipeline(BaseModel):
    """One independently buildable and deployable component."""
    pipeline_name: StrictStr = Field(alias="pipelineName", min_length=1)
    active_branch: StrictStr = Field(default="", alias="activeBranch")
    active_resources_path: StrictStr = Field(default="", alias="activeResourcesPath")
    active_pid: StrictInt = Field(default=0, alias="activePID", ge=0)
    available_branches: list[BranchInfo] = Field(
        default_factory=list, alias="availableBranches"
    )
    build_status: list[BuildStatus] = Field(default_factory=list, alias="buildStatus")

    model_config = {"populate_by_name": True, "extra": "forbid"}

    def find_build(self, commit_id: str) -> BuildStatus | None:
        for entry in self.build_status:
            if entry.commit_id == commit_id:
                return entry
        return None


# Map of accepted field names (attribute or on-disk alias) to attribute names
PIPELINE_FIELDS: dict[str, str] = {}
for _name, _info in Pipeline.model_fields.items():
    PIPELINE_FIELDS[_name] = _name
    if _info.alias:
        PIPELINE_FIELDS[_info.alias] = _name

# Keys every persisted pipeline record must carry
PIPELINE_ALIASES: frozenset[str] = frozenset(
    info.alias or name for name, info in Pipeline.model_fields.items()
)


class RegistryDocument(BaseModel):
    """The whole persisted state document."""
    schema_version: StrictInt = Field(default=SCHEMA_VERSION, alias="schemaVersion")
    pipelines: list[Pipeline] = Field(default_factory=list)

    model_config = {"populate_by_name": True, "extra": "forbid"}

    @field_validator("pipelines")
    @classmethod
    def names_are_unique(cls, pipelines: list[Pipeline]) -> list[Pipeline]:
        seen: set[str] = set()
        for pipeline in pipelines:
            if pipeline.pipeline_name in seen:
                raise ValueError(f"duplicate pipelineName '{pipeline.pipeline_name}'")
            seen.add(pipeline.pipeline_name)
        return pipelines

    def get(self, name: str) -> Pipeline | None:
        for pipeline in self.pipelines:
            if pipeline.pipeline_name == name:
                return pipeline
        return None


class BuildStatusResponse(BaseModel):
    """Status payload returned by the HTTP layer."""
    msg: str
    building_status: list[BuildStatus] = Field(alias="buildingStatus")

    model_config = {"populate_by_name": True}


class MessageResponse(BaseModel):
    msg: str
