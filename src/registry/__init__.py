"""Pipeline registry -- the persisted pipeline-state store."""
from src.registry.store import PipelineRegistry, read_document

__all__ = ["PipelineRegistry", "read_document"]
