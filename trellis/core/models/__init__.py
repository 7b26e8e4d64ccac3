"""
Domain models — Pydantic and dataclass types for trellis.

All models are re-exported here for convenient access:

    from trellis.core.models import Project, SchemaSnapshot, FileRecord, MergeResult
"""

from trellis.core.models.merge import ConflictRegion, Hunk, MergeResult
from trellis.core.models.migration import MigrationPlan, SchemaDiff
from trellis.core.models.project import (
    BelongsTo,
    MigrationSettings,
    Model,
    ModelField,
    ModelIndex,
    OutputSpec,
    Project,
)
from trellis.core.models.schema import FieldSpec, IndexSpec, Relationship, SchemaSnapshot
from trellis.core.models.state import FileRecord, SchemaHistory, SchemaHistoryEntry

__all__ = [
    "BelongsTo",
    # merge.py
    "ConflictRegion",
    # schema.py
    "FieldSpec",
    # state.py
    "FileRecord",
    "Hunk",
    "IndexSpec",
    "MergeResult",
    # migration.py
    "MigrationPlan",
    "MigrationSettings",
    # project.py
    "Model",
    "ModelField",
    "ModelIndex",
    "OutputSpec",
    "Project",
    "Relationship",
    "SchemaDiff",
    "SchemaHistory",
    "SchemaHistoryEntry",
    "SchemaSnapshot",
]
