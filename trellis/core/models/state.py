"""
Generated-state records — what the generator last wrote.

A ``FileRecord`` holds the exact content generated for a path on the
previous pass. That content is the merge base of the next pass.
Schema history entries form an append-only log per model.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from trellis.core.models.schema import SchemaSnapshot


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


def content_hash(content: str) -> str:
    """SHA-256 hex digest of UTF-8 encoded content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class FileRecord(BaseModel):
    """Base content last generated for one output path."""

    model_config = ConfigDict(frozen=True)

    path: str
    base_content: str
    base_hash: str

    @classmethod
    def for_content(cls, path: str, content: str) -> FileRecord:
        return cls(path=path, base_content=content, base_hash=content_hash(content))

    def verify(self) -> bool:
        return content_hash(self.base_content) == self.base_hash


class SchemaHistoryEntry(BaseModel):
    """One committed snapshot of a model's schema."""

    model_config = ConfigDict(protected_namespaces=())

    snapshot: SchemaSnapshot
    migration_id: str | None = None
    captured_at: str = Field(default_factory=_now_iso)


class SchemaHistory(BaseModel):
    """Append-only snapshot history of one model."""

    model_config = ConfigDict(protected_namespaces=())

    model_name: str
    entries: list[SchemaHistoryEntry] = Field(default_factory=list)

    @property
    def latest(self) -> SchemaSnapshot | None:
        return self.entries[-1].snapshot if self.entries else None
