"""
Schema snapshot model — one model's columns, indexes and parent link.

A snapshot is immutable once stored. Two snapshots are compared through
``structure()``, which ignores column order and folds the per-field
``indexed`` flag into implicit indexes, so a snapshot rebuilt from SQL by
the simulator compares equal to the one built from configuration.
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Spellings PostgreSQL treats as the same type.
_TYPE_ALIASES = {
    "int": "integer",
    "int4": "integer",
    "int8": "bigint",
    "bool": "boolean",
    "float8": "double precision",
    "float": "double precision",
    "timestamptz": "timestamp with time zone",
    "varchar": "character varying",
}


def normalize_type(sql_type: str) -> str:
    """Canonical spelling of a SQL type for comparison."""
    text = " ".join(sql_type.strip().lower().split())
    text = re.sub(r"\s*\(\s*", "(", text)
    text = re.sub(r"\s*,\s*", ",", text)
    text = re.sub(r"\s*\)", ")", text)
    base, sep, rest = text.partition("(")
    base = _TYPE_ALIASES.get(base, base)
    return base + sep + rest


def normalize_default(default: str | None) -> str | None:
    """Canonical spelling of a DEFAULT expression, or None."""
    if default is None:
        return None
    text = " ".join(default.strip().split())
    if not text:
        return None
    if "'" not in text and '"' not in text:
        text = text.lower()
    return text


class FieldSpec(BaseModel):
    """One column of a model."""

    model_config = ConfigDict(frozen=True)

    name: str
    sql_type: str
    nullable: bool = False
    default: str | None = None
    unique: bool = False
    indexed: bool = False
    primary_key: bool = False
    # Config-only rename annotation; not part of the structure.
    renamed_from: str | None = None

    @property
    def not_null(self) -> bool:
        return self.primary_key or not self.nullable

    def structure(self) -> tuple:
        return (
            normalize_type(self.sql_type),
            not self.not_null,
            normalize_default(self.default),
            self.unique and not self.primary_key,
            self.primary_key,
        )


class IndexSpec(BaseModel):
    """A named index over one or more columns."""

    model_config = ConfigDict(frozen=True)

    name: str
    columns: tuple[str, ...]
    unique: bool = False

    def structure(self) -> tuple:
        return (tuple(self.columns), self.unique)


class Relationship(BaseModel):
    """A foreign key from this model to its parent model."""

    model_config = ConfigDict(frozen=True)

    model: str
    table: str
    column: str
    references: str = "id"
    on_delete: str = "cascade"

    def structure(self) -> tuple:
        return (self.table, self.column, self.references, normalize_on_delete(self.on_delete))


class SchemaSnapshot(BaseModel):
    """Immutable record of one model's table at a point in time."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_name: str
    table: str
    fields: tuple[FieldSpec, ...] = Field(default_factory=tuple)
    indexes: tuple[IndexSpec, ...] = Field(default_factory=tuple)
    parent: Relationship | None = None

    def field(self, name: str) -> FieldSpec | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def effective_indexes(self) -> dict[str, IndexSpec]:
        """Explicit indexes plus one implicit index per ``indexed`` field."""
        result = {idx.name: idx for idx in self.indexes}
        for f in self.fields:
            if f.indexed:
                name = implicit_index_name(self.table, f.name)
                result.setdefault(name, IndexSpec(name=name, columns=(f.name,)))
        return result

    def structure(self) -> dict[str, Any]:
        """Order-independent structural form used for equality checks."""
        return {
            "table": self.table,
            "fields": {f.name: f.structure() for f in self.fields},
            "indexes": {
                name: idx.structure() for name, idx in self.effective_indexes().items()
            },
            "parent": self.parent.structure() if self.parent else None,
        }

    def same_structure(self, other: SchemaSnapshot | None) -> bool:
        return other is not None and self.structure() == other.structure()

    def relax_columns(self, names: set[str]) -> SchemaSnapshot:
        """Copy of this snapshot with the named columns made nullable."""
        if not names:
            return self
        fields = tuple(
            f.model_copy(update={"nullable": True}) if f.name in names else f
            for f in self.fields
        )
        return self.model_copy(update={"fields": fields})


def normalize_on_delete(action: str) -> str:
    """``SET NULL`` and ``set_null`` are the same action; ``ignore`` is the default."""
    text = "_".join(action.strip().lower().split())
    return "no_action" if text in ("", "ignore") else text


def implicit_index_name(table: str, column: str) -> str:
    return f"{table}_{column}_idx"


def unique_constraint_name(table: str, column: str) -> str:
    return f"{table}_{column}_key"


def foreign_key_name(table: str, column: str) -> str:
    return f"{table}_{column}_fkey"
