"""
Schema diff and migration plan types.

A ``SchemaDiff`` is derived from two snapshots and never persisted. A
``MigrationPlan`` becomes a pair of SQL files and is never mutated
afterwards; corrections are new migrations.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from trellis.core.models.schema import FieldSpec, IndexSpec, Relationship, SchemaSnapshot


@dataclass
class SchemaDiff:
    """Structural difference between two snapshots of one model.

    ``old`` is None when the model is new; ``new`` is None when the
    model was removed. ``renamed`` holds explicitly annotated renames as
    (old field, new field) pairs; ``changed`` compares fields of the same
    name (after renames) whose properties differ.
    """

    model_name: str
    old: SchemaSnapshot | None = None
    new: SchemaSnapshot | None = None

    added: list[FieldSpec] = field(default_factory=list)
    removed: list[FieldSpec] = field(default_factory=list)
    changed: list[tuple[FieldSpec, FieldSpec]] = field(default_factory=list)
    renamed: list[tuple[FieldSpec, FieldSpec]] = field(default_factory=list)

    index_added: list[IndexSpec] = field(default_factory=list)
    index_removed: list[IndexSpec] = field(default_factory=list)
    index_changed: list[tuple[IndexSpec, IndexSpec]] = field(default_factory=list)

    relationship_added: list[Relationship] = field(default_factory=list)
    relationship_removed: list[Relationship] = field(default_factory=list)
    relationship_changed: list[tuple[Relationship, Relationship]] = field(
        default_factory=list
    )

    @property
    def table(self) -> str:
        snapshot = self.new or self.old
        return snapshot.table if snapshot else ""

    @property
    def creates_table(self) -> bool:
        return self.old is None and self.new is not None

    @property
    def drops_table(self) -> bool:
        return self.old is not None and self.new is None

    @property
    def renames_table(self) -> bool:
        return (
            self.old is not None and self.new is not None and self.old.table != self.new.table
        )

    @property
    def is_empty(self) -> bool:
        if self.creates_table or self.drops_table or self.renames_table:
            return False
        return not any((
            self.added, self.removed, self.changed, self.renamed,
            self.index_added, self.index_removed, self.index_changed,
            self.relationship_added, self.relationship_removed,
            self.relationship_changed,
        ))

    def inverted(self) -> SchemaDiff:
        """The diff that takes ``new`` back to ``old``.

        Entries name columns as they are called after the renames of
        their own direction, so changed fields, indexes and relationships
        are mapped back to the old names.
        """
        back = {after.name: before.name for before, after in self.renamed}

        def field_back(f: FieldSpec) -> FieldSpec:
            name = back.get(f.name, f.name)
            return f if name == f.name else f.model_copy(update={"name": name})

        def index_back(i: IndexSpec) -> IndexSpec:
            if not back:
                return i
            return i.model_copy(update={"columns": tuple(back.get(c, c) for c in i.columns)})

        def rel_back(r: Relationship) -> Relationship:
            column = back.get(r.column, r.column)
            return r if column == r.column else r.model_copy(update={"column": column})

        return SchemaDiff(
            model_name=self.model_name,
            old=self.new,
            new=self.old,
            added=list(self.removed),
            removed=list(self.added),
            changed=[(field_back(new), field_back(old)) for old, new in self.changed],
            renamed=[(new, old) for old, new in self.renamed],
            index_added=[index_back(i) for i in self.index_removed],
            index_removed=[index_back(i) for i in self.index_added],
            index_changed=[
                (index_back(new), index_back(old)) for old, new in self.index_changed
            ],
            relationship_added=[rel_back(r) for r in self.relationship_removed],
            relationship_removed=[rel_back(r) for r in self.relationship_added],
            relationship_changed=[
                (rel_back(new), rel_back(old)) for old, new in self.relationship_changed
            ],
        )

    def entries(self) -> list[str]:
        """Human-readable description of every entry, for reports."""
        out: list[str] = []
        if self.creates_table:
            out.append(f"create table {self.table}")
        if self.drops_table:
            out.append(f"drop table {self.table}")
        if self.renames_table:
            out.append(f"rename table {self.old.table} -> {self.new.table}")
        out += [f"add field {f.name}" for f in self.added]
        out += [f"remove field {f.name}" for f in self.removed]
        out += [f"rename field {a.name} -> {b.name}" for a, b in self.renamed]
        out += [f"change field {b.name}" for _, b in self.changed]
        out += [f"add index {i.name}" for i in self.index_added]
        out += [f"remove index {i.name}" for i in self.index_removed]
        out += [f"change index {b.name}" for _, b in self.index_changed]
        out += [f"add relationship to {r.model}" for r in self.relationship_added]
        out += [f"remove relationship to {r.model}" for r in self.relationship_removed]
        out += [f"change relationship to {b.model}" for _, b in self.relationship_changed]
        return out


@dataclass
class MigrationPlan:
    """Paired up/down SQL synthesized from one ``SchemaDiff``."""

    id: str
    model_name: str
    table: str
    up_statements: list[str] = field(default_factory=list)
    down_statements: list[str] = field(default_factory=list)
    needs_manual_review: bool = False
    review_notes: list[str] = field(default_factory=list)
    description: str = ""

    @property
    def slug(self) -> str:
        """File stem, e.g. ``20261019120000_alter_reports``."""
        words = re.sub(r"[^a-z0-9]+", "_", (self.description or self.table).lower()).strip("_")
        return f"{self.id}_{words}"

    @property
    def is_empty(self) -> bool:
        return not self.up_statements and not self.down_statements

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model": self.model_name,
            "table": self.table,
            "description": self.description,
            "up": self.up_statements,
            "down": self.down_statements,
            "needs_manual_review": self.needs_manual_review,
            "review_notes": self.review_notes,
        }
