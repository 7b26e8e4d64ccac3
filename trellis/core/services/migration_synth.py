"""
Migration synthesizer — turn a schema diff into verified up/down SQL.

Each diff entry translates by a fixed rule into one step (one or more
PostgreSQL statements). Steps are ordered by a topological sort over
their column dependencies:

    - dropping an index or foreign key on a column precedes dropping,
      altering or renaming that column
    - adding, altering or renaming a column in precedes any index,
      unique constraint or foreign key on it
    - a step that frees a column name precedes a step that takes it

Steps that are ready together go drop -> alter -> add. Down statements
are synthesized independently from the inverted diff.

Before a plan is accepted, both directions are replayed through the
schema simulator and compared structurally against the expected
snapshots. Any failure raises ``SynthesisError`` naming the entry.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

from trellis.core.models.migration import MigrationPlan, SchemaDiff
from trellis.core.models.project import MigrationSettings
from trellis.core.models.schema import (
    FieldSpec,
    IndexSpec,
    Relationship,
    SchemaSnapshot,
    foreign_key_name,
    normalize_default,
    normalize_on_delete,
    normalize_type,
    unique_constraint_name,
)
from trellis.core.services.dag import CycleError, topological_sort
from trellis.core.services.schema_sim import SimulationError, apply
from trellis.core.services.sql_text import quote_ident

logger = logging.getLogger(__name__)

PHASE_RENAME_TABLE = -1
PHASE_DROP = 0
PHASE_ALTER = 1
PHASE_ADD = 2


class SynthesisError(Exception):
    """A schema change that cannot be translated or verified safely."""

    def __init__(self, model: str, entry: str, detail: str):
        super().__init__(f"{model}: {entry}: {detail}")
        self.model = model
        self.entry = entry
        self.detail = detail

    def to_dict(self) -> dict:
        return {"model": self.model, "entry": self.entry, "detail": self.detail}


# ── Steps ───────────────────────────────────────────────────────────


@dataclass
class _Step:
    """The statements of one diff entry and the columns they affect."""

    entry: str
    phase: int
    sql: list[str]
    releases: frozenset[str] = frozenset()
    consumes: frozenset[str] = frozenset()
    provides: frozenset[str] = frozenset()
    requires: frozenset[str] = frozenset()
    vacates: frozenset[str] = frozenset()
    occupies: frozenset[str] = frozenset()

    def precedes(self, other: _Step) -> bool:
        return bool(
            self.releases & other.consumes
            or self.provides & other.requires
            or self.vacates & other.occupies
        )


@dataclass
class _Translation:
    """One direction of a plan before ordering."""

    steps: list[_Step] = field(default_factory=list)
    relaxed: set[str] = field(default_factory=set)
    notes: list[str] = field(default_factory=list)
    needs_review: bool = False

    def add(self, entry: str, phase: int, sql: str | list[str], **columns: Iterable[str]) -> None:
        statements = [sql] if isinstance(sql, str) else sql
        self.steps.append(_Step(
            entry=entry,
            phase=phase,
            sql=statements,
            **{k: frozenset(v) for k, v in columns.items()},
        ))

    def review(self, note: str) -> None:
        self.needs_review = True
        self.notes.append(note)


# ── SQL rendering ───────────────────────────────────────────────────


def column_sql(f: FieldSpec, *, inline_primary_key: bool = True, nullable: bool = False) -> str:
    """Column definition as used by CREATE TABLE and ADD COLUMN."""
    parts = [quote_ident(f.name), f.sql_type]
    if f.primary_key and inline_primary_key:
        parts.append("PRIMARY KEY")
    elif f.not_null and not nullable:
        parts.append("NOT NULL")
    if f.default is not None:
        parts.append(f"DEFAULT {f.default}")
    if f.unique and not f.primary_key:
        parts.append("UNIQUE")
    return " ".join(parts)


def _columns(names: Iterable[str]) -> str:
    return ", ".join(quote_ident(n) for n in names)


def _on_delete(action: str) -> str:
    action = normalize_on_delete(action)
    if action == "no_action":
        return ""
    return " ON DELETE " + action.replace("_", " ").upper()


def _create_index_sql(table: str, index: IndexSpec) -> str:
    unique = "UNIQUE " if index.unique else ""
    return (
        f"CREATE {unique}INDEX {quote_ident(index.name)} "
        f"ON {quote_ident(table)} ({_columns(index.columns)})"
    )


def _add_foreign_key_sql(table: str, rel: Relationship) -> str:
    return (
        f"ALTER TABLE {quote_ident(table)} "
        f"ADD CONSTRAINT {quote_ident(foreign_key_name(table, rel.column))} "
        f"FOREIGN KEY ({quote_ident(rel.column)}) "
        f"REFERENCES {quote_ident(rel.table)} ({quote_ident(rel.references)})"
        f"{_on_delete(rel.on_delete)}"
    )


def _rename_constraint_sql(table: str, old: str, new: str) -> str:
    return (
        f"ALTER TABLE {quote_ident(table)} "
        f"RENAME CONSTRAINT {quote_ident(old)} TO {quote_ident(new)}"
    )


def create_table_sql(snapshot: SchemaSnapshot) -> str:
    """CREATE TABLE for a snapshot, without its indexes and foreign key."""
    pk = [f.name for f in snapshot.fields if f.primary_key]
    lines = [
        "    " + column_sql(f, inline_primary_key=len(pk) == 1)
        for f in snapshot.fields
    ]
    if len(pk) > 1:
        lines.append(f"    PRIMARY KEY ({_columns(pk)})")
    return f"CREATE TABLE {quote_ident(snapshot.table)} (\n" + ",\n".join(lines) + "\n)"


# ── Translation rules ───────────────────────────────────────────────


def _translate(diff: SchemaDiff, settings: MigrationSettings) -> _Translation:
    out = _Translation()
    if diff.creates_table:
        _create_table(diff.new, out)
        return out
    if diff.drops_table:
        table = diff.old.table
        out.add(f"drop table {table}", PHASE_DROP, f"DROP TABLE {quote_ident(table)}")
        out.review(f"DROP TABLE {table} deletes every row of the table")
        return out

    old, new = diff.old, diff.new
    table = new.table
    renames = {a.name: b.name for a, b in diff.renamed}
    original = {b: a for a, b in renames.items()}
    _check_primary_key(diff, renames)

    if diff.renames_table:
        _rename_table(old, new, out)

    fk_kept = not diff.relationship_removed and not diff.relationship_changed
    for before, after in diff.renamed:
        _rename_column(table, old, before, after, fk_kept, out)

    for f in diff.added:
        _add_column(table, f, out)

    for f in diff.removed:
        out.add(
            f"remove field {f.name}",
            PHASE_DROP,
            f"ALTER TABLE {quote_ident(table)} DROP COLUMN {quote_ident(f.name)}",
            consumes=[f.name],
            vacates=[f.name],
        )

    for before, after in diff.changed:
        _change_column(table, before, after, original, settings, out)

    for index in diff.index_removed:
        _drop_index(index, out)
    for before, after in diff.index_changed:
        _drop_index(before, out)
        _add_index(table, after, out)
    for index in diff.index_added:
        _add_index(table, index, out)

    for rel in diff.relationship_removed:
        _drop_foreign_key(table, rel, original, out)
    for before, after in diff.relationship_changed:
        _drop_foreign_key(table, before, original, out)
        _add_foreign_key(table, after, out)
    for rel in diff.relationship_added:
        _add_foreign_key(table, rel, out)

    _flag_possible_renames(diff, out)
    return out


def _check_primary_key(diff: SchemaDiff, renames: Mapping[str, str]) -> None:
    before = {renames.get(f.name, f.name) for f in diff.old.fields if f.primary_key}
    after = {f.name for f in diff.new.fields if f.primary_key}
    if before != after:
        raise SynthesisError(
            diff.model_name,
            "primary key",
            f"changing the primary key from ({', '.join(sorted(before))}) "
            f"to ({', '.join(sorted(after))}) cannot be migrated automatically",
        )


def _create_table(snapshot: SchemaSnapshot, out: _Translation) -> None:
    names = snapshot.field_names()
    out.add(
        f"create table {snapshot.table}",
        PHASE_ADD,
        create_table_sql(snapshot),
        provides=names,
        occupies=names,
    )
    for index in snapshot.effective_indexes().values():
        _add_index(snapshot.table, index, out)
    if snapshot.parent is not None:
        _add_foreign_key(snapshot.table, snapshot.parent, out)


def _rename_table(old: SchemaSnapshot, new: SchemaSnapshot, out: _Translation) -> None:
    sql = [f"ALTER TABLE {quote_ident(old.table)} RENAME TO {quote_ident(new.table)}"]
    # Constraint names embed the table name; keep them derivable.
    if any(f.primary_key for f in old.fields):
        sql.append(_rename_constraint_sql(new.table, f"{old.table}_pkey", f"{new.table}_pkey"))
    for f in old.fields:
        if f.unique and not f.primary_key:
            sql.append(_rename_constraint_sql(
                new.table,
                unique_constraint_name(old.table, f.name),
                unique_constraint_name(new.table, f.name),
            ))
    if old.parent is not None:
        sql.append(_rename_constraint_sql(
            new.table,
            foreign_key_name(old.table, old.parent.column),
            foreign_key_name(new.table, old.parent.column),
        ))
    out.add(f"rename table {old.table} -> {new.table}", PHASE_RENAME_TABLE, sql)


def _rename_column(
    table: str,
    old: SchemaSnapshot,
    before: FieldSpec,
    after: FieldSpec,
    fk_kept: bool,
    out: _Translation,
) -> None:
    a, b = before.name, after.name
    sql = [f"ALTER TABLE {quote_ident(table)} RENAME COLUMN {quote_ident(a)} TO {quote_ident(b)}"]
    if before.unique and not before.primary_key and after.unique and not after.primary_key:
        sql.append(_rename_constraint_sql(
            table, unique_constraint_name(table, a), unique_constraint_name(table, b)
        ))
    if fk_kept and old.parent is not None and old.parent.column == a:
        sql.append(_rename_constraint_sql(
            table, foreign_key_name(table, a), foreign_key_name(table, b)
        ))
    out.add(
        f"rename field {a} -> {b}",
        PHASE_ALTER,
        sql,
        consumes=[a],
        vacates=[a],
        provides=[b],
        occupies=[b],
    )


def _add_column(table: str, f: FieldSpec, out: _Translation) -> None:
    relax = f.not_null and f.default is None and not f.primary_key
    out.add(
        f"add field {f.name}",
        PHASE_ADD,
        f"ALTER TABLE {quote_ident(table)} ADD COLUMN {column_sql(f, nullable=relax)}",
        provides=[f.name],
        occupies=[f.name],
    )
    if relax:
        out.relaxed.add(f.name)
        out.review(
            f"{table}.{f.name} is NOT NULL without a default: it is added as nullable. "
            f"Backfill existing rows, then run "
            f"ALTER TABLE {quote_ident(table)} ALTER COLUMN {quote_ident(f.name)} SET NOT NULL"
        )


def _change_column(
    table: str,
    before: FieldSpec,
    after: FieldSpec,
    original: Mapping[str, str],
    settings: MigrationSettings,
    out: _Translation,
) -> None:
    name = after.name
    col = quote_ident(name)
    actions: list[str] = []
    if normalize_type(before.sql_type) != normalize_type(after.sql_type):
        actions.append(f"ALTER COLUMN {col} TYPE {after.sql_type} USING {col}::{after.sql_type}")
    if normalize_default(before.default) != normalize_default(after.default):
        if after.default is None:
            actions.append(f"ALTER COLUMN {col} DROP DEFAULT")
        else:
            actions.append(f"ALTER COLUMN {col} SET DEFAULT {after.default}")
    if before.not_null != after.not_null:
        if after.not_null:
            actions.append(f"ALTER COLUMN {col} SET NOT NULL")
            out.notes.append(f"SET NOT NULL on {table}.{name} fails while NULL values remain")
        else:
            actions.append(f"ALTER COLUMN {col} DROP NOT NULL")

    if actions:
        prefix = f"ALTER TABLE {quote_ident(table)} "
        if settings.combine_alters:
            sql = [prefix + ", ".join(actions)]
        else:
            sql = [prefix + action for action in actions]
        out.add(
            f"change field {name}",
            PHASE_ALTER,
            sql,
            consumes=[name],
            provides=[name],
            requires=[name],
        )

    was_unique = before.unique and not before.primary_key
    is_unique = after.unique and not after.primary_key
    if was_unique and not is_unique:
        constraint = unique_constraint_name(table, original.get(name, name))
        out.add(
            f"change field {name}",
            PHASE_DROP,
            f"ALTER TABLE {quote_ident(table)} DROP CONSTRAINT {quote_ident(constraint)}",
            releases=[name],
        )
    elif is_unique and not was_unique:
        constraint = unique_constraint_name(table, name)
        out.add(
            f"change field {name}",
            PHASE_ADD,
            f"ALTER TABLE {quote_ident(table)} ADD CONSTRAINT {quote_ident(constraint)} UNIQUE ({col})",
            requires=[name],
        )


def _drop_index(index: IndexSpec, out: _Translation) -> None:
    out.add(
        f"remove index {index.name}",
        PHASE_DROP,
        f"DROP INDEX {quote_ident(index.name)}",
        releases=index.columns,
    )


def _add_index(table: str, index: IndexSpec, out: _Translation) -> None:
    out.add(
        f"add index {index.name}",
        PHASE_ADD,
        _create_index_sql(table, index),
        requires=index.columns,
    )


def _drop_foreign_key(
    table: str, rel: Relationship, original: Mapping[str, str], out: _Translation
) -> None:
    constraint = foreign_key_name(table, original.get(rel.column, rel.column))
    out.add(
        f"remove relationship to {rel.model}",
        PHASE_DROP,
        f"ALTER TABLE {quote_ident(table)} DROP CONSTRAINT {quote_ident(constraint)}",
        releases=[rel.column],
    )


def _add_foreign_key(table: str, rel: Relationship, out: _Translation) -> None:
    out.add(
        f"add relationship to {rel.model}",
        PHASE_ADD,
        _add_foreign_key_sql(table, rel),
        requires=[rel.column],
    )


def _flag_possible_renames(diff: SchemaDiff, out: _Translation) -> None:
    for gone in diff.removed:
        for fresh in diff.added:
            if normalize_type(gone.sql_type) == normalize_type(fresh.sql_type):
                out.review(
                    f"{gone.name} is dropped and {fresh.name} added with the same type; "
                    f"if this is a rename, set renamed_from: {gone.name} on {fresh.name} "
                    "to keep the data"
                )


# ── Ordering and verification ───────────────────────────────────────


def _order(translation: _Translation, model: str) -> list[str]:
    steps = translation.steps
    keys = [str(i) for i in range(len(steps))]
    edges = [
        (keys[i], keys[j])
        for i, s in enumerate(steps)
        for j, t in enumerate(steps)
        if i != j and s.precedes(t)
    ]
    try:
        order = topological_sort(keys, edges, priority=lambda k: steps[int(k)].phase)
    except CycleError as e:
        entries = ", ".join(sorted({steps[int(k)].entry for k in e.nodes}))
        raise SynthesisError(model, entries, "statements depend on each other in a cycle") from e
    return [sql for k in order for sql in steps[int(k)].sql]


def _entry_for(statement: str, translation: _Translation) -> str:
    wanted = " ".join(statement.split())
    for step in translation.steps:
        if any(" ".join(sql.split()) == wanted for sql in step.sql):
            return step.entry
    return "migration"


def _mismatch(expected: SchemaSnapshot | None, got: SchemaSnapshot | None) -> tuple[str, str]:
    """Name the first structural difference as (entry, detail)."""
    if got is None:
        return f"table {expected.table}", "table is missing after applying the statements"
    if expected is None:
        return f"table {got.table}", "table still exists after applying the statements"
    want, have = expected.structure(), got.structure()
    if want["table"] != have["table"]:
        return "table", f"expected table {want['table']}, simulated {have['table']}"
    for kind in ("fields", "indexes"):
        for name in sorted(set(want[kind]) | set(have[kind])):
            if want[kind].get(name) != have[kind].get(name):
                label = "field" if kind == "fields" else "index"
                return (
                    f"{label} {name}",
                    f"expected {want[kind].get(name)}, simulated {have[kind].get(name)}",
                )
    return "relationship", f"expected {want['parent']}, simulated {have['parent']}"


def _same(a: SchemaSnapshot | None, b: SchemaSnapshot | None) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return a.same_structure(b)


def _simulate(
    model: str,
    start: SchemaSnapshot | None,
    statements: list[str],
    table: str,
    translation: _Translation,
) -> SchemaSnapshot | None:
    try:
        return apply(start, statements, table=table, model_name=model)
    except SimulationError as e:
        raise SynthesisError(model, _entry_for(e.statement, translation), str(e)) from e


def _verify(
    diff: SchemaDiff,
    up: _Translation,
    up_sql: list[str],
    down: _Translation,
    down_sql: list[str],
) -> None:
    model = diff.model_name
    expected_new = diff.new.relax_columns(up.relaxed) if diff.new else None
    expected_old = diff.old.relax_columns(down.relaxed) if diff.old else None
    new_table = diff.new.table if diff.new else diff.old.table
    old_table = diff.old.table if diff.old else diff.new.table

    got = _simulate(model, diff.old, up_sql, new_table, up)
    if not _same(expected_new, got):
        entry, detail = _mismatch(expected_new, got)
        raise SynthesisError(model, entry, f"up migration does not reproduce the schema: {detail}")

    got = _simulate(model, expected_new, down_sql, old_table, down)
    if not _same(expected_old, got):
        entry, detail = _mismatch(expected_old, got)
        raise SynthesisError(model, entry, f"down migration does not restore the schema: {detail}")


# ── Public API ──────────────────────────────────────────────────────


def next_migration_id(now: datetime | None = None, last_id: str | None = None) -> str:
    """Time-ordered migration id (``YYYYMMDDHHMMSS``), strictly after ``last_id``."""
    candidate = (now or datetime.now(UTC)).strftime("%Y%m%d%H%M%S")
    if last_id and last_id.isdigit() and int(candidate) <= int(last_id):
        candidate = f"{int(last_id) + 1:014d}"
    return candidate


def _description(diff: SchemaDiff) -> str:
    if diff.creates_table:
        return f"create_{diff.table}"
    if diff.drops_table:
        return f"drop_{diff.table}"
    return f"alter_{diff.table}"


def synthesize(
    diff: SchemaDiff,
    migration_id: str | None = None,
    settings: MigrationSettings | None = None,
) -> MigrationPlan:
    """Translate one model's schema diff into a verified migration plan.

    Args:
        diff: Output of ``diff_schema``.
        migration_id: Id of the plan (default: from the current time).
        settings: Statement combining and verification switches.

    Returns:
        MigrationPlan. ``needs_manual_review`` is set when a change was
        applied in a weakened form or may lose data.

    Raises:
        SynthesisError: If an entry cannot be translated, the statements
            cannot be ordered, or verification fails.
    """
    settings = settings or MigrationSettings()
    plan = MigrationPlan(
        id=migration_id or next_migration_id(),
        model_name=diff.model_name,
        table=diff.table,
        description=_description(diff),
    )
    if diff.is_empty:
        return plan

    up = _translate(diff, settings)
    down = _translate(diff.inverted(), settings)
    up_sql = _order(up, diff.model_name)
    down_sql = _order(down, diff.model_name)

    if settings.verify:
        _verify(diff, up, up_sql, down, down_sql)

    plan.up_statements = up_sql
    plan.down_statements = down_sql
    plan.needs_manual_review = up.needs_review
    plan.review_notes = up.notes
    logger.info(
        "Synthesized migration %s for %s (%d up, %d down%s)",
        plan.slug, diff.model_name, len(up_sql), len(down_sql),
        ", needs review" if plan.needs_manual_review else "",
    )
    return plan


@dataclass
class MigrationBatch:
    """Plans accepted and errors raised for one generation pass."""

    plans: list[MigrationPlan] = field(default_factory=list)
    errors: list[SynthesisError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def failed_models(self) -> set[str]:
        return {e.model for e in self.errors}

    def to_dict(self) -> dict:
        return {
            "plans": [p.to_dict() for p in self.plans],
            "errors": [e.to_dict() for e in self.errors],
        }


def _referenced_models(diff: SchemaDiff) -> tuple[set[str], set[str]]:
    """Parents referenced after the change, and parents released by it."""
    gains = {r.model for r in diff.relationship_added}
    gains |= {after.model for _, after in diff.relationship_changed}
    loses = {r.model for r in diff.relationship_removed}
    loses |= {before.model for before, _ in diff.relationship_changed}
    if diff.creates_table and diff.new.parent is not None:
        gains.add(diff.new.parent.model)
    if diff.drops_table and diff.old.parent is not None:
        loses.add(diff.old.parent.model)
    return gains, loses


def _model_edges(pending: Mapping[str, SchemaDiff]) -> list[tuple[str, str]]:
    edges: list[tuple[str, str]] = []
    for name, diff in pending.items():
        gains, loses = _referenced_models(diff)
        for parent in gains:
            if parent != name and parent in pending and not pending[parent].drops_table:
                edges.append((parent, name))
        for parent in loses:
            if parent != name and parent in pending and pending[parent].drops_table:
                edges.append((name, parent))
    return edges


def plan_migrations(
    diffs: Iterable[SchemaDiff],
    settings: MigrationSettings | None = None,
    *,
    now: datetime | None = None,
    last_id: str | None = None,
    current: Mapping[str, SchemaSnapshot] | None = None,
) -> MigrationBatch:
    """Synthesize one migration per changed model, in dependency order.

    A parent whose table is created (or otherwise changed) is migrated
    before children that reference it; a child that stops referencing a
    parent is migrated before the parent is dropped. When a model fails,
    models that depend on it are skipped and reported too; unrelated
    models proceed.

    Args:
        diffs: One diff per model; empty diffs are ignored.
        settings: Synthesizer settings.
        now: Clock for migration ids.
        last_id: Newest existing migration id; new ids sort after it.
        current: Snapshots of every configured model, used to refuse
            dropping a table that is still referenced.
    """
    settings = settings or MigrationSettings()
    pending = {d.model_name: d for d in diffs if not d.is_empty}
    batch = MigrationBatch()
    failed: set[str] = set()

    for name, diff in pending.items():
        if not diff.drops_table or current is None:
            continue
        users = sorted(
            model for model, snap in current.items()
            if model != name and snap.parent is not None and snap.parent.model == name
        )
        if users:
            batch.errors.append(SynthesisError(
                name, f"drop table {diff.table}", f"still referenced by {', '.join(users)}"
            ))
            failed.add(name)

    edges = _model_edges(pending)
    nodes = list(pending)
    while True:
        live = [n for n in nodes if n not in failed]
        try:
            order = topological_sort(
                live, [(a, b) for a, b in edges if a in live and b in live]
            )
            break
        except CycleError as e:
            for name in e.nodes:
                batch.errors.append(SynthesisError(
                    name, "relationships", "models reference each other in a cycle"
                ))
                failed.add(name)

    depends_on: dict[str, set[str]] = {}
    for before, after in edges:
        depends_on.setdefault(after, set()).add(before)

    for name in order:
        blocked = sorted(depends_on.get(name, set()) & failed)
        if blocked:
            batch.errors.append(SynthesisError(
                name, "dependencies", f"skipped because {', '.join(blocked)} failed"
            ))
            failed.add(name)
            continue
        migration_id = next_migration_id(now, last_id)
        try:
            plan = synthesize(pending[name], migration_id, settings)
        except SynthesisError as e:
            logger.warning("Migration for %s rejected: %s", name, e)
            batch.errors.append(e)
            failed.add(name)
            continue
        batch.plans.append(plan)
        last_id = migration_id

    return batch
