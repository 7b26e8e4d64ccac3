"""
Schema differ — structural diff between two snapshots of one model.

Fields are matched by name; column order is cosmetic and never produces
an entry. A field annotated with ``renamed_from`` whose old name exists
in the old snapshot is a rename rather than a remove + add, and the old
snapshot's index and foreign-key columns are mapped through the renames
before comparison so a rename alone yields a single entry.

Pure function, no I/O.
"""

from __future__ import annotations

import logging

from trellis.core.models.migration import SchemaDiff
from trellis.core.models.schema import IndexSpec, Relationship, SchemaSnapshot

logger = logging.getLogger(__name__)


def diff_schema(old: SchemaSnapshot | None, new: SchemaSnapshot | None) -> SchemaDiff:
    """Compute the diff that takes ``old`` to ``new``.

    Args:
        old: Last stored snapshot, or None for a new model.
        new: Snapshot built from the current configuration, or None when
            the model was removed.

    Returns:
        SchemaDiff. A created or dropped table carries no field entries;
        the snapshots themselves describe it.
    """
    if old is None and new is None:
        raise ValueError("diff_schema needs at least one snapshot")
    model_name = new.model_name if new is not None else old.model_name
    result = SchemaDiff(model_name=model_name, old=old, new=new)
    if old is None or new is None:
        return result

    renames = _renames(old, new)
    old_fields = {f.name: f for f in old.fields}
    new_fields = {f.name: f for f in new.fields}
    renamed_to = set(renames.values())

    for old_name, new_name in renames.items():
        before, after = old_fields[old_name], new_fields[new_name]
        result.renamed.append((before, after))
        moved = before.model_copy(update={"name": new_name})
        if moved.structure() != after.structure():
            result.changed.append((moved, after))

    for f in new.fields:
        if f.name not in old_fields and f.name not in renamed_to:
            result.added.append(f)
    for f in old.fields:
        if f.name not in new_fields and f.name not in renames:
            result.removed.append(f)
    for f in new.fields:
        before = old_fields.get(f.name)
        if before is not None and f.name not in renamed_to and before.structure() != f.structure():
            result.changed.append((before, f))

    _diff_indexes(result, old, new, renames)
    _diff_parent(result, old.parent, new.parent, renames)

    logger.debug("Schema diff for %s: %s", model_name, result.entries() or "no changes")
    return result


def _renames(old: SchemaSnapshot, new: SchemaSnapshot) -> dict[str, str]:
    """Explicit ``renamed_from`` pairs that still apply (old name -> new name)."""
    old_names = set(old.field_names())
    new_names = set(new.field_names())
    renames: dict[str, str] = {}
    for f in new.fields:
        source = f.renamed_from
        if not source or source == f.name:
            continue
        if source in old_names and source not in new_names and f.name not in old_names:
            if source in renames:
                logger.warning(
                    "%s: fields %s and %s both claim to be renamed from %s",
                    new.model_name, renames[source], f.name, source,
                )
                continue
            renames[source] = f.name
    return renames


def _map_index(index: IndexSpec, renames: dict[str, str]) -> IndexSpec:
    if not renames:
        return index
    return index.model_copy(update={"columns": tuple(renames.get(c, c) for c in index.columns)})


def _diff_indexes(
    result: SchemaDiff,
    old: SchemaSnapshot,
    new: SchemaSnapshot,
    renames: dict[str, str],
) -> None:
    old_indexes = {n: _map_index(i, renames) for n, i in old.effective_indexes().items()}
    new_indexes = new.effective_indexes()

    for name, index in new_indexes.items():
        before = old_indexes.get(name)
        if before is None:
            result.index_added.append(index)
        elif before.structure() != index.structure():
            result.index_changed.append((before, index))
    for name, index in old_indexes.items():
        if name not in new_indexes:
            result.index_removed.append(index)


def _diff_parent(
    result: SchemaDiff,
    old: Relationship | None,
    new: Relationship | None,
    renames: dict[str, str],
) -> None:
    if old is not None and old.column in renames:
        old = old.model_copy(update={"column": renames[old.column]})

    if old is not None and new is not None and old.model == new.model:
        if old.structure() != new.structure():
            result.relationship_changed.append((old, new))
        return
    if old is not None:
        result.relationship_removed.append(old)
    if new is not None:
        result.relationship_added.append(new)
