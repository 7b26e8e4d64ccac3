"""
Migrations check use case — replay the migrations directory.

Every up file is applied, in id order, to an empty simulated database.
The resulting tables must match the schema snapshots in the generated
state. Columns a migration added as nullable on purpose (NOT NULL
without a default) are reported as warnings until a follow-up migration
tightens them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from trellis.core.config.loader import ConfigError, load_project, project_dirs, resolve_config_path
from trellis.core.models.schema import SchemaSnapshot
from trellis.core.persistence.migration_files import list_migrations
from trellis.core.persistence.state_store import GeneratedStateStore, StateCorruption
from trellis.core.services.schema_sim import SimulatedDatabase, SimulationError

logger = logging.getLogger(__name__)


@dataclass
class MigrationsCheckResult:
    """Result of replaying migrations against the generated state."""

    valid: bool = False
    migrations: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "migrations": self.migrations,
            "errors": self.errors,
            "warnings": self.warnings,
        }


def _relaxed_columns(replayed: SchemaSnapshot, expected: SchemaSnapshot) -> set[str]:
    names = set()
    for f in expected.fields:
        got = replayed.field(f.name)
        if got is not None and f.not_null and not got.not_null:
            names.add(f.name)
    return names


def replay_migrations(
    migrations_dir: Path,
    expected: dict[str, SchemaSnapshot],
) -> MigrationsCheckResult:
    """Replay up files and compare each table with its expected snapshot.

    Args:
        migrations_dir: Directory of ``<id>_<slug>.up.sql`` files.
        expected: Model name -> snapshot the tables should end up as.
    """
    result = MigrationsCheckResult()
    db = SimulatedDatabase(strict=False, check_references=True)

    for migration in list_migrations(migrations_dir):
        name = f"{migration.id}_{migration.slug}"
        result.migrations.append(name)
        if migration.up is None:
            result.errors.append(f"{name}: up file is missing")
            continue
        if migration.down is None:
            result.warnings.append(f"{name}: down file is missing")
        try:
            db.apply_sql(migration.up.read_text(encoding="utf-8"))
        except SimulationError as e:
            result.errors.append(f"{name}: {e}")
        except OSError as e:
            result.errors.append(f"{name}: cannot read: {e}")

    tracked = set()
    for model, snapshot in sorted(expected.items()):
        tracked.add(snapshot.table)
        if snapshot.table not in db.tables:
            result.errors.append(f"{model}: table {snapshot.table} is not created by any migration")
            continue
        try:
            replayed = db.snapshot(snapshot.table, model)
        except SimulationError as e:
            result.errors.append(f"{model}: {e}")
            continue
        if replayed.same_structure(snapshot):
            continue
        relaxed = _relaxed_columns(replayed, snapshot)
        if relaxed and replayed.same_structure(snapshot.relax_columns(relaxed)):
            result.warnings.append(
                f"{model}: columns still nullable in the database: {', '.join(sorted(relaxed))}"
            )
            continue
        result.errors.append(f"{model}: table {snapshot.table} differs from the generated schema")
        logger.debug("Replayed %s: %s", model, replayed.structure())
        logger.debug("Expected %s: %s", model, snapshot.structure())

    for table in sorted(set(db.tables) - tracked):
        result.warnings.append(f"Table {table} exists after replay but is not a model")

    result.valid = not result.errors
    return result


def check_migrations(config_path: Path | None = None) -> MigrationsCheckResult:
    """Replay the project's migrations against its generated state."""
    try:
        config_path = resolve_config_path(config_path)
        project = load_project(config_path)
    except ConfigError as e:
        return MigrationsCheckResult(errors=[str(e)])

    dirs = project_dirs(project, config_path)
    store = GeneratedStateStore(dirs["state"])
    try:
        expected = {}
        for name in store.models():
            snapshot = store.load_schema(name)
            if snapshot is not None:
                expected[name] = snapshot
    except StateCorruption as e:
        return MigrationsCheckResult(errors=[f"Generated state is corrupt: {e}"])

    return replay_migrations(dirs["migrations"], expected)
