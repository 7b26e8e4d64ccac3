"""
Migration files — ``<id>_<slug>.up.sql`` / ``<id>_<slug>.down.sql``.

A written migration is never edited by the generator again; schema
corrections become new migrations. Review notes are written as SQL
comments at the top of the up file.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

from trellis.core.models.migration import MigrationPlan
from trellis.core.persistence.atomic import atomic_write_text

logger = logging.getLogger(__name__)

_FILE_RE = re.compile(r"^(?P<id>\d+)_(?P<slug>.+)\.(?P<direction>up|down)\.sql$")


@dataclass
class MigrationFile:
    """An up/down pair found in the migrations directory."""

    id: str
    slug: str
    up: Path | None = None
    down: Path | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "slug": self.slug,
            "up": str(self.up) if self.up else None,
            "down": str(self.down) if self.down else None,
        }


def render_migration(plan: MigrationPlan, direction: str) -> str:
    """SQL text of one direction of a plan."""
    statements = plan.up_statements if direction == "up" else plan.down_statements
    header = [
        f"-- Migration {plan.slug} ({direction})",
        f"-- Model: {plan.model_name}",
    ]
    if direction == "up" and plan.needs_manual_review:
        header.append("-- NEEDS MANUAL REVIEW")
    if direction == "up":
        header += [f"-- NOTE: {note}" for note in plan.review_notes]
    body = ";\n\n".join(statements)
    return "\n".join(header) + "\n\n" + (body + ";\n" if body else "")


def migration_paths(plan: MigrationPlan, directory: Path) -> tuple[Path, Path]:
    return directory / f"{plan.slug}.up.sql", directory / f"{plan.slug}.down.sql"


def write_migration(plan: MigrationPlan, directory: Path) -> list[Path]:
    """Write both files of a plan.

    Raises:
        FileExistsError: If a file with the same name already exists.
        OSError: If writing fails; files written so far are removed.
    """
    up_path, down_path = migration_paths(plan, directory)
    for path in (up_path, down_path):
        if path.exists():
            raise FileExistsError(f"Migration file already exists: {path}")

    written: list[Path] = []
    try:
        for path, direction in ((up_path, "up"), (down_path, "down")):
            atomic_write_text(path, render_migration(plan, direction), prefix=".migration_")
            written.append(path)
    except OSError:
        remove_files(written)
        raise
    logger.info("Wrote migration %s", plan.slug)
    return written


def remove_files(paths: list[Path]) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Cannot remove %s: %s", path, e)


def list_migrations(directory: Path) -> list[MigrationFile]:
    """Migration pairs in id order. Unrelated files are ignored."""
    if not directory.is_dir():
        return []
    found: dict[tuple[str, str], MigrationFile] = {}
    for path in directory.iterdir():
        m = _FILE_RE.match(path.name)
        if not m or not path.is_file():
            continue
        key = (m.group("id"), m.group("slug"))
        entry = found.setdefault(key, MigrationFile(id=key[0], slug=key[1]))
        setattr(entry, m.group("direction"), path)
    return sorted(found.values(), key=lambda f: (int(f.id), f.slug))


def latest_migration_id(directory: Path) -> str | None:
    migrations = list_migrations(directory)
    return migrations[-1].id if migrations else None
