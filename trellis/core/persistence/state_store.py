"""
Generated state store — merge bases and schema history, committed atomically.

Layout under the state directory:

    CURRENT                                name of the committed generation
    generations/<gen>/manifest.json        {files: {path: sha256}, schemas: {model: sha256}}
    generations/<gen>/files/<path>.gen     exact content last generated for <path>
    generations/<gen>/schemas/<Model>.json append-only snapshot history

A commit stages a complete new generation directory (unchanged entries
are hard-linked from the previous one) and then replaces CURRENT with a
single atomic rename. Until that rename the previous generation stays
authoritative, so a crash or I/O failure mid-commit loses nothing.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import shutil
import threading
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, Field, ValidationError

from trellis.core.models.schema import SchemaSnapshot
from trellis.core.models.state import FileRecord, SchemaHistory, SchemaHistoryEntry
from trellis.core.persistence.atomic import atomic_write_text

logger = logging.getLogger(__name__)

CURRENT_FILE = "CURRENT"
GENERATIONS_DIR = "generations"
MANIFEST_FILE = "manifest.json"
KEEP_GENERATIONS = 2

_GEN_RE = re.compile(r"^g(\d{6,})$")
_MODEL_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class StateCorruption(Exception):
    """The state store is unreadable or disagrees with its own hashes."""


class GenerationManifest(BaseModel):
    """Index of one committed generation."""

    generation: int
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    files: dict[str, str] = Field(default_factory=dict)
    schemas: dict[str, str] = Field(default_factory=dict)


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _check_path(path: str) -> PurePosixPath:
    p = PurePosixPath(path)
    if not path or p.is_absolute() or ".." in p.parts:
        raise ValueError(f"Not a relative output path: {path!r}")
    return p


def _check_model(model: str) -> str:
    if not _MODEL_RE.match(model):
        raise ValueError(f"Model name not usable as a file name: {model!r}")
    return model


class GeneratedStateStore:
    """File records and schema snapshots of the last committed pass.

    Args:
        state_dir: Directory holding the store; created on first commit.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self._lock = threading.Lock()
        self._loaded = False
        self._manifest: GenerationManifest | None = None

    @property
    def generations_dir(self) -> Path:
        return self.state_dir / GENERATIONS_DIR

    def _gen_dir(self, generation: int) -> Path:
        return self.generations_dir / f"g{generation:06d}"

    # ── Reading ─────────────────────────────────────────────────

    def _current(self) -> GenerationManifest | None:
        """The committed manifest, or None for an empty store."""
        with self._lock:
            if not self._loaded:
                self._manifest = self._read_current()
                self._loaded = True
            return self._manifest

    def _read_current(self) -> GenerationManifest | None:
        pointer = self.state_dir / CURRENT_FILE
        if not pointer.is_file():
            logger.info("No generated state at %s — starting fresh", self.state_dir)
            return None
        try:
            name = pointer.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise StateCorruption(f"Cannot read {pointer}: {e}") from e
        if not _GEN_RE.match(name):
            raise StateCorruption(f"{pointer} does not name a generation: {name!r}")

        manifest_path = self.generations_dir / name / MANIFEST_FILE
        try:
            manifest = GenerationManifest.model_validate_json(manifest_path.read_bytes())
        except FileNotFoundError as e:
            raise StateCorruption(f"Manifest of generation {name} is missing") from e
        except (OSError, ValidationError, ValueError) as e:
            raise StateCorruption(f"Manifest of generation {name} is unreadable: {e}") from e
        if f"g{manifest.generation:06d}" != name:
            raise StateCorruption(f"Manifest in {name} claims generation {manifest.generation}")
        logger.debug(
            "Loaded generation %s (%d files, %d schemas)",
            name, len(manifest.files), len(manifest.schemas),
        )
        return manifest

    @property
    def generation(self) -> int:
        manifest = self._current()
        return manifest.generation if manifest else 0

    def paths(self) -> list[str]:
        manifest = self._current()
        return sorted(manifest.files) if manifest else []

    def models(self) -> list[str]:
        manifest = self._current()
        return sorted(manifest.schemas) if manifest else []

    def load(self, path: str) -> FileRecord | None:
        """Base record for an output path, or None if never generated.

        Raises:
            StateCorruption: If the stored content is missing or its hash
                does not match the manifest.
        """
        manifest = self._current()
        if manifest is None or path not in manifest.files:
            return None
        base_file = self._gen_dir(manifest.generation) / "files" / f"{_check_path(path)}.gen"
        try:
            content = base_file.read_bytes().decode("utf-8")
        except FileNotFoundError as e:
            raise StateCorruption(f"Base content for {path} is missing") from e
        except (OSError, UnicodeDecodeError) as e:
            raise StateCorruption(f"Base content for {path} is unreadable: {e}") from e
        record = FileRecord(path=path, base_content=content, base_hash=manifest.files[path])
        if not record.verify():
            raise StateCorruption(f"Base content for {path} does not match its hash")
        return record

    def schema_history(self, model: str) -> list[SchemaHistoryEntry]:
        history = self._load_history(self._current(), model)
        return list(history.entries) if history else []

    def load_schema(self, model: str) -> SchemaSnapshot | None:
        """Latest committed snapshot of a model, or None."""
        history = self._load_history(self._current(), model)
        return history.latest if history else None

    def _load_history(
        self, manifest: GenerationManifest | None, model: str
    ) -> SchemaHistory | None:
        if manifest is None or model not in manifest.schemas:
            return None
        path = self._gen_dir(manifest.generation) / "schemas" / f"{_check_model(model)}.json"
        try:
            raw = path.read_bytes()
        except FileNotFoundError as e:
            raise StateCorruption(f"Schema history of {model} is missing") from e
        except OSError as e:
            raise StateCorruption(f"Schema history of {model} is unreadable: {e}") from e
        if _sha256(raw) != manifest.schemas[model]:
            raise StateCorruption(f"Schema history of {model} does not match its hash")
        try:
            return SchemaHistory.model_validate_json(raw)
        except (ValidationError, ValueError) as e:
            raise StateCorruption(f"Schema history of {model} is unparsable: {e}") from e

    # ── Committing ──────────────────────────────────────────────

    def commit(
        self,
        updates: Iterable[FileRecord] = (),
        schema_updates: Iterable[SchemaSnapshot] = (),
        *,
        removed_paths: Iterable[str] = (),
        removed_models: Iterable[str] = (),
        migration_ids: Mapping[str, str] | None = None,
    ) -> bool:
        """Replace the committed state in one atomic step.

        Args:
            updates: New base records (one per path).
            schema_updates: New snapshots; appended to each model's history
                unless identical to its latest entry.
            removed_paths: Paths no longer generated.
            removed_models: Models removed from configuration.
            migration_ids: Model name -> id of the migration that produced
                its new snapshot.

        Returns:
            True if a new generation was committed, False if nothing changed.

        Raises:
            StateCorruption: If the current generation cannot be read.
            OSError: If staging fails. The previous generation stays current.
        """
        current = self._current()
        migration_ids = migration_ids or {}
        files = dict(current.files) if current else {}
        schemas = dict(current.schemas) if current else {}
        new_content: dict[str, bytes] = {}
        new_histories: dict[str, bytes] = {}

        for path in removed_paths:
            files.pop(path, None)
        for record in updates:
            _check_path(record.path)
            if files.get(record.path) != record.base_hash:
                files[record.path] = record.base_hash
                new_content[record.path] = record.base_content.encode("utf-8")

        for model in removed_models:
            schemas.pop(model, None)
        for snapshot in schema_updates:
            model = _check_model(snapshot.model_name)
            history = self._load_history(current, model) if model in schemas else None
            history = history or SchemaHistory(model_name=model)
            latest = history.latest
            if latest is not None and latest.model_dump() == snapshot.model_dump():
                continue
            history.entries.append(
                SchemaHistoryEntry(snapshot=snapshot, migration_id=migration_ids.get(model))
            )
            raw = (history.model_dump_json(indent=2) + "\n").encode("utf-8")
            schemas[model] = _sha256(raw)
            new_histories[model] = raw

        if current is not None and files == current.files and schemas == current.schemas:
            logger.debug("State unchanged — nothing to commit")
            return False
        if current is None and not files and not schemas:
            return False

        generation = (current.generation if current else 0) + 1
        manifest = GenerationManifest(generation=generation, files=files, schemas=schemas)
        self._prune(keep={current.generation} if current else set())
        staging = self._gen_dir(generation)
        try:
            self._stage(staging, current, manifest, new_content, new_histories)
            atomic_write_text(
                self.state_dir / CURRENT_FILE, staging.name + "\n", prefix=".current_"
            )
        except Exception:
            shutil.rmtree(staging, ignore_errors=True)
            logger.error("Commit of generation %d failed; previous state kept", generation)
            raise

        with self._lock:
            self._manifest = manifest
            self._loaded = True
        logger.info(
            "Committed generation %d (%d files, %d schemas)",
            generation, len(files), len(schemas),
        )
        self._prune(keep={generation - i for i in range(KEEP_GENERATIONS)})
        return True

    def _stage(
        self,
        staging: Path,
        current: GenerationManifest | None,
        manifest: GenerationManifest,
        new_content: Mapping[str, bytes],
        new_histories: Mapping[str, bytes],
    ) -> None:
        previous = self._gen_dir(current.generation) if current else None
        if staging.exists():
            shutil.rmtree(staging)
        (staging / "files").mkdir(parents=True)
        (staging / "schemas").mkdir()

        for path in manifest.files:
            target = staging / "files" / f"{_check_path(path)}.gen"
            target.parent.mkdir(parents=True, exist_ok=True)
            if path in new_content:
                target.write_bytes(new_content[path])
            else:
                self._carry(previous / "files" / f"{path}.gen", target)

        for model in manifest.schemas:
            target = staging / "schemas" / f"{model}.json"
            if model in new_histories:
                target.write_bytes(new_histories[model])
            else:
                self._carry(previous / "schemas" / f"{model}.json", target)

        (staging / MANIFEST_FILE).write_text(
            manifest.model_dump_json(indent=2) + "\n", encoding="utf-8"
        )

    @staticmethod
    def _carry(source: Path, target: Path) -> None:
        """Reuse an unchanged file from the previous generation."""
        if not source.is_file():
            raise StateCorruption(f"{source} is missing from the current generation")
        try:
            os.link(source, target)
        except OSError:
            shutil.copy2(source, target)

    def _prune(self, keep: set[int]) -> None:
        """Remove generations other than ``keep`` (older ones and stale staging)."""
        if not self.generations_dir.is_dir():
            return
        for entry in self.generations_dir.iterdir():
            m = _GEN_RE.match(entry.name)
            if not m or int(m.group(1)) in keep:
                continue
            logger.debug("Pruning generation directory %s", entry)
            shutil.rmtree(entry, ignore_errors=True)

    def to_dict(self) -> dict:
        manifest = self._current()
        return {
            "state_dir": str(self.state_dir),
            "generation": manifest.generation if manifest else 0,
            "committed_at": manifest.created_at if manifest else None,
            "files": len(manifest.files) if manifest else 0,
            "models": sorted(manifest.schemas) if manifest else [],
        }
