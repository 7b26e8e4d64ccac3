"""
Engine executor — the generation pass.

Renders every output, merges it with the developer's copy against the
base from the previous pass, synthesizes migrations for schema changes,
and commits the new generated state once at the end.

Flow:
    expand jobs → preload state → render + merge (worker pool)
        → orphans → migrations → commit
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from trellis.core.config.loader import ConfigError
from trellis.core.models.merge import ConflictRegion
from trellis.core.models.migration import MigrationPlan
from trellis.core.models.project import Project
from trellis.core.models.schema import SchemaSnapshot
from trellis.core.models.state import FileRecord
from trellis.core.persistence.atomic import atomic_write_text
from trellis.core.persistence.migration_files import (
    latest_migration_id,
    remove_files,
    write_migration,
)
from trellis.core.persistence.state_store import GeneratedStateStore, StateCorruption
from trellis.core.services.merge import has_conflict_markers, merge_text
from trellis.core.services.migration_synth import SynthesisError, plan_migrations
from trellis.core.services.renderer import TemplateError, TemplateRenderer, model_context
from trellis.core.services.schema_diff import diff_schema
from trellis.core.services.text_diff import unified_diff

logger = logging.getLogger(__name__)

# File outcome statuses
UNCHANGED = "unchanged"
CREATED = "created"
WRITTEN = "written"
CONFLICT = "conflict"
UNRESOLVED = "unresolved"   # clean merge, but earlier markers are still in the file
EMPTY = "empty"             # template rendered only whitespace; path no longer generated
ERROR = "error"
CANCELLED = "cancelled"


@dataclass(frozen=True)
class RenderJob:
    """One output path rendered from one template."""

    path: str
    template: str
    model: str | None = None


@dataclass
class FileOutcome:
    """What happened to one output path."""

    path: str
    status: str
    model: str | None = None
    changed: bool = False
    regions: list[ConflictRegion] = field(default_factory=list)
    diff: dict | None = None
    error: str | None = None
    record: FileRecord | None = field(default=None, repr=False)

    def to_dict(self) -> dict:
        d: dict = {"path": self.path, "status": self.status, "changed": self.changed}
        if self.model:
            d["model"] = self.model
        if self.regions:
            d["conflicts"] = [r.to_dict() for r in self.regions]
        if self.diff is not None:
            d["diff"] = self.diff
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class PassReport:
    """Result of one generation pass."""

    operation_id: str = ""
    dry_run: bool = False
    outcomes: list[FileOutcome] = field(default_factory=list)
    migrations: list[MigrationPlan] = field(default_factory=list)
    migration_files: list[str] = field(default_factory=list)
    synthesis_errors: list[SynthesisError] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    orphans_unmodified: list[str] = field(default_factory=list)
    generation: int = 0
    committed: bool = False
    cancelled: bool = False
    aborted: str | None = None
    duration_ms: int = 0

    @property
    def conflicts(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if o.status in (CONFLICT, UNRESOLVED)]

    @property
    def io_failures(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if o.status == ERROR]

    @property
    def written(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if o.changed]

    @property
    def ok(self) -> bool:
        return not (
            self.conflicts or self.io_failures or self.synthesis_errors
            or self.aborted or self.cancelled
        )

    @property
    def status(self) -> str:
        if self.aborted:
            return "aborted"
        if self.cancelled:
            return "cancelled"
        if self.io_failures or self.synthesis_errors:
            return "failed"
        if self.conflicts:
            return "conflicts"
        return "ok"

    def to_dict(self) -> dict:
        return {
            "operation_id": self.operation_id,
            "status": self.status,
            "ok": self.ok,
            "dry_run": self.dry_run,
            "generation": self.generation,
            "committed": self.committed,
            "aborted": self.aborted,
            "files": [o.to_dict() for o in self.outcomes],
            "conflicts": [o.path for o in self.conflicts],
            "io_failures": [{"path": o.path, "error": o.error} for o in self.io_failures],
            "orphaned": self.orphaned,
            "migrations": [p.to_dict() for p in self.migrations],
            "migration_files": self.migration_files,
            "synthesis_errors": [e.to_dict() for e in self.synthesis_errors],
            "duration_ms": self.duration_ms,
        }


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"gen-{now}-{short}"


# ── Job expansion ───────────────────────────────────────────────


def _output_path(pattern: str, model_snake: str = "", table: str = "") -> str:
    path = pattern.replace("{model}", model_snake).replace("{table}", table)
    p = PurePosixPath(path)
    if not path or p.is_absolute() or ".." in p.parts:
        raise ConfigError(f"Output path must be relative to the output directory: {pattern!r}")
    return str(p)


def expand_jobs(project: Project) -> list[RenderJob]:
    """One job per (output, model) pair, or per output when not per-model.

    Raises:
        ConfigError: If an output path is unusable or two jobs share a path.
    """
    jobs: list[RenderJob] = []
    seen: dict[str, RenderJob] = {}
    for output in project.outputs:
        if output.per_model:
            candidates = [
                RenderJob(
                    path=_output_path(output.path, m.snake_name, m.table_name),
                    template=output.template,
                    model=m.name,
                )
                for m in project.models
            ]
        else:
            if "{model}" in output.path or "{table}" in output.path:
                raise ConfigError(
                    f"Output {output.path!r} uses a model placeholder but is not per_model"
                )
            candidates = [RenderJob(path=_output_path(output.path), template=output.template)]

        for job in candidates:
            if job.path in seen:
                raise ConfigError(
                    f"Two outputs generate {job.path} "
                    f"({seen[job.path].template} and {job.template})"
                )
            seen[job.path] = job
            jobs.append(job)
    return jobs


# ── Per-file work ───────────────────────────────────────────────


def _read_local(target: Path) -> str | None:
    try:
        return target.read_bytes().decode("utf-8")
    except FileNotFoundError:
        return None


def process_file(
    job: RenderJob,
    project: Project,
    renderer: TemplateRenderer,
    record: FileRecord | None,
    output_root: Path,
    *,
    overwrite: bool = False,
    dry_run: bool = False,
) -> FileOutcome:
    """Render, merge and write one output path.

    The returned outcome carries the record to commit: the freshly
    rendered content, which becomes the next merge base even when the
    merge conflicted. Errors leave ``record`` unset so the old base is
    kept.
    """
    outcome = FileOutcome(path=job.path, status=UNCHANGED, model=job.model)
    target = output_root / job.path
    model = project.get_model(job.model) if job.model else None

    try:
        upstream = renderer.render(job.template, model_context(project, model))
        local = _read_local(target)
    except (TemplateError, OSError, UnicodeDecodeError) as e:
        outcome.status = ERROR
        outcome.error = str(e)
        logger.error("✗ %s: %s", job.path, e)
        return outcome

    if not upstream.strip():
        outcome.status = EMPTY
        logger.debug("%s rendered empty; no longer generated", job.path)
        return outcome

    if overwrite or local is None:
        content, regions = upstream, []
    else:
        # A file that exists without a base is merged as if nothing had
        # been generated before: the upstream text is its own base.
        base = record.base_content if record is not None else upstream
        result = merge_text(base, upstream, local)
        content, regions = result.text, result.conflicts

    outcome.regions = regions
    outcome.changed = content != local
    if regions:
        outcome.status = CONFLICT
    elif has_conflict_markers(content):
        # Markers left from an earlier pass, possibly around a clean update.
        outcome.status = UNRESOLVED
    elif local is None:
        outcome.status = CREATED
    elif outcome.changed:
        outcome.status = WRITTEN

    if dry_run:
        if outcome.changed:
            outcome.diff = unified_diff(local or "", content, job.path)
        outcome.record = FileRecord.for_content(job.path, upstream)
        return outcome

    if outcome.changed:
        try:
            atomic_write_text(target, content)
        except OSError as e:
            outcome.status = ERROR
            outcome.changed = False
            outcome.error = str(e)
            logger.error("✗ %s: %s", job.path, e)
            return outcome

    outcome.record = FileRecord.for_content(job.path, upstream)
    marker = "!" if regions else "✓" if outcome.changed else "·"
    logger.info("%s %s → %s", marker, job.path, outcome.status)
    return outcome


# ── Pass ────────────────────────────────────────────────────────


def _orphans(
    store_paths: list[str],
    produced: set[str],
    records: dict[str, FileRecord | None],
    output_root: Path,
) -> tuple[list[str], list[str]]:
    """Paths no longer generated, and those still byte-identical to their base."""
    orphaned = sorted(p for p in store_paths if p not in produced)
    unmodified = []
    for path in orphaned:
        record = records.get(path)
        try:
            local = _read_local(output_root / path)
        except (OSError, UnicodeDecodeError):
            continue
        if record is not None and local == record.base_content:
            unmodified.append(path)
    return orphaned, unmodified


def run_generation_pass(
    project: Project,
    store: GeneratedStateStore,
    renderer: TemplateRenderer,
    *,
    output_root: Path,
    migrations_dir: Path,
    overwrite: bool = False,
    dry_run: bool = False,
    workers: int = 4,
    cancel: threading.Event | None = None,
    now: datetime | None = None,
    operation_id: str | None = None,
) -> PassReport:
    """Run one generation pass.

    Args:
        project: Validated configuration.
        store: Generated state of the previous pass.
        renderer: Produces upstream content for each job.
        output_root: Root of the generated tree.
        migrations_dir: Where migration files are written.
        overwrite: Replace local files with upstream instead of merging.
        dry_run: Compute everything, write and commit nothing.
        workers: Size of the render/merge worker pool.
        cancel: When set, no further files are started and nothing is
            committed; files already in flight finish.
        now: Clock for migration ids.

    Returns:
        PassReport. Per-file failures and conflicts are collected in it.

    Raises:
        ConfigError: If outputs are misconfigured (before anything runs).
    """
    start = time.monotonic()
    cancel = cancel or threading.Event()
    report = PassReport(operation_id=operation_id or generate_operation_id(), dry_run=dry_run)
    jobs = expand_jobs(project)
    logger.info("Generation pass %s: %d files", report.operation_id, len(jobs))

    # Everything read from the store is read (and hash-checked) before any
    # file is touched, so corruption aborts with the tree untouched.
    current = {m.name: project.snapshot(m) for m in project.models}
    try:
        store_paths = store.paths()
        records = {p: store.load(p) for p in sorted({j.path for j in jobs} | set(store_paths))}
        stored = {name: store.load_schema(name) for name in store.models()}
    except StateCorruption as e:
        logger.error("Generated state is corrupt: %s", e)
        report.aborted = str(e)
        report.duration_ms = int((time.monotonic() - start) * 1000)
        return report
    report.generation = store.generation

    def _task(job: RenderJob) -> FileOutcome:
        if cancel.is_set():
            return FileOutcome(path=job.path, status=CANCELLED, model=job.model)
        return process_file(
            job, project, renderer, records.get(job.path), output_root,
            overwrite=overwrite, dry_run=dry_run,
        )

    outcomes: dict[str, FileOutcome] = {}
    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = [pool.submit(_task, job) for job in jobs]
        for future in as_completed(futures):
            outcome = future.result()
            outcomes[outcome.path] = outcome
    report.outcomes = [outcomes[j.path] for j in jobs]

    if cancel.is_set():
        report.cancelled = True
        report.duration_ms = int((time.monotonic() - start) * 1000)
        logger.warning("Generation pass cancelled; nothing committed")
        return report

    produced = {o.path for o in report.outcomes if o.status != EMPTY}
    report.orphaned, report.orphans_unmodified = _orphans(
        store_paths, produced, records, output_root
    )
    for path in report.orphaned:
        logger.warning("Orphaned: %s is no longer generated (left on disk)", path)

    # ── Migrations ──
    names = sorted(set(stored) | set(current))
    diffs = {name: diff_schema(stored.get(name), current.get(name)) for name in names}
    batch = plan_migrations(
        diffs.values(),
        project.migrations,
        now=now,
        last_id=latest_migration_id(migrations_dir),
        current=current,
    )
    report.synthesis_errors = list(batch.errors)
    report.migrations = list(batch.plans)
    failed = set(batch.failed_models)

    written_files: list[Path] = []
    migration_ids: dict[str, str] = {}
    if not dry_run:
        for plan in batch.plans:
            try:
                paths = write_migration(plan, migrations_dir)
            except OSError as e:
                failed.add(plan.model_name)
                report.outcomes.append(FileOutcome(
                    path=f"{migrations_dir.name}/{plan.slug}.up.sql",
                    status=ERROR, model=plan.model_name, error=str(e),
                ))
                logger.error("✗ migration %s: %s", plan.slug, e)
                continue
            written_files += paths
            migration_ids[plan.model_name] = plan.id
    report.migration_files = [str(p) for p in written_files]

    if dry_run:
        report.duration_ms = int((time.monotonic() - start) * 1000)
        return report

    schema_updates: list[SchemaSnapshot] = []
    removed_models: list[str] = []
    for name in names:
        if name in failed:
            continue
        if not diffs[name].is_empty and name not in migration_ids:
            continue
        if name in current:
            schema_updates.append(current[name])
        else:
            removed_models.append(name)

    # ── Commit ──
    if cancel.is_set():
        remove_files(written_files)
        report.cancelled = True
        report.migration_files = []
        report.duration_ms = int((time.monotonic() - start) * 1000)
        logger.warning("Generation pass cancelled; nothing committed")
        return report

    updates = [o.record for o in report.outcomes if o.record is not None]
    try:
        report.committed = store.commit(
            updates,
            schema_updates,
            removed_paths=report.orphaned,
            removed_models=removed_models,
            migration_ids=migration_ids,
        )
    except (OSError, StateCorruption) as e:
        logger.error("Commit failed: %s", e)
        remove_files(written_files)
        report.migration_files = []
        report.aborted = f"commit failed: {e}"
    report.generation = store.generation
    report.duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "Generation pass %s: %s (%d written, %d conflicts, %d migrations)",
        report.operation_id, report.status, len(report.written),
        len(report.conflicts), len(report.migration_files) // 2,
    )
    return report
