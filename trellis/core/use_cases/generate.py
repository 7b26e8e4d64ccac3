"""
Generate use case — run a generation pass for the project.

Loads config, opens the generated state store, runs the pass, prunes
orphaned files on request, and records the pass in the audit ledger.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from trellis.core.config.loader import ConfigError, load_project, project_dirs, resolve_config_path
from trellis.core.engine.executor import PassReport, run_generation_pass
from trellis.core.models.project import Project
from trellis.core.persistence.audit import AuditEntry, AuditWriter
from trellis.core.persistence.state_store import GeneratedStateStore
from trellis.core.services.renderer import PlaceholderRenderer, TemplateRenderer

logger = logging.getLogger(__name__)


@dataclass
class GenerateResult:
    """Result of the generate command."""

    report: PassReport | None = None
    project: Project | None = None
    config_path: Path | None = None
    pruned: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.report is not None and self.report.ok

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            return result
        result["project_name"] = self.project.name if self.project else ""
        result["config_path"] = str(self.config_path)
        if self.report:
            result["report"] = self.report.to_dict()
        result["pruned"] = self.pruned
        return result


def _audit(report: PassReport, writer: AuditWriter) -> None:
    errors = [f"{o.path}: {o.error}" for o in report.io_failures]
    errors += [str(e) for e in report.synthesis_errors]
    if report.aborted:
        errors.append(report.aborted)
    writer.write(AuditEntry(
        operation_id=report.operation_id,
        status=report.status,
        generation=report.generation,
        files_total=len(report.outcomes),
        files_written=len(report.written),
        conflicts=[o.path for o in report.conflicts],
        orphaned=report.orphaned,
        migrations=[p.slug for p in report.migrations] if report.migration_files else [],
        duration_ms=report.duration_ms,
        errors=errors,
        context={"committed": report.committed},
    ))


def prune_orphans(paths: list[str], output_root: Path) -> list[str]:
    """Delete orphaned files; returns the paths actually removed."""
    removed = []
    for path in paths:
        target = output_root / path
        try:
            target.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.error("Cannot remove orphan %s: %s", path, e)
            continue
        logger.info("Pruned orphan %s", path)
        removed.append(path)
    return removed


def generate(
    config_path: Path | None = None,
    *,
    overwrite: bool = False,
    dry_run: bool = False,
    workers: int | None = None,
    prune: bool = False,
    confirm_prune: Callable[[list[str]], bool] | None = None,
    renderer: TemplateRenderer | None = None,
    cancel: threading.Event | None = None,
    now: datetime | None = None,
) -> GenerateResult:
    """Run one generation pass.

    Args:
        config_path: Optional explicit path to trellis.yml.
        overwrite: Replace local edits with freshly generated content.
        dry_run: Report what would change without writing anything.
        workers: Worker pool size (default: the project's ``workers``).
        prune: Delete orphaned files still identical to their last base.
        confirm_prune: Asked with the candidate paths before deleting.
        renderer: Template renderer (default: PlaceholderRenderer over
            the project's templates directory).
        cancel: Event that stops the pass before it commits.
        now: Clock for migration ids.

    Returns:
        GenerateResult with the pass report.
    """
    result = GenerateResult()

    try:
        config_path = resolve_config_path(config_path)
        project = load_project(config_path)
    except ConfigError as e:
        result.error = str(e)
        return result
    result.project = project
    result.config_path = config_path
    dirs = project_dirs(project, config_path)

    store = GeneratedStateStore(dirs["state"])
    try:
        report = run_generation_pass(
            project,
            store,
            renderer or PlaceholderRenderer(dirs["templates"]),
            output_root=dirs["output"],
            migrations_dir=dirs["migrations"],
            overwrite=overwrite,
            dry_run=dry_run,
            workers=workers or project.workers,
            cancel=cancel,
            now=now,
        )
    except ConfigError as e:
        result.error = str(e)
        return result
    result.report = report

    if dry_run:
        return result

    _audit(report, AuditWriter(dirs["state"]))

    if prune and report.committed and report.orphans_unmodified:
        candidates = list(report.orphans_unmodified)
        if confirm_prune is None or confirm_prune(candidates):
            result.pruned = prune_orphans(candidates, dirs["output"])

    return result
