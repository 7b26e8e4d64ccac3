"""
Status use case — aggregate project status from config + generated state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from trellis.core.config.loader import ConfigError, load_project, project_dirs, resolve_config_path
from trellis.core.models.project import Project
from trellis.core.persistence.audit import AuditEntry, AuditWriter
from trellis.core.persistence.migration_files import list_migrations
from trellis.core.persistence.state_store import GeneratedStateStore, StateCorruption
from trellis.core.services.schema_diff import diff_schema


@dataclass
class StatusResult:
    """Aggregated project status."""

    project: Project | None = None
    config_path: Path | None = None
    error: str | None = None

    state: dict = field(default_factory=dict)
    last_pass: AuditEntry | None = None
    migration_count: int = 0

    # Model name -> pending schema changes not yet turned into migrations
    pending: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dictionary."""
        result: dict = {}
        if self.error:
            result["error"] = self.error
            return result

        result["project"] = {
            "name": self.project.name if self.project else "",
            "description": self.project.description if self.project else "",
            "config_path": str(self.config_path) if self.config_path else None,
        }
        if self.project:
            result["models"] = [
                {
                    "name": m.name,
                    "table": m.table_name,
                    "fields": len(m.fields),
                    "parent": m.belongs_to.model if m.belongs_to else None,
                }
                for m in self.project.models
            ]
            result["outputs"] = [
                {"template": o.template, "path": o.path, "per_model": o.per_model}
                for o in self.project.outputs
            ]
        result["state"] = self.state
        result["migrations"] = self.migration_count
        result["pending"] = self.pending
        result["last_pass"] = (
            self.last_pass.model_dump(mode="json") if self.last_pass else None
        )
        return result


def get_status(config_path: Path | None = None) -> StatusResult:
    """Get full project status.

    Args:
        config_path: Optional explicit path to trellis.yml.

    Returns:
        StatusResult with project info, generated state and pending
        schema changes.
    """
    result = StatusResult()

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
        result.state = store.to_dict()
        current = {m.name: project.snapshot(m) for m in project.models}
        for name in sorted(set(store.models()) | set(current)):
            diff = diff_schema(store.load_schema(name), current.get(name))
            if not diff.is_empty:
                result.pending[name] = diff.entries()
    except StateCorruption as e:
        result.error = f"Generated state is corrupt: {e}"
        return result

    result.last_pass = AuditWriter(dirs["state"]).latest()
    result.migration_count = len(list_migrations(dirs["migrations"]))
    return result
