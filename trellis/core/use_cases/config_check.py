"""
Config check use case — validate trellis.yml and report issues.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from trellis.core.config.loader import ConfigError, load_project, project_dirs, resolve_config_path
from trellis.core.engine.executor import expand_jobs
from trellis.core.models.project import SQL_TYPES, Project
from trellis.core.services.dag import validate_dag
from trellis.core.services.renderer import PlaceholderRenderer


@dataclass
class ConfigCheckResult:
    """Result of configuration validation."""

    valid: bool = False
    project: Project | None = None
    config_path: Path | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "config_path": str(self.config_path) if self.config_path else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "project_name": self.project.name if self.project else None,
            "model_count": len(self.project.models) if self.project else 0,
            "output_count": len(self.project.outputs) if self.project else 0,
        }


def _dupes(names: list[str]) -> list[str]:
    return sorted({n for n in names if names.count(n) > 1})


def check_project(project: Project, templates_dir: Path | None = None) -> tuple[list[str], list[str]]:
    """Semantic checks of a loaded project.

    Returns:
        (errors, warnings)
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not project.models:
        warnings.append("No models defined. Nothing will be generated per model.")
    if not project.outputs:
        warnings.append("No outputs defined. No files will be generated.")

    dupes = _dupes([m.name for m in project.models])
    if dupes:
        errors.append(f"Duplicate model names: {', '.join(dupes)}")
    tables = _dupes([m.table_name for m in project.models])
    if tables:
        errors.append(f"Duplicate table names: {', '.join(tables)}")

    names = {m.name for m in project.models}
    edges: list[tuple[str, str]] = []
    for model in project.models:
        fields = [f.name for f in model.fields]
        dupes = _dupes(fields)
        if dupes:
            errors.append(f"Model '{model.name}' has duplicate fields: {', '.join(dupes)}")

        pk = [f.name for f in model.fields if f.primary_key]
        if not pk:
            warnings.append(f"Model '{model.name}' has no primary key")

        for f in model.fields:
            if f.type.lower() not in SQL_TYPES:
                warnings.append(
                    f"Field '{model.name}.{f.name}' uses type '{f.type}' verbatim"
                )
            if f.renamed_from and f.renamed_from in fields:
                errors.append(
                    f"Field '{model.name}.{f.name}' is renamed from '{f.renamed_from}', "
                    "which is still declared"
                )

        link = model.belongs_to
        if link is not None:
            parent = project.get_model(link.model)
            if parent is None:
                errors.append(f"Model '{model.name}' belongs to unknown model '{link.model}'")
            else:
                edges.append((link.model, model.name))
                if link.references not in {f.name for f in parent.fields}:
                    errors.append(
                        f"Model '{model.name}' references '{link.model}.{link.references}', "
                        "which is not a field"
                    )

        columns = {f.name for f in project.snapshot(model).fields}
        for index in model.indexes:
            missing = [c for c in index.columns if c not in columns]
            if missing:
                errors.append(
                    f"Index '{index.name}' on '{model.name}' uses unknown columns: "
                    f"{', '.join(missing)}"
                )

    errors += validate_dag(sorted(names), [e for e in edges if e[0] in names])

    try:
        expand_jobs(project)
    except ConfigError as e:
        errors.append(str(e))

    if templates_dir is not None:
        renderer = PlaceholderRenderer(templates_dir)
        for output in project.outputs:
            if not renderer.exists(output.template):
                errors.append(f"Template not found: {output.template} (in {templates_dir})")

    return errors, warnings


def check_config(config_path: Path | None = None) -> ConfigCheckResult:
    """Validate project configuration and report issues.

    Args:
        config_path: Optional explicit path to trellis.yml.

    Returns:
        ConfigCheckResult with validation status and any issues.
    """
    result = ConfigCheckResult()

    try:
        config_path = resolve_config_path(config_path)
        result.config_path = config_path
        project = load_project(config_path)
        result.project = project
    except ConfigError as e:
        result.errors.append(str(e))
        return result

    dirs = project_dirs(project, config_path)
    result.errors, result.warnings = check_project(project, dirs["templates"])
    result.valid = len(result.errors) == 0
    return result
