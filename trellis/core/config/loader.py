"""
Configuration loader — reads trellis.yml into a Project.

Reads YAML, validates it against the Pydantic models and returns the
typed project. Relative directories in the file are resolved against
the directory that holds it.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from trellis.core.models.project import Project

logger = logging.getLogger(__name__)

# Default config filename
PROJECT_CONFIG_FILE = "trellis.yml"


class ConfigError(Exception):
    """Raised when project configuration is invalid or missing."""


def find_project_file(start_dir: Path | None = None) -> Path | None:
    """Search for trellis.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to trellis.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / PROJECT_CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def resolve_config_path(path: Path | None = None) -> Path:
    """Explicit path, or the nearest trellis.yml above the cwd.

    Raises:
        ConfigError: If no file can be found.
    """
    if path is None:
        path = find_project_file()
    if path is None:
        raise ConfigError(
            f"No {PROJECT_CONFIG_FILE} found in this directory or its parents. "
            "Specify one with --config."
        )
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    return path


def load_project(path: Path | None = None) -> Project:
    """Load and validate project configuration.

    Args:
        path: Explicit path to trellis.yml. If None, searches upward.

    Returns:
        Validated Project model.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    path = resolve_config_path(path)
    logger.debug("Loading project config from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # The YAML may wrap everything under a "project" key or be flat
    project_data = data.get("project", data) if isinstance(data.get("project"), dict) else data

    try:
        project = Project.model_validate(project_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid project configuration in {path}: {e}") from e

    logger.info(
        "Loaded project '%s' with %d models and %d outputs",
        project.name, len(project.models), len(project.outputs),
    )
    return project


def project_root(config_path: Path) -> Path:
    """Get the project root directory from a config file path."""
    return config_path.parent.resolve()


def project_dirs(project: Project, config_path: Path) -> dict[str, Path]:
    """Absolute output, state, migrations and templates directories."""
    root = project_root(config_path)
    return {
        "output": (root / project.output_dir).resolve(),
        "state": (root / project.state_dir).resolve(),
        "migrations": (root / project.migrations_dir).resolve(),
        "templates": (root / project.templates_dir).resolve(),
    }
