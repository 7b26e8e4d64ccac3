"""
Template rendering — produce the upstream text of an output path.

The generation pass only depends on the ``TemplateRenderer`` protocol.
``PlaceholderRenderer`` is the default implementation. It processes
plain text templates with three mechanisms:

  1. Repeat blocks:      __EACH_FIELD__ / __EACH_MODEL__ ... __END_EACH__
  2. Conditional blocks: __IF_flag__ / __IF_NOT_flag__ ... __ENDIF__
  3. Placeholders:       __MODEL_NAME__, __TABLE__, __FIELD_NAME__, ...

Block markers sit on their own line and may be prefixed with a comment
leader (``//``, ``#``, ``--``) so templates stay valid source files.
The whole marker line is removed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from trellis.core.models.project import Model, Project

logger = logging.getLogger(__name__)

_LEAD = r"^[ \t]*(?:(?://|#|--)[ \t]*)?"

_EACH_RE = re.compile(
    _LEAD + r"__EACH_([A-Z]+)__[^\n]*\n((?:(?!__EACH_)[\s\S])*?)" + _LEAD + r"__END_EACH__[^\n]*(?:\n|\Z)",
    re.MULTILINE,
)
_IF_RE = re.compile(
    _LEAD + r"__IF_(NOT_)?([A-Z0-9_]+?)__[^\n]*\n((?:(?!__IF_)[\s\S])*?)" + _LEAD + r"__ENDIF__[^\n]*(?:\n|\Z)",
    re.MULTILINE,
)
_PLACEHOLDER_RE = re.compile(r"__([A-Z][A-Z0-9_]*)__")


class TemplateError(Exception):
    """A template is missing or cannot be read."""


class TemplateRenderer(Protocol):
    """Renders one template for one model (or the whole project)."""

    def render(self, template_id: str, context: Mapping[str, Any]) -> str: ...


def _apply_conditionals(content: str, flags: Mapping[str, bool]) -> str:
    # Innermost first: a body never contains another __IF_ marker.
    changed = True
    while changed:
        changed = False

        def _replace(m: re.Match) -> str:
            nonlocal changed
            changed = True
            negate, flag, body = m.group(1), m.group(2).lower(), m.group(3)
            enabled = bool(flags.get(flag, False))
            return body if enabled != bool(negate) else ""

        content = _IF_RE.sub(_replace, content)
    return content


def _apply_placeholders(content: str, placeholders: Mapping[str, str]) -> str:
    def _replace(m: re.Match) -> str:
        value = placeholders.get(m.group(1))
        return m.group(0) if value is None else value

    return _PLACEHOLDER_RE.sub(_replace, content)


def process_template(content: str, context: Mapping[str, Any]) -> str:
    """Expand repeat blocks, then conditionals, then placeholders.

    ``context`` holds ``placeholders`` (NAME -> text), ``flags``
    (name -> bool) and ``each`` (block name -> list of item contexts,
    each with its own ``placeholders`` and ``flags``). Inside a repeat
    block the item's values take precedence over the outer ones.
    """
    placeholders: Mapping[str, str] = context.get("placeholders", {})
    flags: Mapping[str, bool] = context.get("flags", {})
    each: Mapping[str, list[Mapping[str, Any]]] = context.get("each", {})

    def _expand(m: re.Match) -> str:
        items = each.get(m.group(1).lower(), [])
        body = m.group(2)
        out = []
        for item in items:
            scoped_flags = {**flags, **item.get("flags", {})}
            scoped_values = {**placeholders, **item.get("placeholders", {})}
            text = _apply_conditionals(body, scoped_flags)
            out.append(_apply_placeholders(text, scoped_values))
        return "".join(out)

    content = _EACH_RE.sub(_expand, content)
    content = _apply_conditionals(content, flags)
    return _apply_placeholders(content, placeholders)


class PlaceholderRenderer:
    """Render templates from a directory with ``process_template``."""

    def __init__(self, templates_dir: Path):
        self.templates_dir = templates_dir

    def template_path(self, template_id: str) -> Path:
        root = self.templates_dir.resolve()
        path = (root / template_id).resolve()
        if root != path and root not in path.parents:
            raise TemplateError(f"Template outside {root}: {template_id}")
        return path

    def exists(self, template_id: str) -> bool:
        try:
            return self.template_path(template_id).is_file()
        except TemplateError:
            return False

    def render(self, template_id: str, context: Mapping[str, Any]) -> str:
        path = self.template_path(template_id)
        try:
            content = path.read_bytes().decode("utf-8")
        except FileNotFoundError as e:
            raise TemplateError(f"Template not found: {template_id}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise TemplateError(f"Cannot read template {template_id}: {e}") from e
        return process_template(content, context)


# ── Contexts ────────────────────────────────────────────────────────


def _model_values(project: Project, model: Model) -> tuple[dict[str, str], dict[str, bool]]:
    link = model.belongs_to
    snapshot = project.snapshot(model)
    placeholders = {
        "MODEL_NAME": model.name,
        "MODEL_SNAKE": model.snake_name,
        "TABLE": model.table_name,
        "PARENT_MODEL": link.model if link else "",
        "PARENT_TABLE": snapshot.parent.table if snapshot.parent else "",
        "PARENT_COLUMN": snapshot.parent.column if snapshot.parent else "",
    }
    flags = {
        "has_parent": link is not None,
        "has_indexes": bool(snapshot.effective_indexes()),
    }
    return placeholders, flags


def model_context(project: Project, model: Model | None) -> dict[str, Any]:
    """Render context for one model, or for the project when ``model`` is None."""
    placeholders = {"PROJECT_NAME": project.name}
    flags: dict[str, bool] = {}
    each: dict[str, list[dict[str, Any]]] = {"model": []}

    for m in project.models:
        values, model_flags = _model_values(project, m)
        each["model"].append({"placeholders": values, "flags": model_flags})

    if model is not None:
        values, model_flags = _model_values(project, model)
        placeholders.update(values)
        flags.update(model_flags)
        declared = {f.name: f for f in model.fields}
        each["field"] = []
        for spec in project.snapshot(model).fields:
            source = declared.get(spec.name)
            each["field"].append({
                "placeholders": {
                    "FIELD_NAME": spec.name,
                    "FIELD_TYPE": source.type if source else spec.sql_type,
                    "FIELD_SQL_TYPE": spec.sql_type,
                    "FIELD_DEFAULT": spec.default or "",
                },
                "flags": {
                    "nullable": spec.nullable and not spec.primary_key,
                    "unique": spec.unique,
                    "indexed": spec.indexed,
                    "primary_key": spec.primary_key,
                    "has_default": spec.default is not None,
                },
            })

    return {"placeholders": placeholders, "flags": flags, "each": each}
