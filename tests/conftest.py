"""
Shared test fixtures and configuration.
"""

import textwrap
from datetime import UTC, datetime
from pathlib import Path

import pytest

from trellis.core.config.loader import load_project
from trellis.core.models.schema import FieldSpec, SchemaSnapshot

FIXED_NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

MODEL_TEMPLATE = textwrap.dedent("""\
    # __MODEL_NAME__ (table __TABLE__)
    class __MODEL_NAME__:
    # __EACH_FIELD__
        __FIELD_NAME__: "__FIELD_SQL_TYPE__"
    # __END_EACH__
    # __IF_HAS_PARENT__
        parent = "__PARENT_MODEL__"
    # __ENDIF__
""")

INDEX_TEMPLATE = textwrap.dedent("""\
    Project __PROJECT_NAME__
    # __EACH_MODEL__
    - __MODEL_NAME__ -> __TABLE__
    # __END_EACH__
""")

PROJECT_YAML = textwrap.dedent("""\
    name: demo
    output_dir: out
    state_dir: .trellis
    migrations_dir: migrations
    templates_dir: templates
    workers: 2
    models:
      - name: Organization
        fields:
          - {name: id, type: uuid, primary_key: true}
          - {name: name, type: text}
      - name: Report
        belongs_to: {model: Organization}
        fields:
          - {name: id, type: uuid, primary_key: true}
          - {name: title, type: text}
    outputs:
      - {template: model.py.tmpl, path: "models/{model}.py"}
      - {template: index.txt.tmpl, path: index.txt, per_model: false}
""")

# What the first pass over PROJECT_YAML renders.
ORGANIZATION_PY = (
    "# Organization (table organizations)\n"
    "class Organization:\n"
    '    id: "uuid"\n'
    '    name: "text"\n'
)
REPORT_PY = (
    "# Report (table reports)\n"
    "class Report:\n"
    '    id: "uuid"\n'
    '    title: "text"\n'
    '    organization_id: "uuid"\n'
    '    parent = "Organization"\n'
)
INDEX_TXT = "Project demo\n- Organization -> organizations\n- Report -> reports\n"


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A project directory with trellis.yml and two templates."""
    (tmp_path / "templates").mkdir()
    (tmp_path / "templates" / "model.py.tmpl").write_text(MODEL_TEMPLATE)
    (tmp_path / "templates" / "index.txt.tmpl").write_text(INDEX_TEMPLATE)
    (tmp_path / "trellis.yml").write_text(PROJECT_YAML)
    return tmp_path


@pytest.fixture
def config_path(project_dir: Path) -> Path:
    return project_dir / "trellis.yml"


@pytest.fixture
def project(config_path: Path):
    return load_project(config_path)


def snapshot(table: str = "reports", model: str = "Report", *fields: FieldSpec, **kwargs) -> SchemaSnapshot:
    """Build a snapshot with an ``id uuid`` primary key plus ``fields``."""
    base = (FieldSpec(name="id", sql_type="uuid", primary_key=True),)
    return SchemaSnapshot(model_name=model, table=table, fields=base + fields, **kwargs)
