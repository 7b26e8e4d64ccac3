"""
Tests for the engine executor — render, merge, migrate and commit.
"""

import os
import threading
from pathlib import Path

import pytest

from conftest import FIXED_NOW, INDEX_TXT, ORGANIZATION_PY, REPORT_PY

from trellis.core.config.loader import ConfigError
from trellis.core.engine.executor import (
    CANCELLED,
    CONFLICT,
    CREATED,
    EMPTY,
    ERROR,
    UNCHANGED,
    UNRESOLVED,
    WRITTEN,
    expand_jobs,
    generate_operation_id,
    run_generation_pass,
)
from trellis.core.models.project import ModelField, OutputSpec, Project
from trellis.core.persistence.state_store import GeneratedStateStore
from trellis.core.services.merge import MARKER_LOCAL, has_conflict_markers
from trellis.core.services.renderer import PlaceholderRenderer


def _run(project: Project, root: Path, **kwargs):
    kwargs.setdefault("now", FIXED_NOW)
    return run_generation_pass(
        project,
        GeneratedStateStore(root / ".trellis"),
        PlaceholderRenderer(root / "templates"),
        output_root=root / "out",
        migrations_dir=root / "migrations",
        workers=2,
        **kwargs,
    )


def _statuses(report) -> dict[str, str]:
    return {o.path: o.status for o in report.outcomes}


def _with_field(project: Project, model_name: str, field: ModelField) -> Project:
    models = []
    for m in project.models:
        if m.name == model_name:
            m = m.model_copy(update={"fields": [*m.fields, field]})
        models.append(m)
    return project.model_copy(update={"models": models})


def _replace_field(project: Project, model_name: str, field: ModelField) -> Project:
    models = []
    for m in project.models:
        if m.name == model_name:
            fields = [field if f.name == field.name else f for f in m.fields]
            m = m.model_copy(update={"fields": fields})
        models.append(m)
    return project.model_copy(update={"models": models})


def _migrations(root: Path) -> list[str]:
    directory = root / "migrations"
    return sorted(p.name for p in directory.iterdir()) if directory.is_dir() else []


# ── Job expansion ────────────────────────────────────────────────────


class TestExpandJobs:
    def test_one_job_per_model_and_output(self, project):
        jobs = expand_jobs(project)
        assert [(j.path, j.model) for j in jobs] == [
            ("models/organization.py", "Organization"),
            ("models/report.py", "Report"),
            ("index.txt", None),
        ]

    def test_duplicate_paths(self, project):
        extra = OutputSpec(template="model.py.tmpl", path="index.txt", per_model=False)
        with pytest.raises(ConfigError, match="Two outputs generate index.txt"):
            expand_jobs(project.model_copy(update={"outputs": [*project.outputs, extra]}))

    def test_placeholder_needs_per_model(self, project):
        bad = OutputSpec(template="model.py.tmpl", path="{model}.py", per_model=False)
        with pytest.raises(ConfigError, match="not per_model"):
            expand_jobs(project.model_copy(update={"outputs": [bad]}))

    def test_escaping_path(self, project):
        bad = OutputSpec(template="model.py.tmpl", path="../{model}.py")
        with pytest.raises(ConfigError, match="relative"):
            expand_jobs(project.model_copy(update={"outputs": [bad]}))


# ── First pass and idempotence ───────────────────────────────────────


class TestFirstPass:
    def test_creates_files_and_migrations(self, project, project_dir: Path):
        report = _run(project, project_dir)

        assert report.ok and report.status == "ok"
        assert report.committed and report.generation == 1
        assert set(_statuses(report).values()) == {CREATED}
        out = project_dir / "out"
        assert (out / "models" / "organization.py").read_text() == ORGANIZATION_PY
        assert (out / "models" / "report.py").read_text() == REPORT_PY
        assert (out / "index.txt").read_text() == INDEX_TXT
        assert _migrations(project_dir) == [
            "20260101120000_create_organizations.down.sql",
            "20260101120000_create_organizations.up.sql",
            "20260101120001_create_reports.down.sql",
            "20260101120001_create_reports.up.sql",
        ]

    def test_state_records_base_and_schemas(self, project, project_dir: Path):
        _run(project, project_dir)
        store = GeneratedStateStore(project_dir / ".trellis")
        assert store.load("models/report.py").base_content == REPORT_PY
        assert store.models() == ["Organization", "Report"]
        history = store.schema_history("Report")
        assert history[0].migration_id == "20260101120001"

    def test_second_pass_is_a_no_op(self, project, project_dir: Path):
        _run(project, project_dir)
        report = _run(project, project_dir)

        assert report.ok
        assert set(_statuses(report).values()) == {UNCHANGED}
        assert report.migrations == []
        assert not report.committed
        assert report.generation == 1
        assert len(_migrations(project_dir)) == 4

    def test_operation_id(self, project, project_dir: Path):
        report = _run(project, project_dir, operation_id="gen-test")
        assert report.operation_id == "gen-test"
        assert generate_operation_id().startswith("gen-")


# ── Merging ──────────────────────────────────────────────────────────


class TestMerging:
    def test_local_edit_survives_upstream_change(self, project, project_dir: Path):
        _run(project, project_dir)
        target = project_dir / "out" / "models" / "organization.py"
        target.write_text("# custom header\n" + ORGANIZATION_PY)

        changed = _with_field(
            project, "Organization", ModelField(name="slug", type="text", nullable=True)
        )
        report = _run(changed, project_dir)

        assert report.ok
        assert _statuses(report)["models/organization.py"] == WRITTEN
        assert target.read_text() == (
            "# custom header\n" + ORGANIZATION_PY + '    slug: "text"\n'
        )
        assert [p.slug for p in report.migrations] == ["20260101120002_alter_organizations"]
        assert report.migrations[0].up_statements == [
            "ALTER TABLE organizations ADD COLUMN slug text"
        ]

    def test_conflict_is_reported_and_base_advances(self, project, project_dir: Path):
        _run(project, project_dir)
        target = project_dir / "out" / "models" / "organization.py"
        target.write_text(ORGANIZATION_PY.replace('name: "text"', 'name: "citext"'))

        changed = _replace_field(
            project, "Organization", ModelField(name="name", type="varchar(80)")
        )
        report = _run(changed, project_dir)

        assert not report.ok and report.status == "conflicts"
        assert [o.path for o in report.conflicts] == ["models/organization.py"]
        text = target.read_text()
        assert MARKER_LOCAL in text
        assert 'name: "citext"' in text and 'name: "varchar(80)"' in text
        assert report.committed
        store = GeneratedStateStore(project_dir / ".trellis")
        assert 'name: "varchar(80)"' in store.load("models/organization.py").base_content

        # Left unresolved, the file is reported again but not rewritten.
        again = _run(changed, project_dir)
        assert _statuses(again)["models/organization.py"] == UNRESOLVED
        assert again.status == "conflicts"
        assert target.read_text() == text

    def test_leftover_markers_survive_a_clean_update(self, project, project_dir: Path):
        _run(project, project_dir)
        target = project_dir / "out" / "models" / "organization.py"
        target.write_text(ORGANIZATION_PY.replace('name: "text"', 'name: "citext"'))
        changed = _replace_field(
            project, "Organization", ModelField(name="name", type="varchar(80)")
        )
        _run(changed, project_dir)
        template = project_dir / "templates" / "model.py.tmpl"
        template.write_text(
            template.read_text().replace("# __MODEL_NAME__ (", "# Model __MODEL_NAME__ (")
        )

        report = _run(changed, project_dir)

        assert _statuses(report)["models/organization.py"] == UNRESOLVED
        assert _statuses(report)["models/report.py"] == WRITTEN
        text = target.read_text()
        assert text.startswith("# Model Organization (table organizations)\n")
        assert MARKER_LOCAL in text
        assert report.status == "conflicts"
        assert [o.path for o in report.conflicts] == ["models/organization.py"]

    def test_existing_file_without_base_is_kept(self, project, project_dir: Path):
        target = project_dir / "out" / "index.txt"
        target.parent.mkdir(parents=True)
        target.write_text("Project demo\n- hand written\n")

        report = _run(project, project_dir)

        assert _statuses(report)["index.txt"] == UNCHANGED
        assert target.read_text() == "Project demo\n- hand written\n"
        store = GeneratedStateStore(project_dir / ".trellis")
        assert store.load("index.txt").base_content == INDEX_TXT

    def test_overwrite_replaces_local_edits(self, project, project_dir: Path):
        _run(project, project_dir)
        target = project_dir / "out" / "index.txt"
        target.write_text("edited\n")

        report = _run(project, project_dir, overwrite=True)

        assert _statuses(report)["index.txt"] == WRITTEN
        assert target.read_text() == INDEX_TXT

    def test_deleted_local_file_is_recreated(self, project, project_dir: Path):
        _run(project, project_dir)
        target = project_dir / "out" / "models" / "report.py"
        target.unlink()

        report = _run(project, project_dir)

        assert _statuses(report)["models/report.py"] == CREATED
        assert target.read_text() == REPORT_PY


# ── Orphans and empty renders ────────────────────────────────────────


class TestOrphans:
    def test_removed_model(self, project, project_dir: Path):
        _run(project, project_dir)
        without_report = project.model_copy(
            update={"models": [project.get_model("Organization")]}
        )
        report = _run(without_report, project_dir)

        assert report.orphaned == ["models/report.py"]
        assert report.orphans_unmodified == ["models/report.py"]
        assert (project_dir / "out" / "models" / "report.py").is_file()
        assert [p.slug for p in report.migrations] == ["20260101120002_drop_reports"]
        assert report.migrations[0].needs_manual_review

        store = GeneratedStateStore(project_dir / ".trellis")
        assert "models/report.py" not in store.paths()
        assert store.models() == ["Organization"]

    def test_modified_orphan_is_not_unmodified(self, project, project_dir: Path):
        _run(project, project_dir)
        (project_dir / "out" / "models" / "report.py").write_text("mine\n")
        without_report = project.model_copy(
            update={"models": [project.get_model("Organization")]}
        )
        report = _run(without_report, project_dir)
        assert report.orphaned == ["models/report.py"]
        assert report.orphans_unmodified == []

    def test_empty_render_stops_generating(self, project, project_dir: Path):
        _run(project, project_dir)
        (project_dir / "templates" / "index.txt.tmpl").write_text("")

        report = _run(project, project_dir)

        assert _statuses(report)["index.txt"] == EMPTY
        assert report.orphaned == ["index.txt"]
        assert report.ok

    def test_whitespace_only_render_is_empty(self, project, project_dir: Path):
        (project_dir / "templates" / "index.txt.tmpl").write_text("\n  \n")

        report = _run(project, project_dir)

        assert _statuses(report)["index.txt"] == EMPTY
        assert not (project_dir / "out" / "index.txt").exists()
        assert "index.txt" not in GeneratedStateStore(project_dir / ".trellis").paths()


# ── Failures ─────────────────────────────────────────────────────────


class TestFailures:
    def test_corrupt_state_aborts_before_writing(self, project, project_dir: Path):
        _run(project, project_dir)
        base = project_dir / ".trellis" / "generations" / "g000001" / "files" / "index.txt.gen"
        os.unlink(base)
        base.write_text("tampered\n")
        (project_dir / "templates" / "index.txt.tmpl").write_text("changed\n")

        report = _run(project, project_dir)

        assert report.aborted and report.status == "aborted"
        assert not report.ok
        assert report.outcomes == []
        assert (project_dir / "out" / "index.txt").read_text() == INDEX_TXT

    def test_unwritable_path_is_isolated(self, project, project_dir: Path):
        (project_dir / "out" / "index.txt").mkdir(parents=True)

        report = _run(project, project_dir)

        statuses = _statuses(report)
        assert statuses["index.txt"] == ERROR
        assert statuses["models/report.py"] == CREATED
        assert report.status == "failed"
        assert report.committed
        store = GeneratedStateStore(project_dir / ".trellis")
        assert store.load("index.txt") is None
        assert store.load("models/report.py") is not None

    def test_missing_template(self, project, project_dir: Path):
        (project_dir / "templates" / "index.txt.tmpl").unlink()
        report = _run(project, project_dir)
        outcome = next(o for o in report.outcomes if o.path == "index.txt")
        assert outcome.status == ERROR
        assert "Template not found" in outcome.error

    def test_synthesis_error_keeps_stored_schema(self, project, project_dir: Path):
        _run(project, project_dir)
        changed = _replace_field(
            project, "Organization", ModelField(name="name", type="text", primary_key=True)
        )

        report = _run(changed, project_dir)

        assert report.status == "failed"
        assert [e.model for e in report.synthesis_errors] == ["Organization"]
        store = GeneratedStateStore(project_dir / ".trellis")
        assert not store.load_schema("Organization").field("name").primary_key

    def test_migration_write_failure(self, project, project_dir: Path):
        (project_dir / "migrations").write_text("not a directory")

        report = _run(project, project_dir)

        assert report.status == "failed"
        assert len(report.io_failures) == 2
        store = GeneratedStateStore(project_dir / ".trellis")
        assert store.models() == []
        assert store.load("index.txt") is not None


# ── Dry run and cancellation ─────────────────────────────────────────


class TestDryRunAndCancel:
    def test_dry_run_writes_nothing(self, project, project_dir: Path):
        report = _run(project, project_dir, dry_run=True)

        assert report.dry_run
        assert set(_statuses(report).values()) == {CREATED}
        assert all(o.diff is not None for o in report.outcomes)
        assert len(report.migrations) == 2
        assert report.migration_files == []
        assert not report.committed
        assert not (project_dir / "out").exists()
        assert not (project_dir / "migrations").exists()
        assert GeneratedStateStore(project_dir / ".trellis").generation == 0

    def test_dry_run_shows_merge(self, project, project_dir: Path):
        _run(project, project_dir)
        changed = _with_field(
            project, "Organization", ModelField(name="slug", type="text", nullable=True)
        )
        report = _run(changed, project_dir, dry_run=True)

        outcome = next(o for o in report.outcomes if o.path == "models/organization.py")
        assert outcome.status == WRITTEN
        assert outcome.diff["lines_added"] == 1
        assert (project_dir / "out" / "models" / "organization.py").read_text() == ORGANIZATION_PY

    def test_cancelled_before_start(self, project, project_dir: Path):
        cancel = threading.Event()
        cancel.set()

        report = _run(project, project_dir, cancel=cancel)

        assert report.cancelled and report.status == "cancelled"
        assert set(_statuses(report).values()) == {CANCELLED}
        assert not report.committed
        assert not (project_dir / "out").exists()
        assert GeneratedStateStore(project_dir / ".trellis").generation == 0

    def test_report_to_dict(self, project, project_dir: Path):
        _run(project, project_dir)
        target = project_dir / "out" / "index.txt"
        target.write_text(INDEX_TXT.replace("Report", "Custom"))
        (project_dir / "templates" / "index.txt.tmpl").write_text(
            "Project __PROJECT_NAME__!\n"
        )
        report = _run(project, project_dir)
        data = report.to_dict()
        assert data["status"] == "conflicts"
        assert data["conflicts"] == ["index.txt"]
        assert data["files"][2]["conflicts"][0]["base_lines"] == [1, 3]
        assert has_conflict_markers(target.read_text())
        assert _statuses(report)["index.txt"] == CONFLICT
