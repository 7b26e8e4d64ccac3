"""
Tests for migration synthesis, ordering and verification.
"""

import random

import pytest

from conftest import FIXED_NOW, snapshot

from trellis.core.models.project import MigrationSettings
from trellis.core.models.schema import FieldSpec, Relationship
from trellis.core.services.migration_synth import (
    SynthesisError,
    next_migration_id,
    plan_migrations,
    synthesize,
)
from trellis.core.services.schema_diff import diff_schema
from trellis.core.services.schema_sim import apply

TITLE = FieldSpec(name="title", sql_type="text")
ORG = Relationship(model="Organization", table="organizations", column="org_id")
ORG_ID = FieldSpec(name="org_id", sql_type="uuid", indexed=True)


def _plan(old, new, **kwargs):
    return synthesize(diff_schema(old, new), "20260101120000", **kwargs)


class TestColumnChanges:
    def test_add_column_with_default(self):
        old = snapshot("reports", "Report", TITLE)
        new = snapshot(
            "reports", "Report", TITLE,
            FieldSpec(name="ui", sql_type="jsonb", default="'{}'"),
        )
        plan = _plan(old, new)
        assert plan.up_statements == ["ALTER TABLE reports ADD COLUMN ui jsonb NOT NULL DEFAULT '{}'"]
        assert plan.down_statements == ["ALTER TABLE reports DROP COLUMN ui"]
        assert not plan.needs_manual_review
        assert plan.slug == "20260101120000_alter_reports"

    def test_not_null_without_default_is_relaxed(self):
        old = snapshot("reports", "Report", TITLE)
        new = snapshot("reports", "Report", TITLE, FieldSpec(name="flag", sql_type="boolean"))
        plan = _plan(old, new)
        assert plan.up_statements == ["ALTER TABLE reports ADD COLUMN flag boolean"]
        assert plan.needs_manual_review
        assert any("SET NOT NULL" in note for note in plan.review_notes)

    def test_empty_diff_gives_empty_plan(self):
        old = snapshot("reports", "Report", TITLE)
        plan = _plan(old, old)
        assert plan.is_empty

    def test_index_dropped_before_column(self):
        title = TITLE.model_copy(update={"nullable": True, "indexed": True})
        old = snapshot("reports", "Report", title)
        new = snapshot("reports", "Report")
        plan = _plan(old, new)
        assert plan.up_statements == [
            "DROP INDEX reports_title_idx",
            "ALTER TABLE reports DROP COLUMN title",
        ]
        assert plan.down_statements == [
            "ALTER TABLE reports ADD COLUMN title text",
            "CREATE INDEX reports_title_idx ON reports (title)",
        ]

    def test_foreign_key_added_after_column(self):
        org_id = ORG_ID.model_copy(update={"nullable": True})
        old = snapshot("reports", "Report", TITLE)
        new = snapshot("reports", "Report", TITLE, org_id, parent=ORG)
        plan = _plan(old, new)
        assert plan.up_statements == [
            "ALTER TABLE reports ADD COLUMN org_id uuid",
            "CREATE INDEX reports_org_id_idx ON reports (org_id)",
            "ALTER TABLE reports ADD CONSTRAINT reports_org_id_fkey "
            "FOREIGN KEY (org_id) REFERENCES organizations (id) ON DELETE CASCADE",
        ]
        assert plan.down_statements == [
            "DROP INDEX reports_org_id_idx",
            "ALTER TABLE reports DROP CONSTRAINT reports_org_id_fkey",
            "ALTER TABLE reports DROP COLUMN org_id",
        ]

    def test_combined_alters(self):
        old = snapshot("reports", "Report", TITLE)
        new = snapshot("reports", "Report", FieldSpec(
            name="title", sql_type="varchar(200)", nullable=True, default="'x'",
        ))
        plan = _plan(old, new)
        assert plan.up_statements == [
            "ALTER TABLE reports ALTER COLUMN title TYPE varchar(200) USING title::varchar(200), "
            "ALTER COLUMN title SET DEFAULT 'x', ALTER COLUMN title DROP NOT NULL"
        ]

        split = _plan(old, new, settings=MigrationSettings(combine_alters=False))
        assert len(split.up_statements) == 3
        assert split.down_statements[-1] == "ALTER TABLE reports ALTER COLUMN title SET NOT NULL"

    def test_unique_toggled(self):
        old = snapshot("reports", "Report", TITLE)
        new = snapshot("reports", "Report", TITLE.model_copy(update={"unique": True}))
        plan = _plan(old, new)
        assert plan.up_statements == [
            "ALTER TABLE reports ADD CONSTRAINT reports_title_key UNIQUE (title)"
        ]
        assert plan.down_statements == ["ALTER TABLE reports DROP CONSTRAINT reports_title_key"]


class TestRenames:
    def test_annotated_rename(self):
        description = FieldSpec(name="description", sql_type="text", nullable=True)
        old = snapshot("reports", "Report", description)
        new = snapshot("reports", "Report", description.model_copy(
            update={"name": "summary", "renamed_from": "description"},
        ))
        plan = _plan(old, new)
        assert plan.up_statements == [
            "ALTER TABLE reports RENAME COLUMN description TO summary"
        ]
        assert plan.down_statements == [
            "ALTER TABLE reports RENAME COLUMN summary TO description"
        ]

    def test_rename_carries_unique_constraint(self):
        code = FieldSpec(name="code", sql_type="text", unique=True)
        old = snapshot("reports", "Report", code)
        new = snapshot("reports", "Report", code.model_copy(
            update={"name": "sku", "renamed_from": "code"},
        ))
        plan = _plan(old, new)
        assert plan.up_statements == [
            "ALTER TABLE reports RENAME COLUMN code TO sku",
            "ALTER TABLE reports RENAME CONSTRAINT reports_code_key TO reports_sku_key",
        ]

    def test_unannotated_rename_is_flagged(self):
        old = snapshot("reports", "Report", FieldSpec(name="title", sql_type="text", nullable=True))
        new = snapshot("reports", "Report", FieldSpec(name="heading", sql_type="text", nullable=True))
        plan = _plan(old, new)
        assert plan.needs_manual_review
        assert any("renamed_from: title" in note for note in plan.review_notes)

    def test_table_rename(self):
        unique_title = TITLE.model_copy(update={"unique": True})
        old = snapshot("reports", "Report", unique_title)
        new = snapshot("documents", "Report", unique_title)
        plan = _plan(old, new)
        assert plan.up_statements == [
            "ALTER TABLE reports RENAME TO documents",
            "ALTER TABLE documents RENAME CONSTRAINT reports_pkey TO documents_pkey",
            "ALTER TABLE documents RENAME CONSTRAINT reports_title_key TO documents_title_key",
        ]
        assert plan.down_statements[0] == "ALTER TABLE documents RENAME TO reports"


class TestTables:
    def test_create_table(self, project):
        new = project.snapshot(project.get_model("Report"))
        plan = synthesize(diff_schema(None, new), "20260101120000")
        assert plan.up_statements == [
            "CREATE TABLE reports (\n"
            "    id uuid PRIMARY KEY,\n"
            "    title text NOT NULL,\n"
            "    organization_id uuid NOT NULL\n"
            ")",
            "CREATE INDEX reports_organization_id_idx ON reports (organization_id)",
            "ALTER TABLE reports ADD CONSTRAINT reports_organization_id_fkey "
            "FOREIGN KEY (organization_id) REFERENCES organizations (id) ON DELETE CASCADE",
        ]
        assert plan.down_statements == ["DROP TABLE reports"]
        assert plan.slug == "20260101120000_create_reports"
        assert not plan.needs_manual_review

    def test_drop_table_needs_review(self):
        old = snapshot("reports", "Report", TITLE)
        plan = _plan(old, None)
        assert plan.up_statements == ["DROP TABLE reports"]
        assert plan.needs_manual_review
        assert plan.down_statements[0].startswith("CREATE TABLE reports (")
        assert plan.slug.endswith("_drop_reports")

    def test_primary_key_change_is_rejected(self):
        old = snapshot("reports", "Report", TITLE)
        new = snapshot("reports", "Report", TITLE.model_copy(update={"primary_key": True}))
        with pytest.raises(SynthesisError) as exc:
            _plan(old, new)
        assert exc.value.model == "Report"
        assert exc.value.entry == "primary key"
        assert exc.value.to_dict()["entry"] == "primary key"


class TestRandomChanges:
    """Synthesized plans are verified in both directions for arbitrary edits."""

    TYPES = ["text", "integer", "boolean", "uuid"]

    def _field(self, rng: random.Random, name: str) -> FieldSpec:
        return FieldSpec(
            name=name,
            sql_type=rng.choice(self.TYPES),
            nullable=rng.random() < 0.5,
            default=rng.choice([None, None, "'x'"]),
            unique=rng.random() < 0.3,
            indexed=rng.random() < 0.3,
        )

    def test_round_trips(self):
        rng = random.Random(2026)
        for _ in range(60):
            old_fields = [self._field(rng, f"f{i}") for i in range(rng.randint(0, 5))]
            new_fields = []
            for f in old_fields:
                roll = rng.random()
                if roll < 0.2:
                    continue
                new_fields.append(self._field(rng, f.name) if roll < 0.5 else f)
            new_fields += [self._field(rng, f"n{i}") for i in range(rng.randint(0, 2))]

            old = snapshot("reports", "Report", *old_fields)
            new = snapshot("reports", "Report", *new_fields)
            plan = _plan(old, new)

            old_names = {f.name for f in old_fields}
            relaxed = {
                f.name for f in new_fields
                if f.name not in old_names and not f.nullable and f.default is None
            }
            assert apply(old, plan.up_statements).same_structure(new.relax_columns(relaxed))


class TestNextMigrationId:
    def test_from_clock(self):
        assert next_migration_id(FIXED_NOW) == "20260101120000"

    def test_strictly_after_last(self):
        assert next_migration_id(FIXED_NOW, "20260101120000") == "20260101120001"
        assert next_migration_id(FIXED_NOW, "20991231000000") == "20991231000001"

    def test_older_last_id_is_ignored(self):
        assert next_migration_id(FIXED_NOW, "20250101000000") == "20260101120000"
        assert next_migration_id(FIXED_NOW, "manual") == "20260101120000"


class TestPlanMigrations:
    def _org(self, *fields):
        return snapshot("organizations", "Organization", *fields)

    def _report(self):
        return snapshot("reports", "Report", ORG_ID, parent=ORG)

    def test_parent_created_first(self):
        batch = plan_migrations(
            [diff_schema(None, self._report()), diff_schema(None, self._org())],
            now=FIXED_NOW,
        )
        assert batch.ok
        assert [p.slug for p in batch.plans] == [
            "20260101120000_create_organizations",
            "20260101120001_create_reports",
        ]

    def test_ids_follow_last_id(self):
        batch = plan_migrations(
            [diff_schema(None, self._org())], now=FIXED_NOW, last_id="20260101120005",
        )
        assert batch.plans[0].id == "20260101120006"

    def test_child_dropped_before_parent(self):
        batch = plan_migrations(
            [diff_schema(self._org(), None), diff_schema(self._report(), None)],
            now=FIXED_NOW,
            current={},
        )
        assert batch.ok
        assert [p.model_name for p in batch.plans] == ["Report", "Organization"]

    def test_referenced_drop_is_refused(self):
        batch = plan_migrations(
            [diff_schema(self._org(), None)],
            now=FIXED_NOW,
            current={"Report": self._report()},
        )
        assert batch.plans == []
        assert batch.failed_models == {"Organization"}
        assert "still referenced by Report" in str(batch.errors[0])

    def test_failure_skips_dependents_only(self):
        broken = self._org(TITLE.model_copy(update={"primary_key": True}))
        batch = plan_migrations(
            [
                diff_schema(self._org(TITLE), broken),
                diff_schema(None, self._report()),
                diff_schema(None, snapshot("tags", "Tag", TITLE)),
            ],
            now=FIXED_NOW,
        )
        assert [p.model_name for p in batch.plans] == ["Tag"]
        assert [(e.model, e.entry) for e in batch.errors] == [
            ("Organization", "primary key"),
            ("Report", "dependencies"),
        ]

    def test_reference_cycle(self):
        a = snapshot("as", "A", FieldSpec(name="b_id", sql_type="uuid"),
                     parent=Relationship(model="B", table="bs", column="b_id"))
        b = snapshot("bs", "B", FieldSpec(name="a_id", sql_type="uuid"),
                     parent=Relationship(model="A", table="as", column="a_id"))
        batch = plan_migrations([diff_schema(None, a), diff_schema(None, b)], now=FIXED_NOW)
        assert batch.plans == []
        assert batch.failed_models == {"A", "B"}
        assert all(e.entry == "relationships" for e in batch.errors)

    def test_empty_diffs_are_ignored(self):
        org = self._org()
        batch = plan_migrations([diff_schema(org, org)], now=FIXED_NOW)
        assert batch.ok and batch.plans == []
