"""
Tests for the in-memory DDL simulator.
"""

import pytest

from conftest import snapshot

from trellis.core.models.schema import FieldSpec, IndexSpec, Relationship, SchemaSnapshot
from trellis.core.services.schema_sim import SimulatedDatabase, SimulationError, apply

ORG_LINK = Relationship(model="Organization", table="organizations", column="org_id")


def _reports() -> SchemaSnapshot:
    return snapshot(
        "reports", "Report",
        FieldSpec(name="title", sql_type="text", indexed=True),
        FieldSpec(name="slug", sql_type="text", unique=True),
        FieldSpec(name="org_id", sql_type="uuid"),
        parent=ORG_LINK,
    )


class TestCreateTable:
    def test_inline_constraints(self):
        result = apply(None, [
            "CREATE TABLE reports ("
            "id uuid PRIMARY KEY, title text NOT NULL, slug text UNIQUE, "
            "org_id uuid NOT NULL REFERENCES organizations (id) ON DELETE CASCADE)"
        ])
        expected = snapshot(
            "reports", "Report",
            FieldSpec(name="title", sql_type="text"),
            FieldSpec(name="slug", sql_type="text", nullable=True, unique=True),
            FieldSpec(name="org_id", sql_type="uuid"),
            parent=ORG_LINK,
        )
        assert result.same_structure(expected)

    def test_table_constraints(self):
        result = apply(None, [
            "CREATE TABLE t (a integer, b integer, "
            "CONSTRAINT t_pk PRIMARY KEY (a), UNIQUE (a, b), CHECK (b > 0))"
        ])
        assert result.field("a").primary_key
        assert result.field("a").nullable is False
        assert [(i.columns, i.unique) for i in result.indexes] == [(("a", "b"), True)]

    def test_parenthesized_type_and_default(self):
        result = apply(None, ["CREATE TABLE t (amount numeric(10, 2) NOT NULL DEFAULT 0)"])
        field = result.field("amount")
        assert field.sql_type == "numeric(10, 2)"
        assert field.default == "0"

    def test_quoted_names(self):
        result = apply(None, ['CREATE TABLE "user" ("Order" text)'])
        assert result.table == "user"
        assert result.field_names() == ["Order"]

    def test_duplicate_table(self):
        db = SimulatedDatabase()
        db.apply_statement("CREATE TABLE t (a text)")
        with pytest.raises(SimulationError, match="already exists"):
            db.apply_statement("CREATE TABLE t (a text)")
        db.apply_statement("CREATE TABLE IF NOT EXISTS t (a text)")

    def test_duplicate_column(self):
        with pytest.raises(SimulationError, match="more than once"):
            apply(None, ["CREATE TABLE t (a text, a integer)"])

    def test_missing_reference_target(self):
        db = SimulatedDatabase(check_references=True)
        with pytest.raises(SimulationError, match='"organizations" does not exist'):
            db.apply_statement(
                "CREATE TABLE reports (id uuid PRIMARY KEY, "
                "org_id uuid REFERENCES organizations (id))"
            )
        assert "reports" not in db.tables


class TestAlterTable:
    def test_add_drop_and_rename_column(self):
        result = apply(_reports(), [
            "ALTER TABLE reports ADD COLUMN ui jsonb NOT NULL DEFAULT '{}'",
            "ALTER TABLE reports DROP COLUMN slug",
            "ALTER TABLE reports RENAME COLUMN title TO heading",
        ])
        ui = result.field("ui")
        assert ui.default == "'{}'" and not ui.nullable
        assert result.field("slug") is None
        assert result.field("title") is None
        assert result.effective_indexes()["reports_title_idx"].columns == ("heading",)

    def test_drop_column_used_by_index_needs_cascade(self):
        with pytest.raises(SimulationError, match='index "reports_title_idx"'):
            apply(_reports(), ["ALTER TABLE reports DROP COLUMN title"])
        result = apply(_reports(), ["ALTER TABLE reports DROP COLUMN title CASCADE"])
        assert "reports_title_idx" not in result.effective_indexes()

    def test_drop_fk_column_needs_cascade(self):
        with pytest.raises(SimulationError, match="reports_org_id_fkey"):
            apply(_reports(), ["ALTER TABLE reports DROP COLUMN org_id"])

    def test_nullability_changes(self):
        result = apply(_reports(), ["ALTER TABLE reports ALTER COLUMN title DROP NOT NULL"])
        assert result.field("title").nullable
        with pytest.raises(SimulationError, match="primary key"):
            apply(_reports(), ["ALTER TABLE reports ALTER COLUMN id DROP NOT NULL"])

    def test_type_and_default_changes(self):
        result = apply(_reports(), [
            "ALTER TABLE reports ALTER COLUMN title TYPE varchar(200) USING title::varchar",
            "ALTER TABLE reports ALTER COLUMN title SET DEFAULT 'untitled'",
        ])
        assert result.field("title").sql_type == "varchar(200)"
        assert result.field("title").default == "'untitled'"

    def test_constraint_renames(self):
        result = apply(_reports(), [
            "ALTER TABLE reports RENAME CONSTRAINT reports_slug_key TO reports_handle_key",
            "ALTER TABLE reports DROP CONSTRAINT reports_handle_key",
        ])
        assert not result.field("slug").unique

    def test_missing_column(self):
        with pytest.raises(SimulationError, match='column "nope"'):
            apply(_reports(), ["ALTER TABLE reports ALTER COLUMN nope SET NOT NULL"])

    def test_second_foreign_key_is_not_a_model(self):
        with pytest.raises(SimulationError, match="at most one parent"):
            apply(_reports(), [
                "ALTER TABLE reports ADD COLUMN owner_id uuid REFERENCES users (id)",
            ])

    def test_rename_table_moves_indexes(self):
        db = SimulatedDatabase()
        db.load_snapshot(_reports())
        db.apply_statement("ALTER TABLE reports RENAME TO documents")
        assert db.indexes["reports_title_idx"].table == "documents"
        assert db.snapshot("documents").model_name == "Report"


class TestTablesAndIndexes:
    def test_drop_referenced_table(self):
        db = SimulatedDatabase()
        db.load_snapshot(snapshot("organizations", "Organization"))
        db.load_snapshot(_reports())
        with pytest.raises(SimulationError, match="depends on it"):
            db.apply_statement("DROP TABLE organizations")
        db.apply_statement("DROP TABLE organizations CASCADE")
        assert db.snapshot("reports").parent is None

    def test_dropped_table_reads_back_as_none(self):
        assert apply(_reports(), ["DROP TABLE reports"]) is None

    def test_create_and_rename_index(self):
        result = apply(_reports(), [
            "CREATE UNIQUE INDEX reports_org_title ON reports (org_id, title)",
            "ALTER INDEX reports_org_title RENAME TO reports_lookup",
        ])
        index = result.effective_indexes()["reports_lookup"]
        assert index.columns == ("org_id", "title") and index.unique

    def test_drop_constraint_index_refused(self):
        with pytest.raises(SimulationError, match="constraint requires it"):
            apply(_reports(), ["DROP INDEX reports_slug_key"])

    def test_index_on_missing_column(self):
        with pytest.raises(SimulationError):
            apply(_reports(), ["CREATE INDEX ON reports (nope)"])


class TestStrictness:
    def test_unsupported_statement(self):
        with pytest.raises(SimulationError, match="unsupported statement"):
            apply(_reports(), ["CREATE VIEW v AS SELECT 1"])

    def test_lenient_mode_skips(self):
        result = apply(_reports(), ["CREATE VIEW v AS SELECT 1"], strict=False)
        assert result.same_structure(_reports())

    def test_data_statements_are_no_ops(self):
        result = apply(_reports(), [
            "BEGIN",
            "UPDATE reports SET title = 'x'",
            "COMMIT",
        ])
        assert result.same_structure(_reports())

    def test_error_names_statement(self):
        with pytest.raises(SimulationError) as exc:
            apply(_reports(), ["ALTER TABLE missing ADD COLUMN a text"])
        assert "(in: ALTER TABLE missing ADD COLUMN a text)" in str(exc.value)


class TestSnapshotConversion:
    def test_load_and_read_back(self):
        original = snapshot(
            "reports", "Report",
            FieldSpec(name="title", sql_type="text", indexed=True, default="'x'"),
            FieldSpec(name="slug", sql_type="text", unique=True, nullable=True),
            FieldSpec(name="org_id", sql_type="uuid"),
            indexes=(IndexSpec(name="reports_lookup", columns=("org_id", "slug"), unique=True),),
            parent=ORG_LINK,
        )
        db = SimulatedDatabase()
        db.load_snapshot(original)
        assert db.snapshot("reports").same_structure(original)
        assert db.snapshot("reports").model_name == "Report"
