"""
Tests for template rendering — placeholders, conditionals, repeat blocks.
"""

from pathlib import Path

import pytest

from trellis.core.services.renderer import (
    PlaceholderRenderer,
    TemplateError,
    model_context,
    process_template,
)


class TestProcessTemplate:
    def test_placeholders(self):
        ctx = {"placeholders": {"MODEL_NAME": "Report", "TABLE": "reports"}}
        assert process_template("class __MODEL_NAME__:  # __TABLE__\n", ctx) == (
            "class Report:  # reports\n"
        )

    def test_unknown_placeholder_is_left_alone(self):
        assert process_template("__UNKNOWN__ and __init__\n", {}) == "__UNKNOWN__ and __init__\n"

    def test_conditionals(self):
        template = (
            "a\n"
            "# __IF_HAS_PARENT__\n"
            "parent\n"
            "# __ENDIF__\n"
            "# __IF_NOT_HAS_PARENT__\n"
            "orphan\n"
            "# __ENDIF__\n"
            "z\n"
        )
        assert process_template(template, {"flags": {"has_parent": True}}) == "a\nparent\nz\n"
        assert process_template(template, {"flags": {}}) == "a\norphan\nz\n"

    def test_nested_conditionals(self):
        template = (
            "__IF_OUTER__\n"
            "x\n"
            "  __IF_INNER__\n"
            "y\n"
            "  __ENDIF__\n"
            "__ENDIF__\n"
        )
        assert process_template(template, {"flags": {"outer": True}}) == "x\n"
        assert process_template(template, {"flags": {"outer": True, "inner": True}}) == "x\ny\n"
        assert process_template(template, {"flags": {"inner": True}}) == ""

    def test_repeat_block_with_item_flags(self):
        template = (
            "start\n"
            "// __EACH_FIELD__\n"
            "  __FIELD_NAME__ of __MODEL_NAME__\n"
            "  -- __IF_NULLABLE__\n"
            "  nullable\n"
            "  -- __ENDIF__\n"
            "// __END_EACH__\n"
            "end\n"
        )
        ctx = {
            "placeholders": {"MODEL_NAME": "Report"},
            "each": {"field": [
                {"placeholders": {"FIELD_NAME": "a"}, "flags": {"nullable": True}},
                {"placeholders": {"FIELD_NAME": "b"}, "flags": {"nullable": False}},
            ]},
        }
        assert process_template(template, ctx) == (
            "start\n  a of Report\n  nullable\n  b of Report\nend\n"
        )

    def test_item_values_shadow_outer_values(self):
        template = "__EACH_MODEL__\n__MODEL_NAME__\n__END_EACH__\n__MODEL_NAME__\n"
        ctx = {
            "placeholders": {"MODEL_NAME": "Outer"},
            "each": {"model": [{"placeholders": {"MODEL_NAME": "Inner"}}]},
        }
        assert process_template(template, ctx) == "Inner\nOuter\n"

    def test_unknown_repeat_block_renders_nothing(self):
        template = "a\n__EACH_THING__\nx\n__END_EACH__\nb\n"
        assert process_template(template, {}) == "a\nb\n"

    def test_marker_at_end_without_newline(self):
        assert process_template("__IF_ON__\nyes\n__ENDIF__", {"flags": {"on": True}}) == "yes\n"


class TestPlaceholderRenderer:
    def test_render_file(self, tmp_path: Path):
        (tmp_path / "t.tmpl").write_text("Project __PROJECT_NAME__\n")
        renderer = PlaceholderRenderer(tmp_path)
        out = renderer.render("t.tmpl", {"placeholders": {"PROJECT_NAME": "demo"}})
        assert out == "Project demo\n"

    def test_missing_template(self, tmp_path: Path):
        renderer = PlaceholderRenderer(tmp_path)
        assert not renderer.exists("nope.tmpl")
        with pytest.raises(TemplateError, match="not found"):
            renderer.render("nope.tmpl", {})

    def test_template_outside_root(self, tmp_path: Path):
        (tmp_path / "secret.txt").write_text("x")
        renderer = PlaceholderRenderer(tmp_path / "templates")
        assert not renderer.exists("../secret.txt")
        with pytest.raises(TemplateError, match="outside"):
            renderer.render("../secret.txt", {})

    def test_undecodable_template(self, tmp_path: Path):
        (tmp_path / "bin.tmpl").write_bytes(b"\xff\xfe\x00")
        with pytest.raises(TemplateError, match="Cannot read"):
            PlaceholderRenderer(tmp_path).render("bin.tmpl", {})


class TestModelContext:
    def test_model_values(self, project):
        ctx = model_context(project, project.get_model("Report"))
        placeholders = ctx["placeholders"]
        assert placeholders["PROJECT_NAME"] == "demo"
        assert placeholders["MODEL_SNAKE"] == "report"
        assert placeholders["TABLE"] == "reports"
        assert placeholders["PARENT_MODEL"] == "Organization"
        assert placeholders["PARENT_TABLE"] == "organizations"
        assert placeholders["PARENT_COLUMN"] == "organization_id"
        assert ctx["flags"] == {"has_parent": True, "has_indexes": True}

    def test_fields_include_foreign_key_column(self, project):
        ctx = model_context(project, project.get_model("Report"))
        fields = ctx["each"]["field"]
        assert [f["placeholders"]["FIELD_NAME"] for f in fields] == [
            "id", "title", "organization_id",
        ]
        fk = fields[2]
        assert fk["placeholders"]["FIELD_TYPE"] == "uuid"
        assert fk["flags"]["indexed"] and not fk["flags"]["nullable"]
        assert fields[0]["flags"]["primary_key"]

    def test_project_context(self, project):
        ctx = model_context(project, None)
        assert ctx["placeholders"] == {"PROJECT_NAME": "demo"}
        assert "field" not in ctx["each"]
        assert [m["placeholders"]["MODEL_NAME"] for m in ctx["each"]["model"]] == [
            "Organization", "Report",
        ]
