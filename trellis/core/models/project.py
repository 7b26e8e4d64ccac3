"""
Project model — the declarative configuration of a generated project.

Loaded from trellis.yml, this declares the models to generate, the
templates each output path is rendered from, and where generated
state and migrations live.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field

from trellis.core.models.schema import (
    FieldSpec,
    IndexSpec,
    Relationship,
    SchemaSnapshot,
    normalize_on_delete,
)

# Abstract field types and their PostgreSQL spelling. Anything else is
# passed through as a literal SQL type.
SQL_TYPES: dict[str, str] = {
    "text": "text",
    "int": "integer",
    "bigint": "bigint",
    "uuid": "uuid",
    "float": "double precision",
    "boolean": "boolean",
    "json": "jsonb",
    "timestamp": "timestamptz",
}


def snake_case(name: str) -> str:
    """Convert ``PostImage`` or ``post-image`` to ``post_image``."""
    name = re.sub(r"[\s\-]+", "_", name.strip())
    name = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name)
    return name.lower()


def default_table_name(model_name: str) -> str:
    table = snake_case(model_name)
    return table if table.endswith("s") else table + "s"


class ModelField(BaseModel):
    """A field declared in trellis.yml."""

    name: str
    type: str
    nullable: bool = False
    default: str | None = None
    unique: bool = False
    indexed: bool = False
    primary_key: bool = False
    renamed_from: str | None = None

    @property
    def sql_type(self) -> str:
        return SQL_TYPES.get(self.type.lower(), self.type)

    def to_spec(self) -> FieldSpec:
        return FieldSpec(
            name=self.name,
            sql_type=self.sql_type,
            nullable=self.nullable,
            default=self.default,
            unique=self.unique,
            indexed=self.indexed,
            primary_key=self.primary_key,
            renamed_from=self.renamed_from,
        )


class ModelIndex(BaseModel):
    """An explicit index declared on a model."""

    name: str
    columns: list[str]
    unique: bool = False


class BelongsTo(BaseModel):
    """Parent relationship declared on a model."""

    model: str
    column: str = ""
    references: str = "id"
    on_delete: str = "cascade"


class Model(BaseModel):
    """One model: a table plus the generated files derived from it."""

    name: str
    table: str = ""
    fields: list[ModelField] = Field(default_factory=list)
    indexes: list[ModelIndex] = Field(default_factory=list)
    belongs_to: BelongsTo | None = None

    @property
    def table_name(self) -> str:
        return self.table or default_table_name(self.name)

    @property
    def snake_name(self) -> str:
        return snake_case(self.name)


class OutputSpec(BaseModel):
    """A generated output: a template rendered to a path.

    ``path`` may contain ``{model}`` and ``{table}`` when ``per_model``
    is true; one file is then produced per model.
    """

    template: str
    path: str
    per_model: bool = True


class MigrationSettings(BaseModel):
    """How migrations are synthesized and verified."""

    combine_alters: bool = True
    verify: bool = True


class Project(BaseModel):
    """Root configuration — loaded from trellis.yml."""

    model_config = ConfigDict(protected_namespaces=())

    version: int = 1
    name: str
    description: str = ""

    output_dir: str = "."
    state_dir: str = ".trellis"
    migrations_dir: str = "migrations"
    templates_dir: str = "templates"
    workers: int = Field(default=4, ge=1)

    migrations: MigrationSettings = Field(default_factory=MigrationSettings)
    models: list[Model] = Field(default_factory=list)
    outputs: list[OutputSpec] = Field(default_factory=list)

    def get_model(self, name: str) -> Model | None:
        """Look up a model by name."""
        for model in self.models:
            if model.name == name:
                return model
        return None

    def snapshot(self, model: Model) -> SchemaSnapshot:
        """Build the schema snapshot a model's configuration describes.

        A ``belongs_to`` column that is not declared as a field is added
        as an indexed column typed like the parent's referenced column.
        """
        fields = [f.to_spec() for f in model.fields]
        parent = None
        if model.belongs_to is not None:
            link = model.belongs_to
            parent_model = self.get_model(link.model)
            parent_table = (
                parent_model.table_name if parent_model else default_table_name(link.model)
            )
            parent = Relationship(
                model=link.model,
                table=parent_table,
                column=link.column or f"{snake_case(link.model)}_id",
                references=link.references,
                on_delete=link.on_delete,
            )
            if all(f.name != parent.column for f in fields):
                ref_type = "bigint"
                if parent_model is not None:
                    for pf in parent_model.fields:
                        if pf.name == link.references:
                            ref_type = pf.sql_type
                fields.append(FieldSpec(
                    name=parent.column,
                    sql_type=ref_type,
                    nullable=normalize_on_delete(link.on_delete) == "set_null",
                    indexed=True,
                ))

        return SchemaSnapshot(
            model_name=model.name,
            table=model.table_name,
            fields=tuple(fields),
            indexes=tuple(
                IndexSpec(name=i.name, columns=tuple(i.columns), unique=i.unique)
                for i in model.indexes
            ),
            parent=parent,
        )
