"""
Schema simulator — apply PostgreSQL DDL to an in-memory schema.

Used to verify synthesized migrations (old schema + up statements must
give the new schema, new + down must give the old one) and to replay a
migrations directory against the stored snapshots.

Understood statements:
    CREATE TABLE (inline and table constraints), DROP TABLE,
    ALTER TABLE (ADD/DROP/ALTER/RENAME COLUMN, ADD/DROP/RENAME
    CONSTRAINT, RENAME TO), CREATE [UNIQUE] INDEX, DROP INDEX,
    ALTER INDEX ... RENAME TO.

The simulator is stricter than PostgreSQL: dropping a column that an
index or foreign key still uses fails unless CASCADE is given. Data
statements (INSERT, UPDATE, ...) and transaction control are no-ops.
Any other statement raises in strict mode and is skipped otherwise.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from trellis.core.models.schema import (
    FieldSpec,
    IndexSpec,
    Relationship,
    SchemaSnapshot,
    foreign_key_name,
    implicit_index_name,
    normalize_on_delete,
    unique_constraint_name,
)
from trellis.core.services.sql_text import (
    paren_list,
    split_statements,
    split_top_level,
    tokenize,
    unquote_ident,
)

logger = logging.getLogger(__name__)

# Words that end a column type or a DEFAULT expression.
_COLUMN_KEYWORDS = frozenset({
    "primary", "not", "null", "default", "unique", "references",
    "check", "constraint", "collate", "generated",
})

_TABLE_CONSTRAINTS = frozenset({"constraint", "primary", "unique", "foreign", "check"})

# Statements that never change the schema.
_NO_OP = frozenset({
    "begin", "commit", "rollback", "start", "end", "set", "reset",
    "insert", "update", "delete", "select", "with", "analyze", "vacuum",
    "comment", "grant", "revoke", "lock", "notify", "do",
})


class SimulationError(Exception):
    """A statement cannot be applied to the simulated schema."""

    def __init__(self, message: str, statement: str = ""):
        super().__init__(message)
        self.message = message
        self.statement = statement

    def __str__(self) -> str:
        if self.statement:
            return f"{self.message} (in: {self.statement})"
        return self.message


# ── Internal schema state ───────────────────────────────────────────


@dataclass
class _Column:
    name: str
    sql_type: str
    not_null: bool = False
    default: str | None = None


@dataclass
class _ForeignKey:
    column: str
    ref_table: str
    ref_column: str = "id"
    on_delete: str = "no_action"


@dataclass
class _Index:
    name: str
    table: str
    columns: tuple[str, ...]
    unique: bool = False


@dataclass
class _Constraint:
    kind: str  # primary | unique | foreign | check
    name: str | None
    columns: tuple[str, ...] = ()
    foreign_key: _ForeignKey | None = None


@dataclass
class _Table:
    name: str
    columns: dict[str, _Column] = field(default_factory=dict)
    primary_key: tuple[str, ...] = ()
    pk_name: str = ""
    uniques: dict[str, tuple[str, ...]] = field(default_factory=dict)
    foreign_keys: dict[str, _ForeignKey] = field(default_factory=dict)

    def column(self, name: str) -> _Column:
        col = self.columns.get(name)
        if col is None:
            raise SimulationError(f'column "{name}" of relation "{self.name}" does not exist')
        return col

    def constraint_names(self) -> set[str]:
        names = set(self.uniques) | set(self.foreign_keys)
        if self.pk_name:
            names.add(self.pk_name)
        return names


def _split_parens(token: str) -> tuple[str, str | None]:
    """``reports(id)`` -> (``reports``, ``(id)``); quotes are respected."""
    quote: str | None = None
    for i, ch in enumerate(token):
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            return token[:i], token[i:]
    return token, None


def _word(token: str) -> str:
    return _split_parens(token)[0].lower()


class _Cursor:
    """Sequential reader over a statement's tokens."""

    def __init__(self, tokens: list[str]):
        self.tokens = tokens
        self.pos = 0

    def done(self) -> bool:
        return self.pos >= len(self.tokens)

    def peek(self, offset: int = 0) -> str:
        i = self.pos + offset
        return _word(self.tokens[i]) if i < len(self.tokens) else ""

    def next(self) -> str:
        if self.done():
            raise SimulationError("unexpected end of statement")
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def accept(self, *words: str) -> bool:
        if all(self.peek(i) == w and "(" not in self.tokens[self.pos + i]
               for i, w in enumerate(words)):
            self.pos += len(words)
            return True
        return False

    def expect(self, *words: str) -> None:
        if not self.accept(*words):
            found = self.tokens[self.pos] if not self.done() else "end of statement"
            raise SimulationError(f"expected {' '.join(words).upper()}, found {found!r}")

    def take_with_parens(self) -> tuple[str, str | None]:
        """A name and the parenthesized list that follows it, if any."""
        head, parens = _split_parens(self.next())
        if parens is None and not self.done() and self.tokens[self.pos].startswith("("):
            parens = self.next()
        return head, parens

    def rest(self) -> str:
        text = " ".join(self.tokens[self.pos:])
        self.pos = len(self.tokens)
        return text


# ── Database ────────────────────────────────────────────────────────


class SimulatedDatabase:
    """Tables and indexes of one simulated PostgreSQL schema.

    Args:
        strict: Raise on statements the simulator does not understand
            instead of skipping them.
        check_references: Require the referenced table and column of
            every new foreign key to exist. Single-model verification
            leaves this off since the parent table is not loaded.
    """

    def __init__(self, *, strict: bool = True, check_references: bool = False):
        self.strict = strict
        self.check_references = check_references
        self.tables: dict[str, _Table] = {}
        self.indexes: dict[str, _Index] = {}
        self._model_names: dict[str, str] = {}

    # ── Snapshot conversion ─────────────────────────────────────

    def load_snapshot(self, snapshot: SchemaSnapshot) -> None:
        """Create the table described by ``snapshot`` without running SQL."""
        name = snapshot.table
        if name in self.tables:
            raise SimulationError(f'relation "{name}" already exists')
        table = _Table(name)
        for f in snapshot.fields:
            table.columns[f.name] = _Column(f.name, f.sql_type, f.not_null, f.default)
            if f.unique and not f.primary_key:
                table.uniques[unique_constraint_name(name, f.name)] = (f.name,)
        pk = tuple(f.name for f in snapshot.fields if f.primary_key)
        if pk:
            table.primary_key = pk
            table.pk_name = f"{name}_pkey"
        if snapshot.parent is not None:
            p = snapshot.parent
            table.foreign_keys[foreign_key_name(name, p.column)] = _ForeignKey(
                p.column, p.table, p.references, normalize_on_delete(p.on_delete)
            )
        self.tables[name] = table
        for idx in snapshot.effective_indexes().values():
            self.indexes[idx.name] = _Index(idx.name, name, tuple(idx.columns), idx.unique)
        self._model_names[name] = snapshot.model_name
        if snapshot.parent is not None:
            self._model_names.setdefault(snapshot.parent.table, snapshot.parent.model)

    def snapshot(self, table: str, model_name: str | None = None) -> SchemaSnapshot:
        """Read one table back as a ``SchemaSnapshot``."""
        t = self._table(table)
        if len(t.foreign_keys) > 1:
            raise SimulationError(
                f'relation "{table}" has {len(t.foreign_keys)} foreign keys; '
                "a model has at most one parent"
            )
        single_uniques = {cols[0] for cols in t.uniques.values() if len(cols) == 1}
        fields = tuple(
            FieldSpec(
                name=col.name,
                sql_type=col.sql_type,
                nullable=not col.not_null,
                default=col.default,
                unique=col.name in single_uniques,
                primary_key=col.name in t.primary_key,
            )
            for col in t.columns.values()
        )
        indexes = [
            IndexSpec(name=idx.name, columns=idx.columns, unique=idx.unique)
            for idx in self.indexes.values()
            if idx.table == table
        ]
        indexes += [
            IndexSpec(name=name, columns=cols, unique=True)
            for name, cols in t.uniques.items()
            if len(cols) > 1
        ]
        parent = None
        for fk in t.foreign_keys.values():
            parent = Relationship(
                model=self._model_names.get(fk.ref_table, fk.ref_table),
                table=fk.ref_table,
                column=fk.column,
                references=fk.ref_column,
                on_delete=fk.on_delete,
            )
        return SchemaSnapshot(
            model_name=model_name or self._model_names.get(table, table),
            table=table,
            fields=fields,
            indexes=tuple(sorted(indexes, key=lambda i: i.name)),
            parent=parent,
        )

    # ── Statement dispatch ──────────────────────────────────────

    def apply_sql(self, sql: str) -> None:
        for statement in split_statements(sql):
            self.apply_statement(statement)

    def apply_statement(self, statement: str) -> None:
        """Apply one statement (no trailing semicolon needed)."""
        statement = statement.strip().rstrip(";").strip()
        tokens = tokenize(statement)
        if not tokens:
            return
        cur = _Cursor(tokens)
        try:
            self._dispatch(cur, statement)
        except SimulationError as e:
            e.statement = e.statement or statement
            raise

    def _dispatch(self, cur: _Cursor, statement: str) -> None:
        verb = _word(cur.next())
        if verb == "create":
            for modifier in ("temporary", "temp", "unlogged"):
                if cur.accept(modifier):
                    break
            if cur.accept("table"):
                self._create_table(cur)
                return
            unique = cur.accept("unique")
            if cur.accept("index"):
                self._create_index(cur, unique)
                return
        elif verb == "drop":
            if cur.accept("table"):
                self._drop_table(cur)
                return
            if cur.accept("index"):
                self._drop_index(cur)
                return
        elif verb == "alter":
            if cur.accept("table"):
                self._alter_table(cur)
                return
            if cur.accept("index"):
                self._alter_index(cur)
                return
        elif verb in _NO_OP:
            logger.debug("Ignoring non-DDL statement: %s", statement[:80])
            return
        self._unsupported(statement)

    def _unsupported(self, what: str) -> None:
        if self.strict:
            raise SimulationError("unsupported statement", what)
        logger.warning("Skipping unsupported statement: %s", what[:80])

    # ── CREATE / DROP TABLE ─────────────────────────────────────

    def _create_table(self, cur: _Cursor) -> None:
        if_not_exists = cur.accept("if", "not", "exists")
        raw_name, body = cur.take_with_parens()
        name = unquote_ident(raw_name)
        if body is None:
            raise SimulationError(f'CREATE TABLE "{name}" has no column list')
        if name in self.tables:
            if if_not_exists:
                return
            raise SimulationError(f'relation "{name}" already exists')

        table = _Table(name)
        constraints: list[_Constraint] = []
        for element in paren_list(body):
            elem = _Cursor(tokenize(element))
            if elem.peek() in _TABLE_CONSTRAINTS:
                constraints.append(self._table_constraint(elem))
                continue
            column, inline = self._column_def(elem)
            if column.name in table.columns:
                raise SimulationError(f'column "{column.name}" specified more than once')
            table.columns[column.name] = column
            constraints.extend(inline)

        self.tables[name] = table
        try:
            for constraint in constraints:
                self._add_constraint(table, constraint)
        except SimulationError:
            del self.tables[name]
            raise

    def _drop_table(self, cur: _Cursor) -> None:
        if_exists = cur.accept("if", "exists")
        names, cascade = self._name_list(cur)
        for name in names:
            if name not in self.tables:
                if if_exists:
                    continue
                raise SimulationError(f'table "{name}" does not exist')
            for other in self.tables.values():
                if other.name == name:
                    continue
                for fk_name, fk in list(other.foreign_keys.items()):
                    if fk.ref_table != name:
                        continue
                    if not cascade:
                        raise SimulationError(
                            f'cannot drop table "{name}": constraint "{fk_name}" '
                            f'on table "{other.name}" depends on it'
                        )
                    del other.foreign_keys[fk_name]
            del self.tables[name]
            for idx_name in [n for n, idx in self.indexes.items() if idx.table == name]:
                del self.indexes[idx_name]

    def _name_list(self, cur: _Cursor) -> tuple[list[str], bool]:
        """Comma-separated names followed by an optional CASCADE/RESTRICT."""
        tokens = tokenize(cur.rest())
        cascade = False
        if tokens and tokens[-1].lower() in ("cascade", "restrict"):
            cascade = tokens.pop().lower() == "cascade"
        names = [unquote_ident(n) for n in split_top_level(" ".join(tokens)) if n.strip()]
        if not names:
            raise SimulationError("expected a name")
        return names, cascade

    # ── Column definitions and constraints ──────────────────────

    def _column_def(self, cur: _Cursor) -> tuple[_Column, list[_Constraint]]:
        name = unquote_ident(cur.next())
        type_tokens: list[str] = []
        while not cur.done() and cur.peek() not in _COLUMN_KEYWORDS:
            type_tokens.append(cur.next())
        if not type_tokens:
            raise SimulationError(f'column "{name}" has no type')
        column = _Column(name, " ".join(type_tokens))

        constraints: list[_Constraint] = []
        constraint_name: str | None = None
        while not cur.done():
            word, parens = _split_parens(cur.next())
            word = word.lower()
            if word == "constraint":
                constraint_name = unquote_ident(cur.next())
                continue
            if word == "primary":
                cur.expect("key")
                constraints.append(_Constraint("primary", constraint_name, (name,)))
                column.not_null = True
            elif word == "not":
                cur.expect("null")
                column.not_null = True
            elif word == "null":
                column.not_null = False
            elif word == "default":
                column.default = self._expression(cur)
            elif word == "unique":
                constraints.append(_Constraint("unique", constraint_name, (name,)))
            elif word == "references":
                fk = self._references(cur, name)
                constraints.append(_Constraint("foreign", constraint_name, (name,), fk))
            elif word == "check":
                if parens is None:
                    cur.next()
            elif word == "collate":
                cur.next()
            elif word == "generated":
                while not cur.done() and cur.peek() not in _COLUMN_KEYWORDS:
                    cur.next()
            else:
                raise SimulationError(f'unexpected "{word}" in definition of column "{name}"')
            constraint_name = None
        return column, constraints

    def _expression(self, cur: _Cursor) -> str | None:
        parts = [cur.next()]
        while not cur.done() and cur.peek() not in _COLUMN_KEYWORDS:
            parts.append(cur.next())
        text = " ".join(parts)
        return None if text.lower() == "null" else text

    def _references(self, cur: _Cursor, column: str) -> _ForeignKey:
        raw_table, cols = cur.take_with_parens()
        ref_table = unquote_ident(raw_table)
        if cols is not None:
            ref_cols = [unquote_ident(c) for c in paren_list(cols)]
            if len(ref_cols) != 1:
                raise SimulationError("composite foreign keys are not supported")
            ref_column = ref_cols[0]
        else:
            target = self.tables.get(ref_table)
            ref_column = target.primary_key[0] if target and len(target.primary_key) == 1 else "id"

        on_delete = "no_action"
        while cur.peek() in ("on", "match"):
            if cur.accept("match"):
                cur.next()
                continue
            cur.next()
            event = cur.next().lower()
            action = cur.next().lower()
            if action in ("set", "no"):
                action = f"{action}_{cur.next().lower()}"
            if event == "delete":
                on_delete = action
        return _ForeignKey(column, ref_table, ref_column, on_delete)

    def _column_list(self, parens: str | None) -> tuple[str, ...]:
        if parens is None:
            raise SimulationError("expected a column list")
        return tuple(unquote_ident(tokenize(c)[0]) for c in paren_list(parens))

    def _table_constraint(self, cur: _Cursor) -> _Constraint:
        name = None
        if cur.accept("constraint"):
            name = unquote_ident(cur.next())
        word, parens = _split_parens(cur.next())
        word = word.lower()
        if word == "primary":
            _, parens = cur.take_with_parens()
            return _Constraint("primary", name, self._column_list(parens))
        if word == "unique":
            if parens is None:
                parens = cur.next()
            return _Constraint("unique", name, self._column_list(parens))
        if word == "foreign":
            _, parens = cur.take_with_parens()
            columns = self._column_list(parens)
            if len(columns) != 1:
                raise SimulationError("composite foreign keys are not supported")
            cur.expect("references")
            return _Constraint("foreign", name, columns, self._references(cur, columns[0]))
        if word == "check":
            cur.rest()
            return _Constraint("check", name)
        raise SimulationError(f'unsupported table constraint "{word}"')

    def _relation_exists(self, name: str) -> bool:
        if name in self.indexes:
            return True
        return any(name in t.constraint_names() for t in self.tables.values())

    def _add_constraint(self, table: _Table, c: _Constraint) -> None:
        if c.kind == "check":
            return
        for col in c.columns:
            table.column(col)

        if c.kind == "primary":
            if table.primary_key:
                raise SimulationError(f'multiple primary keys for table "{table.name}"')
            table.primary_key = c.columns
            table.pk_name = c.name or f"{table.name}_pkey"
            for col in c.columns:
                table.columns[col].not_null = True
            return

        if c.kind == "unique":
            name = c.name or (
                unique_constraint_name(table.name, c.columns[0])
                if len(c.columns) == 1
                else f"{table.name}_{'_'.join(c.columns)}_key"
            )
            if self._relation_exists(name):
                raise SimulationError(f'relation "{name}" already exists')
            table.uniques[name] = c.columns
            return

        fk = c.foreign_key
        assert fk is not None
        name = c.name or foreign_key_name(table.name, fk.column)
        if name in table.constraint_names():
            raise SimulationError(f'constraint "{name}" for relation "{table.name}" already exists')
        if self.check_references:
            target = self.tables.get(fk.ref_table)
            if target is None:
                raise SimulationError(f'relation "{fk.ref_table}" does not exist')
            target.column(fk.ref_column)
        fk.on_delete = normalize_on_delete(fk.on_delete)
        table.foreign_keys[name] = fk

    # ── ALTER TABLE ─────────────────────────────────────────────

    def _table(self, name: str) -> _Table:
        table = self.tables.get(name)
        if table is None:
            raise SimulationError(f'relation "{name}" does not exist')
        return table

    def _alter_table(self, cur: _Cursor) -> None:
        if_exists = cur.accept("if", "exists")
        cur.accept("only")
        name = unquote_ident(cur.next())
        if name not in self.tables and if_exists:
            return
        table = self._table(name)
        for action in split_top_level(cur.rest()):
            if action.strip():
                self._alter_action(table, _Cursor(tokenize(action)))

    def _alter_action(self, table: _Table, cur: _Cursor) -> None:
        verb = _word(cur.next())
        if verb == "add":
            if cur.peek() in _TABLE_CONSTRAINTS:
                self._add_constraint(table, self._table_constraint(cur))
                return
            cur.accept("column")
            if_not_exists = cur.accept("if", "not", "exists")
            column, constraints = self._column_def(cur)
            if column.name in table.columns:
                if if_not_exists:
                    return
                raise SimulationError(
                    f'column "{column.name}" of relation "{table.name}" already exists'
                )
            table.columns[column.name] = column
            for constraint in constraints:
                self._add_constraint(table, constraint)
            return

        if verb == "drop":
            if cur.accept("constraint"):
                if_exists = cur.accept("if", "exists")
                name = unquote_ident(cur.next())
                self._drop_constraint(table, name, if_exists)
                return
            cur.accept("column")
            if_exists = cur.accept("if", "exists")
            name = unquote_ident(cur.next())
            cascade = cur.accept("cascade")
            self._drop_column(table, name, cascade=cascade, if_exists=if_exists)
            return

        if verb == "alter":
            cur.accept("column")
            column = table.column(unquote_ident(cur.next()))
            self._alter_column(table, column, cur)
            return

        if verb == "rename":
            if cur.accept("to"):
                self._rename_table(table, unquote_ident(cur.next()))
                return
            if cur.accept("constraint"):
                old = unquote_ident(cur.next())
                cur.expect("to")
                self._rename_constraint(table, old, unquote_ident(cur.next()))
                return
            cur.accept("column")
            old = unquote_ident(cur.next())
            cur.expect("to")
            self._rename_column(table, old, unquote_ident(cur.next()))
            return

        self._unsupported(f"ALTER TABLE {table.name} {verb.upper()} ...")

    def _alter_column(self, table: _Table, column: _Column, cur: _Cursor) -> None:
        if cur.accept("type") or cur.accept("set", "data", "type"):
            type_tokens: list[str] = []
            while not cur.done() and cur.peek() not in ("using", "collate"):
                type_tokens.append(cur.next())
            if not type_tokens:
                raise SimulationError(f'missing type for column "{column.name}"')
            column.sql_type = " ".join(type_tokens)
            return
        if cur.accept("set", "not", "null"):
            column.not_null = True
            return
        if cur.accept("drop", "not", "null"):
            if column.name in table.primary_key:
                raise SimulationError(f'column "{column.name}" is in a primary key')
            column.not_null = False
            return
        if cur.accept("set", "default"):
            column.default = self._expression(cur)
            return
        if cur.accept("drop", "default"):
            column.default = None
            return
        self._unsupported(f"ALTER COLUMN {column.name} {cur.rest()}")

    def _column_users(self, table: _Table, column: str) -> list[str]:
        """Indexes and foreign keys that would break if ``column`` went away."""
        users = [
            f'index "{idx.name}"'
            for idx in self.indexes.values()
            if idx.table == table.name and column in idx.columns
        ]
        users += [
            f'constraint "{name}"'
            for name, cols in table.uniques.items()
            if column in cols and len(cols) > 1
        ]
        users += [
            f'constraint "{name}"'
            for name, fk in table.foreign_keys.items()
            if fk.column == column
        ]
        for other in self.tables.values():
            users += [
                f'constraint "{name}" on table "{other.name}"'
                for name, fk in other.foreign_keys.items()
                if fk.ref_table == table.name and fk.ref_column == column
            ]
        return users

    def _drop_column(self, table: _Table, name: str, *, cascade: bool, if_exists: bool) -> None:
        if name not in table.columns:
            if if_exists:
                return
            table.column(name)
        users = self._column_users(table, name)
        if users and not cascade:
            raise SimulationError(
                f'cannot drop column "{name}" of table "{table.name}": '
                f"{', '.join(users)} depends on it"
            )
        for idx_name in [
            n for n, idx in self.indexes.items()
            if idx.table == table.name and name in idx.columns
        ]:
            del self.indexes[idx_name]
        table.uniques = {n: cols for n, cols in table.uniques.items() if name not in cols}
        table.foreign_keys = {n: fk for n, fk in table.foreign_keys.items() if fk.column != name}
        for other in self.tables.values():
            other.foreign_keys = {
                n: fk for n, fk in other.foreign_keys.items()
                if not (fk.ref_table == table.name and fk.ref_column == name)
            }
        if name in table.primary_key:
            table.primary_key = ()
            table.pk_name = ""
        del table.columns[name]

    def _drop_constraint(self, table: _Table, name: str, if_exists: bool) -> None:
        if name in table.foreign_keys:
            del table.foreign_keys[name]
        elif name in table.uniques:
            del table.uniques[name]
        elif name and name == table.pk_name:
            table.primary_key = ()
            table.pk_name = ""
        elif not if_exists:
            raise SimulationError(
                f'constraint "{name}" of relation "{table.name}" does not exist'
            )

    def _rename_column(self, table: _Table, old: str, new: str) -> None:
        column = table.column(old)
        if new in table.columns:
            raise SimulationError(f'column "{new}" of relation "{table.name}" already exists')

        def swap(cols: Iterable[str]) -> tuple[str, ...]:
            return tuple(new if c == old else c for c in cols)

        column.name = new
        table.columns = {(new if k == old else k): v for k, v in table.columns.items()}
        table.primary_key = swap(table.primary_key)
        table.uniques = {n: swap(cols) for n, cols in table.uniques.items()}
        for fk in table.foreign_keys.values():
            if fk.column == old:
                fk.column = new
        for idx in self.indexes.values():
            if idx.table == table.name:
                idx.columns = swap(idx.columns)
        for other in self.tables.values():
            for fk in other.foreign_keys.values():
                if fk.ref_table == table.name and fk.ref_column == old:
                    fk.ref_column = new

    def _rename_constraint(self, table: _Table, old: str, new: str) -> None:
        if self._relation_exists(new):
            raise SimulationError(f'constraint "{new}" already exists')
        if old in table.foreign_keys:
            table.foreign_keys = {(new if n == old else n): fk for n, fk in table.foreign_keys.items()}
        elif old in table.uniques:
            table.uniques = {(new if n == old else n): c for n, c in table.uniques.items()}
        elif old == table.pk_name:
            table.pk_name = new
        else:
            raise SimulationError(
                f'constraint "{old}" of relation "{table.name}" does not exist'
            )

    def _rename_table(self, table: _Table, new: str) -> None:
        if new in self.tables:
            raise SimulationError(f'relation "{new}" already exists')
        old = table.name
        del self.tables[old]
        table.name = new
        self.tables[new] = table
        for idx in self.indexes.values():
            if idx.table == old:
                idx.table = new
        for other in self.tables.values():
            for fk in other.foreign_keys.values():
                if fk.ref_table == old:
                    fk.ref_table = new
        if old in self._model_names:
            self._model_names[new] = self._model_names.pop(old)

    # ── Indexes ─────────────────────────────────────────────────

    def _create_index(self, cur: _Cursor, unique: bool) -> None:
        cur.accept("concurrently")
        if_not_exists = cur.accept("if", "not", "exists")
        name = None if cur.peek() == "on" else unquote_ident(cur.next())
        cur.expect("on")
        cur.accept("only")
        raw_table, parens = cur.take_with_parens()
        if parens is None and cur.accept("using"):
            _, parens = cur.take_with_parens()
        table = self._table(unquote_ident(raw_table))
        columns = self._column_list(parens)
        for col in columns:
            table.column(col)
        name = name or implicit_index_name(table.name, "_".join(columns))
        if self._relation_exists(name):
            if if_not_exists:
                return
            raise SimulationError(f'relation "{name}" already exists')
        self.indexes[name] = _Index(name, table.name, columns, unique)

    def _drop_index(self, cur: _Cursor) -> None:
        cur.accept("concurrently")
        if_exists = cur.accept("if", "exists")
        names, _ = self._name_list(cur)
        for name in names:
            if name in self.indexes:
                del self.indexes[name]
            elif any(name in t.constraint_names() for t in self.tables.values()):
                raise SimulationError(
                    f'cannot drop index "{name}" because a constraint requires it'
                )
            elif not if_exists:
                raise SimulationError(f'index "{name}" does not exist')

    def _alter_index(self, cur: _Cursor) -> None:
        if_exists = cur.accept("if", "exists")
        old = unquote_ident(cur.next())
        if not cur.accept("rename", "to"):
            self._unsupported(f"ALTER INDEX {old} {cur.rest()}")
            return
        new = unquote_ident(cur.next())
        if old not in self.indexes:
            if if_exists:
                return
            raise SimulationError(f'relation "{old}" does not exist')
        if self._relation_exists(new):
            raise SimulationError(f'relation "{new}" already exists')
        index = self.indexes.pop(old)
        index.name = new
        self.indexes[new] = index


def apply(
    schema: SchemaSnapshot | None,
    statements: Iterable[str],
    *,
    table: str | None = None,
    model_name: str | None = None,
    strict: bool = True,
) -> SchemaSnapshot | None:
    """Apply ``statements`` to ``schema`` and return the resulting snapshot.

    Args:
        schema: Starting schema, or None for an empty database.
        statements: SQL statements, one per item.
        table: Table to read back (default: the starting schema's table).
        model_name: Model name for the result (default: the starting one).
        strict: Raise on statements the simulator does not understand.

    Returns:
        The snapshot of ``table``, or None when the table no longer exists.

    Raises:
        SimulationError: If a statement cannot be applied.
    """
    db = SimulatedDatabase(strict=strict)
    if schema is not None:
        db.load_snapshot(schema)
    for statement in statements:
        db.apply_statement(statement)

    name = table or (schema.table if schema is not None else None)
    if name is None and len(db.tables) == 1:
        name = next(iter(db.tables))
    if name is None or name not in db.tables:
        return None
    return db.snapshot(name, model_name or (schema.model_name if schema else None))
