"""
SQL text helpers shared by the synthesizer and the simulator.

Splitting scripts into statements, splitting lists at top-level commas,
whitespace tokenizing that respects quotes and parentheses, and
identifier quoting.
"""

from __future__ import annotations

import re

_SAFE_IDENT = re.compile(r"[a-z_][a-z0-9_]*")

# Words that must be quoted when used as a column or table name.
_RESERVED = frozenset({
    "all", "and", "any", "as", "asc", "both", "case", "cast", "check", "collate",
    "column", "constraint", "create", "default", "desc", "distinct", "do", "else",
    "end", "except", "false", "for", "foreign", "from", "grant", "group", "having",
    "in", "into", "is", "join", "leading", "limit", "not", "null", "offset", "on",
    "only", "or", "order", "primary", "references", "select", "table", "then", "to",
    "trailing", "true", "union", "unique", "user", "using", "when", "where", "with",
})


def quote_ident(name: str) -> str:
    """Quote an identifier unless it is a plain lower-case word."""
    if _SAFE_IDENT.fullmatch(name) and name not in _RESERVED:
        return name
    return '"' + name.replace('"', '""') + '"'


def unquote_ident(token: str) -> str:
    """Resolve an identifier token the way PostgreSQL does.

    Quoted names keep their exact spelling; bare names fold to lower
    case. A schema qualifier (``public.reports``) is dropped.
    """
    token = token.strip()
    parts = split_top_level(token, ".")
    last = parts[-1].strip() if parts else token
    if len(last) >= 2 and last[0] == last[-1] == '"':
        return last[1:-1].replace('""', '"')
    return last.lower()


def strip_comments(sql: str) -> str:
    """Remove ``--`` line comments and ``/* */`` blocks outside quotes."""
    out: list[str] = []
    i = 0
    quote: str | None = None
    while i < len(sql):
        ch = sql[i]
        if quote:
            out.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
            continue
        if sql.startswith("--", i):
            end = sql.find("\n", i)
            i = len(sql) if end == -1 else end
            continue
        if sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = len(sql) if end == -1 else end + 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on ``sep`` where it is outside quotes and parentheses."""
    out: list[str] = []
    buf: list[str] = []
    depth = 0
    quote: str | None = None
    for ch in text:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        elif ch == sep and depth == 0:
            out.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    out.append("".join(buf))
    return out


def split_statements(sql: str) -> list[str]:
    """Split a SQL script into statements, without trailing semicolons.

    Dollar-quoted bodies (``$$ ... $$``) are kept whole.
    """
    sql = strip_comments(sql)
    statements: list[str] = []
    for chunk in _split_outside_dollar_quotes(sql):
        stmt = " ".join(chunk.split())
        if stmt:
            statements.append(stmt)
    return statements


def _split_outside_dollar_quotes(sql: str) -> list[str]:
    pieces: list[str] = []
    buf: list[str] = []
    depth = 0
    quote: str | None = None
    dollar: str | None = None
    i = 0
    while i < len(sql):
        ch = sql[i]
        if dollar:
            if sql.startswith(dollar, i):
                buf.append(dollar)
                i += len(dollar)
                dollar = None
                continue
            buf.append(ch)
            i += 1
            continue
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch == "$":
            m = re.match(r"\$\w*\$", sql[i:])
            if m:
                dollar = m.group(0)
                buf.append(dollar)
                i += len(dollar)
                continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        elif ch == ";" and depth == 0:
            pieces.append("".join(buf))
            buf = []
            i += 1
            continue
        buf.append(ch)
        i += 1
    pieces.append("".join(buf))
    return pieces


def tokenize(text: str) -> list[str]:
    """Whitespace tokens, keeping quoted and parenthesized text whole.

    ``numeric(10, 2)`` is one token; ``reports (id)`` is two.
    """
    tokens: list[str] = []
    buf: list[str] = []
    depth = 0
    quote: str | None = None
    for ch in text:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(0, depth - 1)
        elif ch.isspace() and depth == 0:
            if buf:
                tokens.append("".join(buf))
                buf = []
            continue
        buf.append(ch)
    if buf:
        tokens.append("".join(buf))
    return tokens


def paren_list(text: str) -> list[str]:
    """Items of a parenthesized list such as ``(a, b DESC)``."""
    text = text.strip()
    if text.startswith("(") and text.endswith(")"):
        text = text[1:-1]
    return [item.strip() for item in split_top_level(text) if item.strip()]
