"""
SQL text helpers built on sqlparse.

- ``split_statements``: comment-free, semicolon-free statements in source order
- ``statement_kind``: DDL / DML / SELECT / UNKNOWN by leading keyword
- ``check_sql_type``: reject content whose statements do not fit the order kind
- ``parse_alter_table``: pull (schema, table, clause) out of an ALTER TABLE
"""

import re

import sqlparse
from sqlparse import tokens as T

from sqlgate.core.exceptions import ValidationError

DDL = "DDL"
DML = "DML"
SELECT = "SELECT"
UNKNOWN = "UNKNOWN"

_KEYWORD_KINDS = {
    "ALTER": DDL,
    "CREATE": DDL,
    "DROP": DDL,
    "TRUNCATE": DDL,
    "RENAME": DDL,
    "INSERT": DML,
    "UPDATE": DML,
    "DELETE": DML,
    "REPLACE": DML,
    "SELECT": SELECT,
}

_IDENT = r"(?:`[^`]+`|[\w$]+)"
_ALTER_RE = re.compile(
    rf"^\s*ALTER\s+(?:ONLINE\s+|IGNORE\s+)?TABLE\s+({_IDENT})(?:\s*\.\s*({_IDENT}))?\s+(.+)$",
    re.IGNORECASE | re.DOTALL,
)


def split_statements(sql_text: str) -> list[str]:
    """Split raw content into individual statements, dropping comments and blanks."""
    statements = []
    for raw in sqlparse.split(sql_text or ""):
        stmt = sqlparse.format(raw, strip_comments=True).strip().rstrip(";").strip()
        if stmt:
            statements.append(stmt)
    return statements


def statement_kind(statement: str) -> str:
    parsed = sqlparse.parse(statement)
    if not parsed:
        return UNKNOWN
    stmt = parsed[0]
    first = stmt.token_first(skip_cm=True, skip_ws=True)
    if first is None:
        return UNKNOWN
    if first.ttype in T.Keyword.CTE:
        # WITH ... <dml>
        return _KEYWORD_KINDS.get(stmt.get_type(), UNKNOWN)
    return _KEYWORD_KINDS.get(first.normalized.upper(), UNKNOWN)


def check_sql_type(sql_text: str, sql_type: str) -> list[tuple[str, str]]:
    """Validate that content matches the order's statement kind.

    DML orders accept only DML. DDL orders need at least one DDL statement
    and may carry follow-up DML (e.g. a backfill). EXPORT orders accept only
    SELECT. Returns ``[(statement, kind), ...]`` on success.

    Raises:
        ValidationError: on empty content, an unsupported statement or a
            kind mismatch.
    """
    statements = split_statements(sql_text)
    if not statements:
        raise ValidationError("No SQL statement found")

    classified = [(stmt, statement_kind(stmt)) for stmt in statements]
    if sql_type == DML:
        allowed = {DML}
    elif sql_type == DDL:
        allowed = {DDL, DML}
    elif sql_type == "EXPORT":
        allowed = {SELECT}
    else:
        raise ValidationError(f"Unsupported sql_type: {sql_type}")

    for index, (stmt, kind) in enumerate(classified, start=1):
        if kind not in allowed:
            raise ValidationError(
                f"Statement {index} is {kind}, not allowed in a {sql_type} order",
                details={"statement": stmt, "position": index, "kind": kind},
            )
    if sql_type == DDL and not any(kind == DDL for _, kind in classified):
        raise ValidationError("A DDL order must contain at least one DDL statement")
    return classified


def _unquote(identifier: str | None) -> str | None:
    if identifier is None:
        return None
    return identifier.strip("`")


def parse_alter_table(statement: str) -> tuple[str | None, str, str] | None:
    """Return ``(schema, table, alter_clause)`` or None if not an ALTER TABLE."""
    match = _ALTER_RE.match(statement or "")
    if not match:
        return None
    first, second, clause = match.groups()
    if second is None:
        return None, _unquote(first), clause.strip()
    return _unquote(first), _unquote(second), clause.strip()
