"""
SQL audit collaborator.

Contract: ``check(sql_text, db_type, params) -> [AuditFinding]``. Any finding
whose level is not INFO blocks order submission; findings are always
returned to the caller.

The default rule set is deliberately small. Another auditor can be installed
with ``app.extensions["sql_auditor"] = MyAuditor()`` as long as it exposes the
same ``check`` method.
"""

import re
from dataclasses import asdict, dataclass

import sqlparse
from flask import current_app
from sqlparse.sql import Where

from sqlgate.services import sql_text

INFO = "INFO"
WARNING = "WARNING"
ERROR = "ERROR"

_INSERT_NO_COLUMNS_RE = re.compile(
    r"^\s*(?:INSERT|REPLACE)\s+(?:IGNORE\s+)?(?:INTO\s+)?[`\w$.]+\s*(?:VALUES?|SELECT)\b",
    re.IGNORECASE,
)


@dataclass
class AuditFinding:
    level: str
    message: str
    fix_suggestion: str = ""
    sql: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def _rule_recognised(stmt, kind):
    if kind == sql_text.UNKNOWN:
        return AuditFinding(ERROR, "Statement type is not supported",
                            "Only DDL, DML and SELECT statements can be submitted")
    return None


def _rule_where_required(stmt, kind):
    parsed = sqlparse.parse(stmt)[0]
    first = parsed.token_first(skip_cm=True, skip_ws=True)
    if first is None or first.normalized.upper() not in ("UPDATE", "DELETE"):
        return None
    if any(isinstance(token, Where) for token in parsed.tokens):
        return None
    return AuditFinding(ERROR, f"{first.normalized.upper()} without WHERE clause",
                        "Add a WHERE condition limiting the affected rows")


def _rule_destructive(stmt, kind):
    head = stmt.lstrip().split(None, 1)[0].upper()
    if head in ("DROP", "TRUNCATE"):
        return AuditFinding(WARNING, f"{head} permanently removes data",
                            "Rename the object first and drop it in a later order")
    return None


def _rule_alter_target(stmt, kind):
    if not stmt.lstrip().upper().startswith("ALTER TABLE"):
        return None
    parsed = sql_text.parse_alter_table(stmt)
    if parsed is None or not parsed[1]:
        return AuditFinding(ERROR, "Cannot resolve the table name of ALTER TABLE",
                            "Use ALTER TABLE [schema.]table <changes>")
    return None


def _rule_insert_columns(stmt, kind):
    if kind == sql_text.DML and _INSERT_NO_COLUMNS_RE.match(stmt):
        return AuditFinding(WARNING, "INSERT without explicit column list",
                            "List the target columns: INSERT INTO t (a, b) VALUES ...")
    return None


DEFAULT_RULES = (
    ("recognised_statement", _rule_recognised),
    ("where_required", _rule_where_required),
    ("destructive_statement", _rule_destructive),
    ("alter_target", _rule_alter_target),
    ("insert_columns", _rule_insert_columns),
)


class DefaultAuditor:
    """Rule-based auditor; each rule inspects one statement."""

    def __init__(self, rules=DEFAULT_RULES):
        self.rules = tuple(rules)

    def check(self, sql_content: str, db_type: str, params: dict | None = None) -> list[AuditFinding]:
        disabled = set((params or {}).get("disabled_rules") or ())
        findings = []
        for stmt in sql_text.split_statements(sql_content):
            kind = sql_text.statement_kind(stmt)
            issues = [
                finding
                for name, rule in self.rules
                if name not in disabled and (finding := rule(stmt, kind)) is not None
            ]
            if not issues:
                issues = [AuditFinding(INFO, "OK")]
            for finding in issues:
                finding.sql = stmt
            findings.extend(issues)
        return findings


def get_auditor():
    return current_app.extensions.get("sql_auditor") or DefaultAuditor()


def is_blocking(findings: list[AuditFinding]) -> bool:
    return any(f.level != INFO for f in findings)
