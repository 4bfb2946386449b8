"""
SQL text helpers and the default auditor.

Test blocks:
  1. Statement splitting
  2. Statement kind classification
  3. Order-kind checks (DML / DDL / EXPORT)
  4. ALTER TABLE parsing
  5. Default audit rules
"""

import pytest

from sqlgate.core.exceptions import ValidationError
from sqlgate.services import sql_audit
from sqlgate.services.sql_text import (
    check_sql_type,
    parse_alter_table,
    split_statements,
    statement_kind,
)


class TestSplitStatements:
    def test_splits_on_semicolons_in_source_order(self):
        stmts = split_statements("ALTER TABLE t ADD c INT; UPDATE t SET c = 1 WHERE id = 1;")
        assert stmts == ["ALTER TABLE t ADD c INT", "UPDATE t SET c = 1 WHERE id = 1"]

    def test_drops_comments_and_blank_statements(self):
        stmts = split_statements("-- first\nDELETE FROM t WHERE id = 1;\n;\n  ;")
        assert stmts == ["DELETE FROM t WHERE id = 1"]

    def test_semicolon_inside_string_does_not_split(self):
        stmts = split_statements("INSERT INTO t (a) VALUES ('x;y')")
        assert len(stmts) == 1

    def test_empty_content(self):
        assert split_statements("") == []
        assert split_statements(None) == []


class TestStatementKind:
    @pytest.mark.parametrize("sql,kind", [
        ("ALTER TABLE t ADD c INT", "DDL"),
        ("create table t (id int)", "DDL"),
        ("DROP TABLE t", "DDL"),
        ("INSERT INTO t (a) VALUES (1)", "DML"),
        ("update t set a = 1 where id = 2", "DML"),
        ("DELETE FROM t WHERE id = 1", "DML"),
        ("SELECT * FROM t", "SELECT"),
        ("WITH x AS (SELECT 1 AS a) SELECT a FROM x", "SELECT"),
        ("SHOW TABLES", "UNKNOWN"),
    ])
    def test_kinds(self, sql, kind):
        assert statement_kind(sql) == kind


class TestCheckSqlType:
    def test_dml_order_accepts_only_dml(self):
        result = check_sql_type("UPDATE t SET a = 1 WHERE id = 1; DELETE FROM t WHERE id = 2", "DML")
        assert [kind for _, kind in result] == ["DML", "DML"]

    def test_dml_order_rejects_ddl(self):
        with pytest.raises(ValidationError) as exc:
            check_sql_type("ALTER TABLE t ADD c INT; UPDATE t SET c = 1", "DML")
        assert exc.value.details["position"] == 1

    def test_ddl_order_allows_follow_up_dml(self):
        result = check_sql_type("ALTER TABLE t ADD c INT; UPDATE t SET c = 1", "DDL")
        assert [kind for _, kind in result] == ["DDL", "DML"]

    def test_ddl_order_needs_a_ddl_statement(self):
        with pytest.raises(ValidationError, match="at least one DDL"):
            check_sql_type("UPDATE t SET c = 1 WHERE id = 1", "DDL")

    def test_ddl_order_rejects_select(self):
        with pytest.raises(ValidationError):
            check_sql_type("ALTER TABLE t ADD c INT; SELECT * FROM t", "DDL")

    def test_export_order_accepts_only_select(self):
        assert check_sql_type("SELECT * FROM t", "EXPORT") == [("SELECT * FROM t", "SELECT")]
        with pytest.raises(ValidationError):
            check_sql_type("DELETE FROM t WHERE id = 1", "EXPORT")

    def test_empty_content_rejected(self):
        with pytest.raises(ValidationError, match="No SQL statement"):
            check_sql_type("  ;  ;", "DML")

    def test_unknown_order_kind(self):
        with pytest.raises(ValidationError, match="Unsupported"):
            check_sql_type("SELECT 1", "QUERY")


class TestParseAlterTable:
    def test_plain_table(self):
        assert parse_alter_table("ALTER TABLE users ADD COLUMN x INT") == (None, "users", "ADD COLUMN x INT")

    def test_schema_qualified_with_backticks(self):
        assert parse_alter_table("alter table `shop`.`users` drop column x") == ("shop", "users", "drop column x")

    def test_not_an_alter(self):
        assert parse_alter_table("UPDATE users SET a = 1") is None
        assert parse_alter_table("") is None


class TestDefaultAuditor:
    def _levels(self, sql, params=None):
        findings = sql_audit.DefaultAuditor().check(sql, "MySQL", params)
        return [(f.level, f.message) for f in findings]

    def test_clean_statement_reports_ok(self):
        findings = sql_audit.DefaultAuditor().check("UPDATE t SET a = 1 WHERE id = 1", "MySQL")
        assert [f.level for f in findings] == ["INFO"]
        assert findings[0].sql == "UPDATE t SET a = 1 WHERE id = 1"
        assert not sql_audit.is_blocking(findings)

    def test_update_without_where_is_an_error(self):
        levels = self._levels("UPDATE t SET a = 1")
        assert ("ERROR", "UPDATE without WHERE clause") in levels

    def test_delete_without_where_is_an_error(self):
        assert ("ERROR", "DELETE without WHERE clause") in self._levels("DELETE FROM t")

    def test_drop_is_a_warning_and_blocks(self):
        findings = sql_audit.DefaultAuditor().check("DROP TABLE t", "MySQL")
        assert [f.level for f in findings] == ["WARNING"]
        assert sql_audit.is_blocking(findings)

    def test_insert_without_columns(self):
        levels = self._levels("INSERT INTO t VALUES (1, 2)")
        assert ("WARNING", "INSERT without explicit column list") in levels
        assert self._levels("INSERT INTO t (a, b) VALUES (1, 2)") == [("INFO", "OK")]

    def test_unrecognised_statement(self):
        assert self._levels("SHOW TABLES")[0][0] == "ERROR"

    def test_disabled_rules_are_skipped(self):
        levels = self._levels("UPDATE t SET a = 1", {"disabled_rules": ["where_required"]})
        assert levels == [("INFO", "OK")]

    def test_one_finding_list_per_statement(self):
        findings = sql_audit.DefaultAuditor().check(
            "UPDATE t SET a = 1 WHERE id = 1; DELETE FROM t", "MySQL"
        )
        assert [f.level for f in findings] == ["INFO", "ERROR"]
