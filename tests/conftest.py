"""
Shared pytest fixtures for the SQLGate test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite)
    - session: Per-test app context + table recreate + cache flush (autouse)
    - client: Flask test client
    - admin: username holding the administrator role
    - target_db: path of a scratch SQLite file used as the target database
    - instance: DBInstance pointing at target_db
    - make_order: factory submitting an order through the service layer
    - query_target: run a query against target_db
"""

import os
import sqlite3

import pytest
from cryptography.fernet import Fernet

os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

from sqlgate import create_app  # noqa: E402
from sqlgate.models import db as _db  # noqa: E402
from sqlgate.models.instance import DBInstance  # noqa: E402
from sqlgate.models.permission import UserRole  # noqa: E402
from sqlgate.services import cache_service  # noqa: E402


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(autouse=True)
def session(app):
    """Per-test: open app context, recreate tables, flush the cache."""
    with app.app_context():
        _db.create_all()
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        _db.session.rollback()
        _db.session.remove()
        _db.drop_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def admin():
    _db.session.add(UserRole(username="root", role="admin"))
    _db.session.commit()
    return "root"


@pytest.fixture()
def target_db(tmp_path):
    """A SQLite file with one small table to run orders against."""
    path = str(tmp_path / "target.db")
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, age INTEGER);
        INSERT INTO users (name, age) VALUES ('alice', 30), ('bob', 25), ('carol', 41);
        """
    )
    conn.commit()
    conn.close()
    return path


@pytest.fixture()
def instance(target_db):
    inst = DBInstance(
        db_type="SQLite",
        use_type="ORDER",
        hostname=target_db,
        port=0,
        remark="scratch target",
        inspect_params={},
    )
    _db.session.add(inst)
    _db.session.commit()
    return inst


@pytest.fixture()
def make_order(instance):
    """Submit an order; keyword arguments override the defaults."""
    from sqlgate.services import order_service

    def _make(content="UPDATE users SET age = 31 WHERE name = 'alice'", sql_type="DML",
              applicant="alice", approvers=("bob",), **extra):
        data = {
            "title": "test order",
            "sql_type": sql_type,
            "instance_id": instance.instance_id,
            "content": content,
            "approvers": list(approvers),
        }
        data.update(extra)
        return order_service.submit_order(data, applicant)

    return _make


@pytest.fixture()
def query_target(target_db):
    """Run a query against the target SQLite file."""

    def _query(sql):
        conn = sqlite3.connect(target_db)
        try:
            return conn.execute(sql).fetchall()
        finally:
            conn.close()

    return _query
