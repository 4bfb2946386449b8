"""
gh-ost control: command validation, socket resolution and delivery.
"""

import os
import shutil
import socket
import tempfile
import threading

import pytest

from sqlgate.core.exceptions import ForbiddenError, NotFoundError, ValidationError
from sqlgate.services import cache_service, ghost_control, order_service
from sqlgate.services.execution.structural import socket_path


@pytest.fixture()
def ddl_order(make_order):
    return make_order(content="ALTER TABLE users ADD COLUMN email TEXT", sql_type="DDL", schema="shop")


@pytest.fixture()
def socket_dir(app, tmp_path, monkeypatch):
    monkeypatch.setitem(app.config, "GHOST_SOCKET_DIR", str(tmp_path))
    return str(tmp_path)


@pytest.fixture()
def control_socket():
    """A listening unix socket that records the first line it receives."""
    # Short directory: unix socket paths are limited to ~100 bytes
    directory = tempfile.mkdtemp(prefix="gh", dir="/tmp")
    path = os.path.join(directory, "ctl.sock")
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(path)
    server.listen(1)
    received = []

    def accept():
        conn, _ = server.accept()
        with conn:
            data = b""
            while not data.endswith(b"\n"):
                chunk = conn.recv(1024)
                if not chunk:
                    break
                data += chunk
            received.append(data.decode("utf-8"))

    thread = threading.Thread(target=accept, daemon=True)
    thread.start()
    yield path, received, thread
    server.close()
    shutil.rmtree(directory, ignore_errors=True)


class TestBuildCommand:
    @pytest.mark.parametrize("action", ["throttle", "unthrottle", "panic", " Throttle "])
    def test_plain_actions(self, action):
        assert ghost_control.build_command(action) == action.strip().lower()

    def test_chunk_size(self):
        assert ghost_control.build_command("chunk-size", 500) == "chunk-size=500"
        assert ghost_control.build_command("chunk-size", "1000") == "chunk-size=1000"

    @pytest.mark.parametrize("value", [0, -5, "abc", None, True, "1.5"])
    def test_invalid_chunk_size(self, value):
        with pytest.raises(ValidationError):
            ghost_control.build_command("chunk-size", value)

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            ghost_control.build_command("cut-over")


class TestResolveSocketPath:
    def test_recorded_path_wins(self, ddl_order):
        cache_service.remember_socket(ddl_order.order_id, "/tmp/recorded.sock", 60)
        assert ghost_control.resolve_socket_path(ddl_order.order_id) == "/tmp/recorded.sock"

    def test_rebuilt_from_alter_statement(self, ddl_order, socket_dir):
        expected = socket_path(socket_dir, ddl_order.order_id, "shop", "users")
        assert ghost_control.resolve_socket_path(ddl_order.order_id) == expected

    def test_dml_order_has_no_socket(self, make_order):
        order = make_order()
        with pytest.raises(NotFoundError, match="not running"):
            ghost_control.resolve_socket_path(order.order_id)

    def test_unknown_order(self):
        with pytest.raises(NotFoundError):
            ghost_control.resolve_socket_path("missing")


class TestControl:
    def test_invalid_chunk_size_never_touches_the_socket(self, ddl_order, monkeypatch):
        sent = []
        monkeypatch.setattr(ghost_control, "send_command", lambda *a, **kw: sent.append(a))
        for value in (0, -5):
            with pytest.raises(ValidationError):
                ghost_control.control(ddl_order.order_id, "chunk-size", value, "alice")
        assert sent == []

    def test_command_delivered_and_logged(self, ddl_order, control_socket):
        path, received, thread = control_socket
        cache_service.remember_socket(ddl_order.order_id, path, 60)

        result = ghost_control.control(ddl_order.order_id, "chunk-size", 500, "alice")
        thread.join(5)

        assert received == ["chunk-size=500\n"]
        assert result["message"] == "gh-ost speed adjusted chunk-size=500"
        msgs = [log.msg for log in order_service.list_op_logs(ddl_order.order_id)]
        assert msgs[-1] == "gh-ost speed adjusted chunk-size=500"

    def test_throttle_message(self, ddl_order, control_socket):
        path, received, thread = control_socket
        cache_service.remember_socket(ddl_order.order_id, path, 60)
        result = ghost_control.control(ddl_order.order_id, "throttle", None, "alice")
        thread.join(5)
        assert received == ["throttle\n"]
        assert result["message"] == "gh-ost control command sent: throttle"

    def test_missing_socket_is_not_found(self, ddl_order, socket_dir):
        with pytest.raises(NotFoundError, match="task not found or not running"):
            ghost_control.control(ddl_order.order_id, "throttle", None, "alice")

    def test_executors_only(self, make_order):
        order = make_order(content="ALTER TABLE users ADD COLUMN email TEXT", sql_type="DDL",
                           schema="shop", executors=["carol"])
        with pytest.raises(ForbiddenError):
            ghost_control.control(order.order_id, "panic", None, "dave")
