"""
gh-ost process control.

Commands are single text lines written to the gh-ost serve socket; no reply
is parsed. The socket path is looked up in the cache store first and, when
missing (e.g. after a restart), rebuilt from the order's ALTER statement.
"""

import logging
import socket

from flask import current_app

from sqlgate.core.exceptions import InternalError, NotFoundError, ValidationError
from sqlgate.models import commit_session
from sqlgate.models.order import Order, OrderTask, TaskProgress
from sqlgate.services import authorization, cache_service
from sqlgate.services.execution.structural import socket_path
from sqlgate.services.notification import publish_event
from sqlgate.services.order_service import log_op
from sqlgate.services.sql_text import parse_alter_table, split_statements

logger = logging.getLogger(__name__)

ACTIONS = ("throttle", "unthrottle", "panic", "chunk-size")
SEND_TIMEOUT = 5.0

_NOT_RUNNING = "task not found or not running"


def build_command(action: str, value=None) -> str:
    """Validate an action and render the wire command.

    Raises:
        ValidationError: unknown action, or chunk-size not a positive integer.
    """
    action = (action or "").strip().lower()
    if action not in ACTIONS:
        raise ValidationError(f"action must be one of {', '.join(ACTIONS)}",
                              details={"action": action})
    if action != "chunk-size":
        return action
    if isinstance(value, bool):
        raise ValidationError("chunk-size requires an integer value")
    try:
        size = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("chunk-size requires an integer value") from exc
    if size <= 0:
        raise ValidationError("chunk-size must be greater than 0", details={"value": size})
    return f"chunk-size={size}"


def _statement_for(order: Order) -> str | None:
    running = (
        OrderTask.query.filter_by(order_id=order.order_id, progress=TaskProgress.EXECUTING)
        .first()
    )
    if running is not None:
        return running.sql
    for stmt in split_statements(order.content):
        if parse_alter_table(stmt) is not None:
            return stmt
    return None


def resolve_socket_path(order_id: str) -> str:
    path = cache_service.lookup_socket(order_id)
    if path:
        return path

    logger.warning("No recorded gh-ost socket, rebuilding from order", extra={"order_id": order_id})
    order = Order.query_active().filter_by(order_id=order_id).first()
    if order is None or order.sql_type != "DDL":
        raise NotFoundError(resource="Task", message=_NOT_RUNNING)
    stmt = _statement_for(order)
    parsed = parse_alter_table(stmt) if stmt else None
    if parsed is None:
        raise NotFoundError(resource="Task", message=_NOT_RUNNING)
    schema, table, _ = parsed
    schema = schema or order.schema_name
    if not schema or not table:
        raise NotFoundError(resource="Task", message=_NOT_RUNNING)
    return socket_path(current_app.config.get("GHOST_SOCKET_DIR", "/tmp"), order_id, schema, table)


def send_command(path: str, command: str, timeout: float = SEND_TIMEOUT) -> None:
    """Write one command line to the control socket."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(path)
        sock.sendall((command + "\n").encode("utf-8"))
    except (FileNotFoundError, ConnectionRefusedError) as exc:
        raise NotFoundError(resource="Task", message=_NOT_RUNNING) from exc
    except OSError as exc:
        raise InternalError(f"gh-ost control socket error: {exc}") from exc
    finally:
        sock.close()


def control(order_id: str, action: str, value=None, username: str = "system") -> dict:
    """Validate, resolve, send, then announce on the order channel."""
    command = build_command(action, value)
    order = Order.query_active().filter_by(order_id=order_id).first()
    if order is not None:
        authorization.require_executor(order.executors, username)

    path = resolve_socket_path(order_id)
    send_command(path, command)

    if command.startswith("chunk-size="):
        message = f"gh-ost speed adjusted {command}"
    else:
        message = f"gh-ost control command sent: {command}"
    if order is not None:
        log_op(order_id, username, message)
        commit_session()
    logger.info(message, extra={"order_id": order_id, "username": username})
    publish_event(order_id, "ghost", message)
    return {"command": command, "socket": path, "message": message}
