"""
Real-time order feed via Flask-SocketIO.

Clients connect to the ``/ws`` namespace with ``?channel=<order_id>`` and
receive every event published on that channel as a ``message`` event. The
feed is push-only: anything the client sends is ignored.

Usage:
    from sqlgate.realtime import init_socketio, socketio

    # In create_app():
    init_socketio(app)

    # To run with WebSocket support:
    socketio.run(app, host="0.0.0.0", port=5000)
"""

import logging
import threading

from flask import current_app, request
from flask_socketio import SocketIO

from sqlgate.services.notification import get_broker
from sqlgate.services.observer import ObserverSession

logger = logging.getLogger(__name__)

NAMESPACE = "/ws"

socketio = SocketIO()

_sessions: dict[str, ObserverSession] = {}
_sessions_lock = threading.Lock()


def init_socketio(app):
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        allowed = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        allowed = "*"
    socketio.init_app(
        app,
        cors_allowed_origins=allowed,
        async_mode="threading",
        logger=False,
        engineio_logger=False,
    )
    app.logger.info("Flask-SocketIO initialized on namespace %s", NAMESPACE)
    return socketio


def active_sessions() -> int:
    with _sessions_lock:
        return len(_sessions)


def _forward_ended(sid: str) -> None:
    # Still registered means the feed ended first: drop the client too
    with _sessions_lock:
        session = _sessions.pop(sid, None)
    if session is not None:
        socketio.server.disconnect(sid, namespace=NAMESPACE)


@socketio.on("connect", namespace=NAMESPACE)
def _on_connect(auth=None):
    channel = request.args.get("channel") or (auth or {}).get("channel")
    if not channel:
        logger.info("Rejected observer without channel")
        return False

    sid = request.sid
    subscription = get_broker(current_app).subscribe(channel)

    def send(message):
        socketio.emit("message", message, to=sid, namespace=NAMESPACE)

    session = ObserverSession(subscription, send, on_close=lambda: _forward_ended(sid))
    with _sessions_lock:
        _sessions[sid] = session
    socketio.start_background_task(session.forward)
    logger.info("Observer %s subscribed to %s", sid, channel, extra={"order_id": channel})
    return True


@socketio.on("message", namespace=NAMESPACE)
def _on_message(data):
    return None


@socketio.on("disconnect", namespace=NAMESPACE)
def _on_disconnect(*args):
    with _sessions_lock:
        session = _sessions.pop(request.sid, None)
    if session is not None:
        session.client_closed()
        logger.info("Observer %s disconnected", request.sid)
