"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db migrate -m "description"
    flask --app wsgi db upgrade
    python wsgi.py              # dev server with WebSocket support
"""

import os

from sqlgate import create_app
from sqlgate.realtime import socketio

app = create_app()

if __name__ == "__main__":
    socketio.run(
        app,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "5000")),
        allow_unsafe_werkzeug=True,
    )
