"""
SQLGate: SQL change-order platform
Flask Application Factory.

Usage:
    from sqlgate import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from sqlgate.config import config
from sqlgate.middleware.logging_config import configure_logging
from sqlgate.middleware.rate_limiter import init_rate_limits
from sqlgate.middleware.timing import init_request_timing
from sqlgate.models import db
from sqlgate.realtime import init_socketio
from sqlgate.services.cache_service import init_cache
from sqlgate.services.notification import init_broker
from sqlgate.services.scheduler_service import DeferredScheduler

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, apply per-blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def create_app(config_name=None, config_overrides=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        config_overrides: Optional mapping applied on top of the config
                     class (used by tests to point at a file database).

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    os.makedirs(app.instance_path, exist_ok=True)
    app.config.from_object(config[config_name]())
    if config_overrides:
        app.config.update(config_overrides)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Socket store, event broker & real-time feed ──────────────────────
    init_cache(app)
    init_broker(app)
    init_socketio(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from sqlgate.models import instance as _instance_models      # noqa: F401
    from sqlgate.models import order as _order_models            # noqa: F401
    from sqlgate.models import permission as _permission_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ──
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from sqlgate.blueprints.config_bp import config_bp
    from sqlgate.blueprints.health_bp import health_bp
    from sqlgate.blueprints.orders_bp import orders_bp
    from sqlgate.blueprints.permission_bp import permission_bp

    app.register_blueprint(orders_bp)
    app.register_blueprint(config_bp)
    app.register_blueprint(permission_bp)
    app.register_blueprint(health_bp)

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Deferred execution (reconciles scheduled orders on start) ────────
    DeferredScheduler(app)

    return app
