"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  - simple 200 for load balancers
    GET /api/v1/health/live   - dependency status (DB, broker/cache, scheduler)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from sqlgate.models import db
from sqlgate.services import cache_service
from sqlgate.services.notification import get_broker

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe: always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check failed (database): %s", exc)

    # ── Broker & lookup store ────────────────────────────────────────
    try:
        broker = get_broker()
        broker.ping()
        checks["broker"] = {"status": "ok", "backend": type(broker).__name__}
    except Exception as exc:
        checks["broker"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check failed (broker): %s", exc)
    checks["cache"] = cache_service.health_check()

    # ── Scheduler ────────────────────────────────────────────────────
    scheduler = current_app.extensions.get("deferred_scheduler")
    checks["scheduler"] = {
        "enabled": bool(current_app.config.get("SCHEDULER_ENABLED")),
        "running": bool(scheduler and scheduler.running),
    }

    checks["app"] = {
        "name": "SQLGate",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
