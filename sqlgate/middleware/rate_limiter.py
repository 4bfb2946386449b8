"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in sqlgate/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from sqlgate.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Order / execution endpoints:  60/minute
        - Configuration & permissions:  120/minute
        - Health check:                 exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("orders_bp")
    if bp:
        limiter.limit("60/minute")(bp)

    for bp_name in ("config_bp", "permission_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("120/minute")(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured (orders 60/min, config/permissions 120/min)")
