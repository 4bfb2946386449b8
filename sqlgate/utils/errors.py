"""Standardised API error responses.

Usage
-----
    from sqlgate.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Order not found")
    return api_error(E.VALIDATION_REQUIRED, "title is required")

Blueprints call ``register_error_handlers(bp)`` once so that every
``SqlGateError`` raised by a service renders as ``{error, code, details}``.
"""

from __future__ import annotations

import logging

from flask import jsonify, request

from sqlgate.core.exceptions import SqlGateError

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION = "ERR_VALIDATION"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    INVALID_STATE = "ERR_INVALID_STATE"
    BUSY = "ERR_BUSY"
    ALREADY_DECIDED = "ERR_ALREADY_DECIDED"

    # Server – HTTP 500
    EXECUTION_FAILED = "ERR_EXECUTION_FAILED"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION: 400,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.INVALID_STATE: 409,
    E.BUSY: 409,
    E.ALREADY_DECIDED: 409,
    E.EXECUTION_FAILED: 500,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (audit findings, execution result, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def register_error_handlers(bp) -> None:
    """Map service exceptions to JSON responses for one blueprint."""

    @bp.errorhandler(SqlGateError)
    def _handle_business_error(error: SqlGateError):
        if error.status_code >= 500:
            logger.error("%s on endpoint=%s: %s", type(error).__name__, request.endpoint, error)
        return api_error(error.code, str(error), status=error.status_code, details=error.details)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")


def current_user() -> str:
    """Best-effort current user extraction (no auth enforcement)."""
    return (
        request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
        or "system"
    )
