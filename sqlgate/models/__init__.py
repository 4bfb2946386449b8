"""
SQLGate: SQL change-order platform.
Shared SQLAlchemy handle; every model module imports ``db`` from here.
"""

import logging

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

db = SQLAlchemy()


def commit_session() -> None:
    """Commit the current session; store failures become InternalError."""
    from sqlgate.core.exceptions import InternalError

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Commit failed: %s", exc)
        raise InternalError("Database write failed") from exc
