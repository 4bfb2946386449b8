"""
Authorization collaborator: role membership lookups.

Roles live in the ``user_roles`` table; the administrator role name comes
from ``ADMIN_ROLE`` (default ``admin``).
"""

from flask import current_app

from sqlgate.core.exceptions import ForbiddenError
from sqlgate.models import db
from sqlgate.models.permission import UserRole


def get_roles_for_user(username: str) -> list[str]:
    rows = db.session.execute(
        db.select(UserRole.role).where(UserRole.username == username).order_by(UserRole.role)
    ).scalars().all()
    return list(rows)


def is_administrator(username: str) -> bool:
    admin_role = current_app.config.get("ADMIN_ROLE", "admin")
    return db.session.execute(
        db.select(UserRole.id).where(UserRole.username == username, UserRole.role == admin_role)
    ).first() is not None


def require_administrator(username: str) -> None:
    if not is_administrator(username):
        raise ForbiddenError(f"{username} is not an administrator")


def require_executor(executors: list[str] | None, username: str) -> None:
    """Allow listed executors; an empty list means no restriction."""
    if not executors or username in executors:
        return
    if is_administrator(username):
        return
    raise ForbiddenError(f"{username} is not allowed to execute this order")
