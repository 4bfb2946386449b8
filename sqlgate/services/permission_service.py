"""
Permission Service: effective data-access permissions with cache.

Resolution:
  user → roles (authorization collaborator)
  role → RolePermission grants
  grant → one PermissionObject, or every object of a PermissionTemplate

The union is deduplicated by the (instance_id, schema, table) triple, so the
result does not depend on grant order. Templates that no longer exist are
skipped. Results are cached per user for 5 minutes and dropped on any
template, grant or membership change.
"""

import logging

from sqlalchemy.exc import IntegrityError

from sqlgate.core.exceptions import NotFoundError, ValidationError
from sqlgate.models import commit_session, db
from sqlgate.models.permission import (
    GrantKind,
    PermissionObject,
    PermissionTemplate,
    RolePermission,
    UserRole,
)
from sqlgate.services import authorization, cache_service

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
# Resolution
# ═════════════════════════════════════════════════════════════════════════


def expand_role(role: str) -> list[PermissionObject]:
    """Every object granted to ``role``, directly or through templates."""
    grants = (
        RolePermission.query_active()
        .filter_by(role=role)
        .order_by(RolePermission.id)
        .all()
    )
    template_ids = {g.template_id for g in grants if g.kind == GrantKind.TEMPLATE}
    templates = {}
    if template_ids:
        templates = {
            t.id: t
            for t in PermissionTemplate.query_active().filter(PermissionTemplate.id.in_(template_ids))
        }

    objects: list[PermissionObject] = []
    for grant in grants:
        if grant.kind == GrantKind.OBJECT:
            objects.append(grant.object)
            continue
        template = templates.get(grant.template_id)
        if template is None:
            logger.debug("Role %s references missing template %s, skipped", role, grant.template_id)
            continue
        objects.extend(template.objects)
    return objects


def effective_permissions(username: str, use_cache: bool = True) -> list[PermissionObject]:
    if use_cache:
        cached = cache_service.get_cached_permissions(username)
        if cached is not None:
            return [PermissionObject.from_dict(item) for item in cached]

    merged: dict[str, PermissionObject] = {}
    for role in authorization.get_roles_for_user(username):
        for obj in expand_role(role):
            merged.setdefault(obj.key, obj)
    result = sorted(merged.values())

    cache_service.set_cached_permissions(username, [obj.to_dict() for obj in result])
    return result


def authorize_query(username: str, instance_id: str, schema: str, table: str = "") -> bool:
    """True if any effective grant covers the target.

    A schema-wide grant covers every table; a table grant covers its own
    table and schema-level requests.
    """
    return any(
        obj.covers(str(instance_id), schema or "", table or "")
        for obj in effective_permissions(username)
    )


def user_schemas(username: str) -> list[dict]:
    """Distinct (instance_id, schema) pairs the user may query."""
    seen = []
    for obj in effective_permissions(username):
        pair = {"instance_id": obj.instance_id, "schema": obj.schema}
        if pair not in seen:
            seen.append(pair)
    return seen


# ═════════════════════════════════════════════════════════════════════════
# Templates
# ═════════════════════════════════════════════════════════════════════════


def _parse_objects(items) -> list[dict]:
    if not isinstance(items, list):
        raise ValidationError("permissions must be a list")
    result: list[dict] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("instance_id") or not item.get("schema"):
            raise ValidationError(
                "each permission needs instance_id and schema",
                details={"index": index},
            )
        obj = PermissionObject.from_dict(item).to_dict()
        if obj not in result:
            result.append(obj)
    return result


def list_templates() -> list[PermissionTemplate]:
    return PermissionTemplate.query_active().order_by(PermissionTemplate.name).all()


def get_template(template_id: int) -> PermissionTemplate:
    template = PermissionTemplate.query_active().filter_by(id=template_id).first()
    if template is None:
        raise NotFoundError(resource="PermissionTemplate", resource_id=template_id)
    return template


def create_template(data: dict) -> PermissionTemplate:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")
    template = PermissionTemplate(
        name=name,
        description=data.get("description") or "",
        permissions=_parse_objects(data.get("permissions") or []),
    )
    db.session.add(template)
    commit_session()
    cache_service.invalidate_permissions()
    logger.info("Permission template created: %s (%d objects)", name, len(template.permissions))
    return template


def update_template(template_id: int, data: dict) -> PermissionTemplate:
    template = get_template(template_id)
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name cannot be empty")
        template.name = name
    if "description" in data:
        template.description = data.get("description") or ""
    if "permissions" in data:
        template.permissions = _parse_objects(data.get("permissions"))
    commit_session()
    cache_service.invalidate_permissions()
    return template


def delete_template(template_id: int) -> None:
    template = get_template(template_id)
    template.soft_delete()
    commit_session()
    cache_service.invalidate_permissions()
    logger.info("Permission template deleted: %s", template.name)


# ═════════════════════════════════════════════════════════════════════════
# Role grants
# ═════════════════════════════════════════════════════════════════════════


def list_role_permissions(role: str) -> list[RolePermission]:
    return (
        RolePermission.query_active()
        .filter_by(role=role)
        .order_by(RolePermission.id)
        .all()
    )


def _build_grant(role: str, data: dict) -> RolePermission:
    kind = data.get("kind") or GrantKind.OBJECT
    if kind not in GrantKind.ALL:
        raise ValidationError(f"kind must be one of {sorted(GrantKind.ALL)}")
    if kind == GrantKind.TEMPLATE:
        if not data.get("template_id"):
            raise ValidationError("template_id is required for template grants")
        template = get_template(int(data["template_id"]))
        return RolePermission(role=role, kind=kind, template_id=template.id)
    obj = _parse_objects([data])[0]
    return RolePermission(
        role=role,
        kind=kind,
        instance_id=obj["instance_id"],
        schema_name=obj["schema"],
        table_name=obj["table"],
    )


def create_role_permissions(role: str, items: list[dict]) -> list[RolePermission]:
    """Create one or more grants for ``role`` in one transaction."""
    if not role:
        raise ValidationError("role is required")
    grants = [_build_grant(role, item) for item in items]
    db.session.add_all(grants)
    commit_session()
    cache_service.invalidate_permissions()
    logger.info("Granted %d permissions to role %s", len(grants), role)
    return grants


def delete_role_permission(grant_id: int) -> None:
    grant = RolePermission.query_active().filter_by(id=grant_id).first()
    if grant is None:
        raise NotFoundError(resource="RolePermission", resource_id=grant_id)
    grant.soft_delete()
    commit_session()
    cache_service.invalidate_permissions()


# ═════════════════════════════════════════════════════════════════════════
# Memberships
# ═════════════════════════════════════════════════════════════════════════


def list_user_roles(username: str) -> list[str]:
    return authorization.get_roles_for_user(username)


def add_user_role(username: str, role: str) -> UserRole:
    if not username or not role:
        raise ValidationError("username and role are required")
    existing = UserRole.query.filter_by(username=username, role=role).first()
    if existing is not None:
        return existing
    membership = UserRole(username=username, role=role)
    db.session.add(membership)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        membership = UserRole.query.filter_by(username=username, role=role).one()
    cache_service.invalidate_permissions(username)
    logger.info("Role %s assigned to %s", role, username)
    return membership


def remove_user_role(username: str, role: str) -> None:
    membership = UserRole.query.filter_by(username=username, role=role).first()
    if membership is None:
        raise NotFoundError(resource="UserRole", message=f"{username} does not have role {role}")
    db.session.delete(membership)
    commit_session()
    cache_service.invalidate_permissions(username)
