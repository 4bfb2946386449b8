"""
Target database configuration: environments and instances.
"""

import logging

from sqlalchemy.exc import IntegrityError

from sqlgate.core.exceptions import NotFoundError, ValidationError
from sqlgate.models import commit_session, db
from sqlgate.models.instance import DB_TYPES, USE_TYPES, DBEnvironment, DBInstance

logger = logging.getLogger(__name__)


# ── Environments ─────────────────────────────────────────────────────────


def list_environments() -> list[DBEnvironment]:
    return DBEnvironment.query_active().order_by(DBEnvironment.name).all()


def get_environment(env_id: int) -> DBEnvironment:
    env = DBEnvironment.query_active().filter_by(id=env_id).first()
    if env is None:
        raise NotFoundError(resource="Environment", resource_id=env_id)
    return env


def save_environment(data: dict, env_id: int | None = None) -> DBEnvironment:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")
    env = get_environment(env_id) if env_id is not None else DBEnvironment()
    env.name = name
    db.session.add(env)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ValidationError(f"Environment {name} already exists") from exc
    return env


def delete_environment(env_id: int) -> None:
    env = get_environment(env_id)
    in_use = DBInstance.query_active().filter_by(environment_id=env_id).count()
    if in_use:
        raise ValidationError(f"Environment is used by {in_use} instances")
    env.soft_delete()
    # Free the unique name for reuse
    env.name = f"{env.name}#deleted-{env.id}"
    commit_session()


# ── Instances ────────────────────────────────────────────────────────────


def list_instances(filters: dict | None = None) -> list[DBInstance]:
    filters = filters or {}
    q = DBInstance.query_active()
    if filters.get("environment_id"):
        q = q.filter_by(environment_id=int(filters["environment_id"]))
    if filters.get("db_type"):
        q = q.filter_by(db_type=filters["db_type"])
    if filters.get("use_type"):
        q = q.filter_by(use_type=filters["use_type"])
    return q.order_by(DBInstance.created_at).all()


def get_instance(instance_id: str) -> DBInstance:
    instance = DBInstance.query_active().filter_by(instance_id=instance_id).first()
    if instance is None:
        raise NotFoundError(resource="Instance", resource_id=instance_id)
    return instance


def save_instance(data: dict, instance_id: str | None = None) -> DBInstance:
    creating = instance_id is None
    instance = DBInstance() if creating else get_instance(instance_id)

    if creating or "db_type" in data:
        db_type = data.get("db_type") or "MySQL"
        if db_type not in DB_TYPES:
            raise ValidationError(f"db_type must be one of {sorted(DB_TYPES)}")
        instance.db_type = db_type
    if creating or "use_type" in data:
        use_type = data.get("use_type") or "ORDER"
        if use_type not in USE_TYPES:
            raise ValidationError(f"use_type must be one of {sorted(USE_TYPES)}")
        instance.use_type = use_type
    if creating and not data.get("hostname"):
        raise ValidationError("hostname is required")
    if data.get("environment_id") is not None:
        instance.environment_id = get_environment(int(data["environment_id"])).id

    for field in ("hostname", "username", "remark"):
        if field in data:
            setattr(instance, field, data[field] or "")
    if "port" in data:
        try:
            instance.port = int(data["port"])
        except (TypeError, ValueError) as exc:
            raise ValidationError("port must be an integer") from exc
    if "inspect_params" in data:
        if not isinstance(data["inspect_params"], dict):
            raise ValidationError("inspect_params must be an object")
        instance.inspect_params = data["inspect_params"]
    if "password" in data:
        instance.set_password(data["password"])

    db.session.add(instance)
    commit_session()
    logger.info("Instance %s %s", "created" if creating else "updated", instance.instance_id)
    return instance


def delete_instance(instance_id: str) -> None:
    instance = get_instance(instance_id)
    instance.soft_delete()
    commit_session()
