"""
SQLGate: SQL change-order platform
Data-access permission models.

Models:
    - PermissionTemplate: named, reusable bundle of permission objects
    - RolePermission: grants a role either one object or one template
    - UserRole: role membership consumed by the authorization collaborator

``PermissionObject`` is a value type compared by its
(instance_id, schema, table) triple; an empty table means the whole schema.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlgate.models import db
from sqlgate.models.soft_delete import SoftDeleteMixin


def _now():
    return datetime.now(timezone.utc)


class GrantKind:
    OBJECT = "object"
    TEMPLATE = "template"

    ALL = {OBJECT, TEMPLATE}


@dataclass(frozen=True, order=True)
class PermissionObject:
    instance_id: str
    schema: str
    table: str = ""

    @property
    def key(self) -> str:
        return f"{self.instance_id}:{self.schema}:{self.table}"

    @classmethod
    def from_dict(cls, data: dict) -> "PermissionObject":
        return cls(
            instance_id=str(data["instance_id"]),
            schema=data.get("schema") or "",
            table=data.get("table") or "",
        )

    def to_dict(self) -> dict:
        return {"instance_id": self.instance_id, "schema": self.schema, "table": self.table}

    def covers(self, instance_id: str, schema: str, table: str = "") -> bool:
        """True when this grant allows access to the given target."""
        if self.instance_id != instance_id or self.schema != schema:
            return False
        return not self.table or not table or self.table == table


class PermissionTemplate(SoftDeleteMixin, db.Model):
    __tablename__ = "permission_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), default="")
    permissions = db.Column(db.JSON, default=list,
                            comment="[{instance_id, schema, table}]")

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    @property
    def objects(self) -> list[PermissionObject]:
        return [PermissionObject.from_dict(p) for p in (self.permissions or [])]

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "permissions": self.permissions or [],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class RolePermission(SoftDeleteMixin, db.Model):
    """
    Tagged grant: ``kind == "object"`` uses the instance/schema/table columns,
    ``kind == "template"`` uses ``template_id``.
    """

    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(db.String(100), nullable=False, index=True)
    kind = db.Column(db.String(10), nullable=False, default=GrantKind.OBJECT)
    instance_id = db.Column(db.String(36), nullable=True)
    schema_name = db.Column("schema", db.String(128), nullable=True)
    table_name = db.Column("table", db.String(128), nullable=True)
    template_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    @property
    def object(self) -> PermissionObject:
        return PermissionObject(
            instance_id=self.instance_id or "",
            schema=self.schema_name or "",
            table=self.table_name or "",
        )

    def to_dict(self):
        result = {
            "id": self.id,
            "role": self.role,
            "kind": self.kind,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if self.kind == GrantKind.TEMPLATE:
            result["template_id"] = self.template_id
        else:
            result.update(self.object.to_dict())
        return result


class UserRole(db.Model):
    __tablename__ = "user_roles"
    __table_args__ = (
        db.UniqueConstraint("username", "role", name="uq_user_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(150), nullable=False, index=True)
    role = db.Column(db.String(100), nullable=False)

    def to_dict(self):
        return {"id": self.id, "username": self.username, "role": self.role}
