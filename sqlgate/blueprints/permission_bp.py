"""
Permission Blueprint: data-access templates, role grants and memberships.

Endpoints:
  GET/POST        /api/v1/permission-templates
  GET/PUT/DELETE  /api/v1/permission-templates/<id>
  GET/POST        /api/v1/roles/<role>/permissions
  DELETE          /api/v1/role-permissions/<id>
  GET/POST        /api/v1/users/<username>/roles
  DELETE          /api/v1/users/<username>/roles/<role>
  GET             /api/v1/users/<username>/effective-permissions
  GET             /api/v1/users/<username>/schemas
  POST            /api/v1/permissions/authorize

Every mutation requires the administrator role.
"""

from flask import Blueprint, jsonify, request

from sqlgate.core.exceptions import ValidationError
from sqlgate.services import authorization, permission_service
from sqlgate.utils.errors import current_user, register_error_handlers

permission_bp = Blueprint("permission_bp", __name__, url_prefix="/api/v1")
register_error_handlers(permission_bp)


def _require_admin():
    authorization.require_administrator(current_user())


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError("JSON body required")
    return data


# ═══════════════════════════════════════════════════════════════
# Templates
# ═══════════════════════════════════════════════════════════════
@permission_bp.route("/permission-templates", methods=["GET"])
def list_templates():
    return jsonify([t.to_dict() for t in permission_service.list_templates()]), 200


@permission_bp.route("/permission-templates", methods=["POST"])
def create_template():
    _require_admin()
    template = permission_service.create_template(_json_body())
    return jsonify(template.to_dict()), 201


@permission_bp.route("/permission-templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(permission_service.get_template(template_id).to_dict()), 200


@permission_bp.route("/permission-templates/<int:template_id>", methods=["PUT"])
def update_template(template_id):
    _require_admin()
    template = permission_service.update_template(template_id, _json_body())
    return jsonify(template.to_dict()), 200


@permission_bp.route("/permission-templates/<int:template_id>", methods=["DELETE"])
def delete_template(template_id):
    _require_admin()
    permission_service.delete_template(template_id)
    return jsonify({"message": "Template deleted"}), 200


# ═══════════════════════════════════════════════════════════════
# Role grants
# ═══════════════════════════════════════════════════════════════
@permission_bp.route("/roles/<role>/permissions", methods=["GET"])
def list_role_permissions(role):
    return jsonify([g.to_dict() for g in permission_service.list_role_permissions(role)]), 200


@permission_bp.route("/roles/<role>/permissions", methods=["POST"])
def create_role_permissions(role):
    """
    Body: one grant or a list of grants.

      { "kind": "object", "instance_id": "...", "schema": "...", "table": "" }
      { "kind": "template", "template_id": 1 }
    """
    _require_admin()
    data = _json_body()
    items = data if isinstance(data, list) else [data]
    if not all(isinstance(item, dict) for item in items):
        raise ValidationError("each grant must be an object")
    grants = permission_service.create_role_permissions(role, items)
    return jsonify([g.to_dict() for g in grants]), 201


@permission_bp.route("/role-permissions/<int:grant_id>", methods=["DELETE"])
def delete_role_permission(grant_id):
    _require_admin()
    permission_service.delete_role_permission(grant_id)
    return jsonify({"message": "Grant deleted"}), 200


# ═══════════════════════════════════════════════════════════════
# Memberships & resolution
# ═══════════════════════════════════════════════════════════════
@permission_bp.route("/users/<username>/roles", methods=["GET"])
def list_user_roles(username):
    return jsonify({"username": username, "roles": permission_service.list_user_roles(username)}), 200


@permission_bp.route("/users/<username>/roles", methods=["POST"])
def add_user_role(username):
    """Body: { "role": "..." }"""
    _require_admin()
    data = _json_body()
    membership = permission_service.add_user_role(username, (data.get("role") or "").strip())
    return jsonify(membership.to_dict()), 201


@permission_bp.route("/users/<username>/roles/<role>", methods=["DELETE"])
def remove_user_role(username, role):
    _require_admin()
    permission_service.remove_user_role(username, role)
    return jsonify({"message": "Role removed"}), 200


@permission_bp.route("/users/<username>/effective-permissions", methods=["GET"])
def effective_permissions(username):
    objects = permission_service.effective_permissions(username)
    return jsonify({"username": username, "permissions": [o.to_dict() for o in objects]}), 200


@permission_bp.route("/users/<username>/schemas", methods=["GET"])
def user_schemas(username):
    return jsonify({"username": username, "schemas": permission_service.user_schemas(username)}), 200


@permission_bp.route("/permissions/authorize", methods=["POST"])
def authorize():
    """Body: { "username"?, "instance_id", "schema", "table"? } → { "allowed": bool }"""
    data = _json_body()
    if not data.get("instance_id") or not data.get("schema"):
        raise ValidationError("instance_id and schema are required")
    username = data.get("username") or current_user()
    allowed = permission_service.authorize_query(
        username, str(data["instance_id"]), data["schema"], data.get("table") or ""
    )
    return jsonify({"allowed": allowed}), 200
