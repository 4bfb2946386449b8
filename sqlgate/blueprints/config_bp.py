"""
Config Blueprint: target database environments and instances.

Reads are open; writes require the administrator role.
"""

from flask import Blueprint, jsonify, request

from sqlgate.core.exceptions import ValidationError
from sqlgate.services import authorization, instance_service
from sqlgate.utils.errors import current_user, register_error_handlers

config_bp = Blueprint("config_bp", __name__, url_prefix="/api/v1")
register_error_handlers(config_bp)


def _admin_body() -> dict:
    authorization.require_administrator(current_user())
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data


# ── Environments ─────────────────────────────────────────────────────────


@config_bp.route("/environments", methods=["GET"])
def list_environments():
    return jsonify([e.to_dict() for e in instance_service.list_environments()]), 200


@config_bp.route("/environments", methods=["POST"])
def create_environment():
    env = instance_service.save_environment(_admin_body())
    return jsonify(env.to_dict()), 201


@config_bp.route("/environments/<int:env_id>", methods=["PUT"])
def update_environment(env_id):
    env = instance_service.save_environment(_admin_body(), env_id)
    return jsonify(env.to_dict()), 200


@config_bp.route("/environments/<int:env_id>", methods=["DELETE"])
def delete_environment(env_id):
    authorization.require_administrator(current_user())
    instance_service.delete_environment(env_id)
    return jsonify({"message": "Environment deleted"}), 200


# ── Instances ────────────────────────────────────────────────────────────


@config_bp.route("/instances", methods=["GET"])
def list_instances():
    filters = {k: request.args.get(k) for k in ("environment_id", "db_type", "use_type")}
    return jsonify([i.to_dict() for i in instance_service.list_instances(filters)]), 200


@config_bp.route("/instances/<instance_id>", methods=["GET"])
def get_instance(instance_id):
    return jsonify(instance_service.get_instance(instance_id).to_dict()), 200


@config_bp.route("/instances", methods=["POST"])
def create_instance():
    instance = instance_service.save_instance(_admin_body())
    return jsonify(instance.to_dict()), 201


@config_bp.route("/instances/<instance_id>", methods=["PUT"])
def update_instance(instance_id):
    instance = instance_service.save_instance(_admin_body(), instance_id)
    return jsonify(instance.to_dict()), 200


@config_bp.route("/instances/<instance_id>", methods=["DELETE"])
def delete_instance(instance_id):
    authorization.require_administrator(current_user())
    instance_service.delete_instance(instance_id)
    return jsonify({"message": "Instance deleted"}), 200
