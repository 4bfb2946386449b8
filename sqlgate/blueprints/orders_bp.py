"""
Orders Blueprint: submission, approval, execution and gh-ost control.

Endpoints:
  POST /api/v1/orders                       - Submit an order
  GET  /api/v1/orders                       - Filtered, paginated list
  GET  /api/v1/orders/my                    - Orders submitted by the caller
  GET  /api/v1/orders/<id>                  - Order detail with tasks and op-logs
  POST /api/v1/orders/<id>/decide           - Approver pass / reject
  PUT  /api/v1/orders/<id>/progress         - Administrative progress change
  GET  /api/v1/orders/<id>/tasks            - Tasks in split order
  GET  /api/v1/orders/<id>/logs             - Op-log
  POST /api/v1/orders/<id>/execute          - Execute every pending task
  POST /api/v1/tasks/<id>/execute           - Execute one task
  PUT  /api/v1/tasks/<id>/progress          - Administrative task progress change
  POST /api/v1/orders/<id>/ghost/control    - Throttle / resize a running gh-ost
  POST /api/v1/inspect/sql                  - Dry-run type check and audit
"""

from flask import Blueprint, jsonify, request

from sqlgate.core.exceptions import ValidationError
from sqlgate.models.instance import DBInstance
from sqlgate.services import authorization, ghost_control, order_service, sql_audit, task_service
from sqlgate.services.sql_text import check_sql_type
from sqlgate.utils.errors import current_user, register_error_handlers

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api/v1")
register_error_handlers(orders_bp)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data


def _filters() -> dict:
    keys = ("applicant", "progress", "environment_id", "sql_type", "db_type", "title")
    return {k: request.args.get(k) for k in keys if request.args.get(k)}


# ═══════════════════════════════════════════════════════════════
# Orders
# ═══════════════════════════════════════════════════════════════
@orders_bp.route("/orders", methods=["POST"])
def submit_order():
    """
    Submit a new order.

    Body: { "title", "sql_type", "instance_id", "schema", "content",
            "approvers": [...], "executors": [...], "schedule_time"?, ... }
    """
    order = order_service.submit_order(_json_body(), current_user())
    return jsonify(order.to_dict()), 201


@orders_bp.route("/orders", methods=["GET"])
def list_orders():
    result = order_service.list_orders(
        _filters(),
        page=request.args.get("page", 1, type=int),
        page_size=request.args.get("page_size", 10, type=int),
    )
    return jsonify(result), 200


@orders_bp.route("/orders/my", methods=["GET"])
def my_orders():
    filters = _filters()
    filters["applicant"] = current_user()
    result = order_service.list_orders(
        filters,
        page=request.args.get("page", 1, type=int),
        page_size=request.args.get("page_size", 10, type=int),
    )
    return jsonify(result), 200


@orders_bp.route("/orders/<order_id>", methods=["GET"])
def get_order(order_id):
    order = order_service.get_order(order_id)
    return jsonify(order.to_dict(include_children=True)), 200


@orders_bp.route("/orders/<order_id>/decide", methods=["POST"])
def decide(order_id):
    """Body: { "status": "pass" | "reject", "msg": "..." }"""
    data = _json_body()
    order = order_service.decide(
        order_id,
        current_user(),
        (data.get("status") or "").strip().lower(),
        data.get("msg") or "",
    )
    return jsonify(order.to_dict()), 200


@orders_bp.route("/orders/<order_id>/progress", methods=["PUT"])
def update_progress(order_id):
    """Body: { "progress": "...", "remark": "..." }  (administrators only)"""
    username = current_user()
    authorization.require_administrator(username)
    data = _json_body()
    order = order_service.update_progress(
        order_id, data.get("progress") or "", username, data.get("remark") or ""
    )
    return jsonify(order.to_dict()), 200


@orders_bp.route("/orders/<order_id>/tasks", methods=["GET"])
def list_tasks(order_id):
    tasks = task_service.list_tasks(order_id)
    return jsonify([t.to_dict() for t in tasks]), 200


@orders_bp.route("/orders/<order_id>/logs", methods=["GET"])
def list_logs(order_id):
    logs = order_service.list_op_logs(order_id)
    return jsonify([log.to_dict() for log in logs]), 200


# ═══════════════════════════════════════════════════════════════
# Execution
# ═══════════════════════════════════════════════════════════════
@orders_bp.route("/orders/<order_id>/execute", methods=["POST"])
def execute_all(order_id):
    result = task_service.execute_all(order_id, current_user())
    return jsonify(result), 200


@orders_bp.route("/tasks/<task_id>/execute", methods=["POST"])
def execute_task(task_id):
    task = task_service.execute_task(task_id, current_user())
    return jsonify(task.to_dict()), 200


@orders_bp.route("/tasks/<task_id>/progress", methods=["PUT"])
def update_task_progress(task_id):
    username = current_user()
    authorization.require_administrator(username)
    data = _json_body()
    task = task_service.update_task_progress(task_id, data.get("progress") or "", username)
    return jsonify(task.to_dict()), 200


@orders_bp.route("/orders/<order_id>/ghost/control", methods=["POST"])
def ghost_control_command(order_id):
    """Body: { "action": "throttle" | "unthrottle" | "panic" | "chunk-size", "value"? }"""
    data = _json_body()
    result = ghost_control.control(order_id, data.get("action"), data.get("value"), current_user())
    return jsonify(result), 200


# ═══════════════════════════════════════════════════════════════
# Inspection
# ═══════════════════════════════════════════════════════════════
@orders_bp.route("/inspect/sql", methods=["POST"])
def inspect_sql():
    """
    Type-check and audit SQL without creating an order.

    Body: { "instance_id", "sql_type", "content" }
    Returns { "status": 0 | 1, "data": [findings] }, status 1 meaning blocked.
    """
    data = _json_body()
    if not data.get("content"):
        raise ValidationError("content is required")
    sql_type = str(data.get("sql_type") or "DML").upper()
    instance = None
    if data.get("instance_id"):
        instance = DBInstance.query_active().filter_by(instance_id=str(data["instance_id"])).first()
        if instance is None:
            raise ValidationError("Unknown instance_id", details={"instance_id": data["instance_id"]})

    try:
        check_sql_type(data["content"], sql_type)
    except ValidationError as exc:
        finding = sql_audit.AuditFinding(sql_audit.ERROR, str(exc), sql=data["content"])
        return jsonify({"status": 1, "data": [finding.to_dict()]}), 200

    if sql_type == "EXPORT":
        return jsonify({"status": 0, "data": []}), 200

    findings = sql_audit.get_auditor().check(
        data["content"],
        instance.db_type if instance else data.get("db_type", "MySQL"),
        instance.inspect_params if instance else None,
    )
    blocked = sql_audit.is_blocking(findings)
    return jsonify({"status": 1 if blocked else 0, "data": [f.to_dict() for f in findings]}), 200
