"""
Order state machine.

Pending → {Approved, Rejected}; Approved → Executing → Completed.

Decide is serialised per order: an in-process lock stripe keeps two
requests of this worker from interleaving, and every progress change is a
conditional UPDATE on ``progress = 'Pending'`` so a second worker cannot
double-transition either.

All functions commit their own unit of work; callers never need to commit.
"""

import logging
import threading
import zlib
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, update

from sqlgate.core.exceptions import (
    AlreadyDecidedError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from sqlgate.models import commit_session, db
from sqlgate.models.instance import DBInstance
from sqlgate.models.order import (
    EXPORT_FORMATS,
    SQL_TYPES,
    Approver,
    ApproverStatus,
    Order,
    OrderOpLog,
    OrderProgress,
)
from sqlgate.services import authorization, sql_audit
from sqlgate.services.sql_text import check_sql_type

logger = logging.getLogger(__name__)

_LOCK_STRIPES = 64
_decide_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

DECISIONS = {ApproverStatus.PASS, ApproverStatus.REJECT}


def _order_lock(order_id: str) -> threading.Lock:
    return _decide_locks[zlib.crc32(order_id.encode("utf-8")) % _LOCK_STRIPES]


# ═════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════


def log_op(order_id: str, username: str, msg: str) -> OrderOpLog:
    """Stage an op-log entry in the current session (caller commits)."""
    entry = OrderOpLog(order_id=order_id, username=username or "system", msg=msg)
    db.session.add(entry)
    return entry


def get_order(order_id: str) -> Order:
    order = Order.query_active().filter_by(order_id=order_id).first()
    if order is None:
        raise NotFoundError(resource="Order", resource_id=order_id)
    return order


def _scheduler():
    if not current_app.config.get("SCHEDULER_ENABLED"):
        return None
    return current_app.extensions.get("deferred_scheduler")


def _string_list(value, field: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list", details={"field": field})
    result = []
    for item in value:
        name = item.get("user") if isinstance(item, dict) else item
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"{field} contains an invalid user", details={"field": field})
        if name.strip() not in result:
            result.append(name.strip())
    return result


def _parse_time(value) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError("schedule_time must be an ISO-8601 timestamp",
                              details={"field": "schedule_time"}) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ═════════════════════════════════════════════════════════════════════════
# Submit
# ═════════════════════════════════════════════════════════════════════════


def submit_order(data: dict, applicant: str) -> Order:
    """Validate, audit and persist a new order in Pending.

    Raises:
        ValidationError: missing fields, unknown instance, statement-kind
            mismatch or a blocking audit finding (findings in ``details``).
    """
    missing = [f for f in ("title", "sql_type", "instance_id", "content") if not data.get(f)]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}",
                              details={"fields": missing})

    sql_type = str(data["sql_type"]).upper()
    if sql_type not in SQL_TYPES:
        raise ValidationError(f"sql_type must be one of {sorted(SQL_TYPES)}")

    instance = DBInstance.query_active().filter_by(instance_id=str(data["instance_id"])).first()
    if instance is None:
        raise ValidationError("Unknown instance_id", details={"instance_id": data["instance_id"]})
    schema = data.get("schema") or ""
    if not schema and instance.db_type != "SQLite":
        raise ValidationError("schema is required", details={"fields": ["schema"]})

    export_format = None
    if sql_type == "EXPORT":
        export_format = (data.get("export_file_format") or "csv").lower()
        if export_format not in EXPORT_FORMATS:
            raise ValidationError(f"export_file_format must be one of {sorted(EXPORT_FORMATS)}")

    content = data["content"]
    check_sql_type(content, sql_type)

    if sql_type != "EXPORT":
        findings = sql_audit.get_auditor().check(content, instance.db_type, instance.inspect_params)
        if sql_audit.is_blocking(findings):
            raise ValidationError(
                "SQL audit failed",
                details={"findings": [f.to_dict() for f in findings]},
            )

    order = Order(
        title=data["title"],
        remark=data.get("remark") or "",
        applicant=applicant,
        db_type=instance.db_type,
        sql_type=sql_type,
        environment_id=data.get("environment_id") or instance.environment_id,
        instance_id=instance.instance_id,
        schema_name=schema,
        content=content,
        executors=_string_list(data.get("executors"), "executors"),
        reviewers=_string_list(data.get("reviewers"), "reviewers"),
        cc=_string_list(data.get("cc"), "cc"),
        schedule_time=_parse_time(data.get("schedule_time")),
        export_file_format=export_format,
        fix_version=data.get("fix_version") or "",
        is_restrict_access=bool(data.get("is_restrict_access", False)),
        progress=OrderProgress.PENDING,
    )
    order.approver_list = [Approver(user=u) for u in _string_list(data.get("approvers"), "approvers")]
    db.session.add(order)
    db.session.flush()
    log_op(order.order_id, applicant, "submitted the order")
    commit_session()

    logger.info("Order submitted: %s (%s, %d approvers)", order.title, sql_type,
                len(order.approvers or []), extra={"order_id": order.order_id, "username": applicant})
    return order


# ═════════════════════════════════════════════════════════════════════════
# Decide
# ═════════════════════════════════════════════════════════════════════════


def decide(order_id: str, username: str, decision: str, comment: str = "") -> Order:
    """Record a pass/reject decision and advance the order when due.

    One reject vetoes immediately. Passes approve only when every listed
    approver has passed. An administrator who is not listed may approve an
    order with an empty approver list; on a non-empty list that vote does
    not count toward unanimity.

    Raises:
        ValidationError: decision is not pass/reject.
        InvalidStateError: order is not Pending.
        AlreadyDecidedError: the listed approver already voted.
        ForbiddenError: caller is neither listed nor an administrator.
    """
    if decision not in DECISIONS:
        raise ValidationError("status must be 'pass' or 'reject'")

    with _order_lock(order_id):
        db.session.expire_all()
        order = db.session.execute(
            db.select(Order)
            .where(Order.order_id == order_id, Order.deleted_at.is_(None))
            .with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError(resource="Order", resource_id=order_id)
        if order.progress != OrderProgress.PENDING:
            raise InvalidStateError(f"Order is {order.progress}, approval is closed")

        approvers = order.approver_list
        listed = False
        for approver in approvers:
            if approver.user == username:
                if approver.status != ApproverStatus.PENDING:
                    raise AlreadyDecidedError(f"{username} already decided this order")
                approver.status = decision
                listed = True

        if not listed and not authorization.is_administrator(username):
            raise ForbiddenError(f"{username} is not an approver of this order")

        if decision == ApproverStatus.REJECT:
            new_progress = OrderProgress.REJECTED
            msg = f"{username} rejected the order, comment: {comment}"
        else:
            pass_count = sum(1 for a in approvers if a.status == ApproverStatus.PASS)
            if len(approvers) == pass_count:
                new_progress = OrderProgress.APPROVED
                msg = f"{username} approved the order, comment: {comment}"
            else:
                new_progress = OrderProgress.PENDING
                msg = f"{username} approved the order (waiting for other approvers), comment: {comment}"

        values = {"progress": new_progress, "updated_at": datetime.now(timezone.utc)}
        if listed:
            values["approvers"] = [a.to_dict() for a in approvers]
        result = db.session.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.progress == OrderProgress.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise InvalidStateError("Order changed concurrently, approval is closed")

        log_op(order_id, username, msg)
        if new_progress == OrderProgress.APPROVED:
            from sqlgate.services import task_service

            db.session.expire(order)
            task_service.generate_tasks(order)
        commit_session()

    logger.info("Decision %s by %s → %s", decision, username, new_progress,
                extra={"order_id": order_id, "username": username})

    order = get_order(order_id)
    _sync_schedule(order)
    return order


# ═════════════════════════════════════════════════════════════════════════
# Progress
# ═════════════════════════════════════════════════════════════════════════


def update_progress(order_id: str, progress: str, username: str, remark: str = "") -> Order:
    """Administrative transition to any progress value; always logged."""
    if progress not in OrderProgress.ALL:
        raise ValidationError(f"progress must be one of {sorted(OrderProgress.ALL)}")
    order = get_order(order_id)
    previous = order.progress
    order.progress = progress

    msg = f"updated order progress to {progress}"
    if remark:
        msg += f", remark: {remark}"
    log_op(order_id, username, msg)
    if progress == OrderProgress.APPROVED:
        from sqlgate.services import task_service

        db.session.flush()
        task_service.generate_tasks(order)
    commit_session()

    logger.info("Order progress %s → %s by %s", previous, progress, username,
                extra={"order_id": order_id, "username": username})
    _sync_schedule(order)
    return order


def _sync_schedule(order: Order) -> None:
    """Register or cancel the deferred execution to match the order state."""
    scheduler = _scheduler()
    if scheduler is None:
        return
    if order.progress == OrderProgress.APPROVED and order.schedule_time is not None:
        scheduler.register(order.order_id, order.schedule_time)
    else:
        scheduler.cancel(order.order_id)


# ═════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════


def list_orders(filters: dict | None = None, page: int = 1, page_size: int = 10) -> dict:
    """Filtered, paginated order list, newest first."""
    filters = filters or {}
    page = max(int(page or 1), 1)
    page_size = min(max(int(page_size or 10), 1), 100)

    q = Order.query_active()
    if filters.get("applicant"):
        q = q.filter(Order.applicant == filters["applicant"])
    if filters.get("progress"):
        q = q.filter(Order.progress == filters["progress"])
    if filters.get("environment_id"):
        q = q.filter(Order.environment_id == int(filters["environment_id"]))
    if filters.get("sql_type"):
        q = q.filter(Order.sql_type == str(filters["sql_type"]).upper())
    if filters.get("db_type"):
        q = q.filter(Order.db_type == filters["db_type"])
    if filters.get("title"):
        q = q.filter(Order.title.ilike(f"%{filters['title']}%"))

    total = q.with_entities(func.count(Order.order_id)).scalar()
    items = (
        q.order_by(Order.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return {
        "items": [o.to_dict() for o in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


def list_op_logs(order_id: str) -> list[OrderOpLog]:
    get_order(order_id)
    return OrderOpLog.query.filter_by(order_id=order_id).order_by(OrderOpLog.id).all()
