"""
SQLGate: SQL change-order platform
Order / Task / OpLog models.

Models:
    - Order: one submitted SQL change or export request
    - OrderTask: one statement split out of an approved order
    - OrderOpLog: append-only audit trail of everything done to an order

Approver entries are stored as a JSON list of ``{"user", "status"}`` objects
and exposed through the typed ``Approver`` value.
"""

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlgate.models import db
from sqlgate.models.soft_delete import SoftDeleteMixin


# ── Constants ────────────────────────────────────────────────────────────────

SQL_TYPES = {"DDL", "DML", "EXPORT"}
EXPORT_FORMATS = {"csv", "xlsx"}


class OrderProgress:
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    EXECUTING = "Executing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    ALL = {PENDING, APPROVED, REJECTED, EXECUTING, COMPLETED, FAILED}
    EXECUTABLE = (APPROVED, EXECUTING)


class TaskProgress:
    PENDING = "Pending"
    EXECUTING = "Executing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    PAUSED = "Paused"

    ALL = {PENDING, EXECUTING, COMPLETED, FAILED, PAUSED}
    RUNNING = (EXECUTING, PAUSED)


class ApproverStatus:
    PENDING = "pending"
    PASS = "pass"
    REJECT = "reject"


class ExecuteResult:
    ALL_SUCCEEDED = "all_succeeded"
    ALL_FAILED = "all_failed"
    PARTIAL = "partial"
    NOTHING_TO_DO = "nothing_to_do"


def _uuid() -> str:
    return str(uuid.uuid4())


def _now():
    return datetime.now(timezone.utc)


@dataclass
class Approver:
    user: str
    status: str = ApproverStatus.PENDING

    @classmethod
    def from_dict(cls, data) -> "Approver":
        if isinstance(data, str):
            return cls(user=data)
        return cls(user=data["user"], status=data.get("status") or ApproverStatus.PENDING)

    def to_dict(self) -> dict:
        return asdict(self)


class Order(SoftDeleteMixin, db.Model):
    """A SQL change request moving through approval and execution."""

    __tablename__ = "orders"

    order_id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.String(200), nullable=False)
    remark = db.Column(db.Text, default="")
    applicant = db.Column(db.String(150), nullable=False, index=True)
    db_type = db.Column(db.String(20), nullable=False, default="MySQL",
                        comment="MySQL, TiDB, SQLite")
    sql_type = db.Column(db.String(10), nullable=False,
                         comment="DDL, DML, EXPORT")
    environment_id = db.Column(db.Integer, db.ForeignKey("db_environments.id"), nullable=True)
    instance_id = db.Column(db.String(36), db.ForeignKey("db_instances.instance_id"),
                            nullable=False, index=True)
    schema_name = db.Column("schema", db.String(128), nullable=False, default="")
    content = db.Column(db.Text, nullable=False)

    approvers = db.Column(db.JSON, default=list, comment="[{user, status}]")
    executors = db.Column(db.JSON, default=list)
    reviewers = db.Column(db.JSON, default=list)
    cc = db.Column(db.JSON, default=list)

    schedule_time = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    export_file_format = db.Column(db.String(10), nullable=True)
    execute_result = db.Column(db.String(20), nullable=True)
    progress = db.Column(db.String(20), nullable=False, default=OrderProgress.PENDING, index=True)
    fix_version = db.Column(db.String(64), default="")
    is_restrict_access = db.Column(db.Boolean, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    tasks = db.relationship(
        "OrderTask", backref="order", lazy="dynamic",
        cascade="all, delete-orphan", order_by="OrderTask.position",
    )

    @property
    def approver_list(self) -> list[Approver]:
        return [Approver.from_dict(a) for a in (self.approvers or [])]

    @approver_list.setter
    def approver_list(self, values: list[Approver]) -> None:
        # Reassign so the JSON column is flagged dirty
        self.approvers = [a.to_dict() for a in values]

    def to_dict(self, include_children=False):
        result = {
            "order_id": self.order_id,
            "title": self.title,
            "remark": self.remark,
            "applicant": self.applicant,
            "db_type": self.db_type,
            "sql_type": self.sql_type,
            "environment_id": self.environment_id,
            "instance_id": self.instance_id,
            "schema": self.schema_name,
            "content": self.content,
            "approvers": self.approvers or [],
            "executors": self.executors or [],
            "reviewers": self.reviewers or [],
            "cc": self.cc or [],
            "schedule_time": self.schedule_time.isoformat() if self.schedule_time else None,
            "export_file_format": self.export_file_format,
            "execute_result": self.execute_result,
            "progress": self.progress,
            "fix_version": self.fix_version,
            "is_restrict_access": self.is_restrict_access,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_children:
            result["tasks"] = [t.to_dict() for t in self.tasks]
            result["logs"] = [
                log.to_dict()
                for log in OrderOpLog.query.filter_by(order_id=self.order_id)
                .order_by(OrderOpLog.id).all()
            ]
        return result

    def __repr__(self):
        return f"<Order {self.order_id} {self.sql_type} {self.progress}>"


class OrderTask(db.Model):
    """One statement of an approved order, executed and tracked on its own."""

    __tablename__ = "order_tasks"
    __table_args__ = (
        db.Index("ix_order_tasks_order_progress", "order_id", "progress"),
    )

    task_id = db.Column(db.String(36), primary_key=True, default=_uuid)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.order_id", ondelete="CASCADE"),
                         nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0,
                         comment="Statement index within the order content")
    db_type = db.Column(db.String(20), nullable=False)
    sql_type = db.Column(db.String(10), nullable=False)
    sql = db.Column(db.Text, nullable=False)
    progress = db.Column(db.String(20), nullable=False, default=TaskProgress.PENDING)
    result = db.Column(db.JSON, nullable=True,
                       comment="Affected rows, execution log or error detail")

    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    def to_dict(self):
        return {
            "task_id": self.task_id,
            "order_id": self.order_id,
            "position": self.position,
            "db_type": self.db_type,
            "sql_type": self.sql_type,
            "sql": self.sql,
            "progress": self.progress,
            "result": self.result,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<OrderTask {self.task_id} #{self.position} {self.progress}>"


class OrderOpLog(db.Model):
    """Append-only operation log entry."""

    __tablename__ = "order_op_logs"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(150), nullable=False)
    order_id = db.Column(db.String(36), nullable=False, index=True)
    msg = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "order_id": self.order_id,
            "msg": self.msg,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
