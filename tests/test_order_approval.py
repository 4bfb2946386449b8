"""
Order submission and the approval state machine.

Test blocks:
  1. Submission validation and audit gate
  2. Unanimous approval and reject veto
  3. Administrator decisions
  4. Administrative progress changes
  5. Listing and op-logs
"""

import threading

import pytest

from sqlgate import create_app
from sqlgate.core.exceptions import (
    AlreadyDecidedError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from sqlgate.models import db
from sqlgate.models.instance import DBInstance
from sqlgate.models.order import OrderProgress, TaskProgress
from sqlgate.models.permission import UserRole
from sqlgate.services import order_service, task_service


def _messages(order_id):
    return [log.msg for log in order_service.list_op_logs(order_id)]


# ═════════════════════════════════════════════════════════════════════════
# 1. Submission
# ═════════════════════════════════════════════════════════════════════════


class TestSubmit:
    def test_submit_creates_pending_order(self, make_order):
        order = make_order(approvers=["bob", "carol"])
        assert order.progress == OrderProgress.PENDING
        assert [a["user"] for a in order.approvers] == ["bob", "carol"]
        assert all(a["status"] == "pending" for a in order.approvers)
        assert _messages(order.order_id) == ["submitted the order"]

    def test_missing_fields(self, instance):
        with pytest.raises(ValidationError) as exc:
            order_service.submit_order({"title": "x", "instance_id": instance.instance_id}, "alice")
        assert set(exc.value.details["fields"]) == {"sql_type", "content"}

    def test_unknown_instance(self):
        with pytest.raises(ValidationError, match="Unknown instance_id"):
            order_service.submit_order(
                {"title": "x", "sql_type": "DML", "instance_id": "nope", "content": "DELETE FROM t WHERE 1"},
                "alice",
            )

    def test_kind_mismatch_rejected(self, make_order):
        with pytest.raises(ValidationError):
            make_order(content="ALTER TABLE users ADD COLUMN email TEXT", sql_type="DML")

    def test_blocking_audit_returns_findings(self, make_order):
        with pytest.raises(ValidationError, match="SQL audit failed") as exc:
            make_order(content="DELETE FROM users")
        findings = exc.value.details["findings"]
        assert findings[0]["level"] == "ERROR"
        assert findings[0]["sql"] == "DELETE FROM users"

    def test_export_order_skips_audit(self, make_order):
        order = make_order(content="SELECT * FROM users", sql_type="EXPORT", export_file_format="xlsx")
        assert order.export_file_format == "xlsx"

    def test_export_format_validated(self, make_order):
        with pytest.raises(ValidationError, match="export_file_format"):
            make_order(content="SELECT * FROM users", sql_type="EXPORT", export_file_format="pdf")

    def test_bad_schedule_time(self, make_order):
        with pytest.raises(ValidationError, match="schedule_time"):
            make_order(schedule_time="tomorrow")


# ═════════════════════════════════════════════════════════════════════════
# 2. Unanimity and veto
# ═════════════════════════════════════════════════════════════════════════


class TestDecide:
    def test_single_approver_approves_and_splits(self, make_order):
        order = make_order(approvers=["bob"])
        order = order_service.decide(order.order_id, "bob", "pass", "lgtm")
        assert order.progress == OrderProgress.APPROVED
        tasks = task_service.list_tasks(order.order_id)
        assert len(tasks) == 1
        assert tasks[0].progress == TaskProgress.PENDING
        assert "bob approved the order, comment: lgtm" in _messages(order.order_id)

    def test_unanimity_required(self, make_order):
        order = make_order(approvers=["bob", "carol"])
        order = order_service.decide(order.order_id, "bob", "pass")
        assert order.progress == OrderProgress.PENDING
        assert task_service.list_tasks(order.order_id) == []
        assert "waiting for other approvers" in _messages(order.order_id)[-1]

        order = order_service.decide(order.order_id, "carol", "pass")
        assert order.progress == OrderProgress.APPROVED
        assert {a["status"] for a in order.approvers} == {"pass"}

    def test_single_reject_vetoes(self, make_order):
        order = make_order(approvers=["bob", "carol"])
        order_service.decide(order.order_id, "bob", "pass")
        order = order_service.decide(order.order_id, "carol", "reject", "too risky")
        assert order.progress == OrderProgress.REJECTED
        assert "carol rejected the order, comment: too risky" in _messages(order.order_id)
        assert task_service.list_tasks(order.order_id) == []

    def test_decisions_closed_after_reject(self, make_order):
        order = make_order(approvers=["bob", "carol"])
        order_service.decide(order.order_id, "bob", "reject")
        with pytest.raises(InvalidStateError):
            order_service.decide(order.order_id, "carol", "pass")

    def test_same_approver_cannot_decide_twice(self, make_order):
        order = make_order(approvers=["bob", "carol"])
        order_service.decide(order.order_id, "bob", "pass")
        with pytest.raises(AlreadyDecidedError):
            order_service.decide(order.order_id, "bob", "reject")

    def test_stranger_is_forbidden(self, make_order):
        order = make_order(approvers=["bob"])
        with pytest.raises(ForbiddenError):
            order_service.decide(order.order_id, "mallory", "pass")
        assert order_service.get_order(order.order_id).progress == OrderProgress.PENDING

    def test_invalid_decision(self, make_order):
        order = make_order()
        with pytest.raises(ValidationError):
            order_service.decide(order.order_id, "bob", "maybe")

    def test_unknown_order(self):
        with pytest.raises(NotFoundError):
            order_service.decide("missing", "bob", "pass")

    def test_alter_plus_update_splits_into_two_tasks(self, make_order, instance):
        instance.inspect_params = {"disabled_rules": ["where_required"]}
        db.session.commit()
        content = "ALTER TABLE users ADD COLUMN email TEXT; UPDATE users SET email = 'x'"

        with pytest.raises(ValidationError):
            make_order(content=content, sql_type="DML")

        order = make_order(content=content, sql_type="DDL", approvers=["bob"])
        order_service.decide(order.order_id, "bob", "pass")
        tasks = task_service.list_tasks(order.order_id)
        assert [(t.position, t.sql_type) for t in tasks] == [(0, "DDL"), (1, "DML")]
        assert tasks[1].sql == "UPDATE users SET email = 'x'"


class TestConcurrentDecisions:
    def test_racing_votes_transition_once(self, tmp_path):
        approvers = [f"approver{i}" for i in range(5)]
        file_app = create_app("testing", {
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'sqlgate.db'}",
            "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"timeout": 30}},
        })
        with file_app.app_context():
            db.create_all()
            inst = DBInstance(db_type="SQLite", hostname=str(tmp_path / "unused.db"))
            db.session.add(inst)
            db.session.add(UserRole(username="root", role="admin"))
            db.session.commit()
            order = order_service.submit_order(
                {"title": "race", "sql_type": "DML", "instance_id": inst.instance_id,
                 "content": ("UPDATE users SET age = 1 WHERE id = 1; UPDATE users SET age = 2 WHERE id = 2; "
                             "DELETE FROM users WHERE id = 3"),
                 "approvers": approvers},
                "alice",
            )
            order_id = order.order_id

        start = threading.Barrier(len(approvers) + 1)
        outcomes = []
        lock = threading.Lock()

        def vote(username, decision):
            start.wait(10)
            with file_app.app_context():
                try:
                    order_service.decide(order_id, username, decision)
                    result = "ok"
                except InvalidStateError:
                    result = "closed"
                except Exception as exc:  # surfaced through the assertion below
                    result = repr(exc)
            with lock:
                outcomes.append((username, result))

        threads = [threading.Thread(target=vote, args=(u, "pass")) for u in approvers]
        threads.append(threading.Thread(target=vote, args=("root", "reject")))
        for t in threads:
            t.start()
        for t in threads:
            t.join(60)

        assert len(outcomes) == len(approvers) + 1
        assert {result for _, result in outcomes} <= {"ok", "closed"}

        with file_app.app_context():
            order = order_service.get_order(order_id)
            messages = [log.msg for log in order_service.list_op_logs(order_id)]
            finals = [m for m in messages
                      if "rejected the order" in m or "approved the order, comment" in m]
            tasks = task_service.list_tasks(order_id)

            assert order.progress in (OrderProgress.APPROVED, OrderProgress.REJECTED)
            assert len(finals) == 1
            if order.progress == OrderProgress.APPROVED:
                assert len(tasks) == 3
                assert dict(outcomes)["root"] == "closed"
                assert all(a["status"] == "pass" for a in order.approvers)
            else:
                assert tasks == []
                assert dict(outcomes)["root"] == "ok"
                assert finals[0].startswith("root rejected the order")
            db.session.remove()
            db.engine.dispose()


# ═════════════════════════════════════════════════════════════════════════
# 3. Administrators
# ═════════════════════════════════════════════════════════════════════════


class TestAdministratorDecisions:
    def test_admin_approves_order_without_approvers(self, make_order, admin):
        order = make_order(approvers=[])
        order = order_service.decide(order.order_id, admin, "pass")
        assert order.progress == OrderProgress.APPROVED
        assert order.approvers == []

    def test_non_admin_cannot_decide_order_without_approvers(self, make_order):
        order = make_order(approvers=[])
        with pytest.raises(ForbiddenError):
            order_service.decide(order.order_id, "bob", "pass")

    def test_admin_pass_does_not_override_listed_approvers(self, make_order, admin):
        order = make_order(approvers=["bob", "carol"])
        order = order_service.decide(order.order_id, admin, "pass")
        assert order.progress == OrderProgress.PENDING
        assert [a["user"] for a in order.approvers] == ["bob", "carol"]
        assert all(a["status"] == "pending" for a in order.approvers)

    def test_admin_reject_vetoes(self, make_order, admin):
        order = make_order(approvers=["bob"])
        order = order_service.decide(order.order_id, admin, "reject", "no")
        assert order.progress == OrderProgress.REJECTED


# ═════════════════════════════════════════════════════════════════════════
# 4. Progress overrides
# ═════════════════════════════════════════════════════════════════════════


class TestUpdateProgress:
    def test_manual_approval_generates_tasks(self, make_order):
        order = make_order(content="UPDATE users SET age = 1 WHERE id = 1; DELETE FROM users WHERE id = 2")
        order = order_service.update_progress(order.order_id, OrderProgress.APPROVED, "root", "hotfix")
        assert order.progress == OrderProgress.APPROVED
        assert len(task_service.list_tasks(order.order_id)) == 2
        assert "updated order progress to Approved, remark: hotfix" in _messages(order.order_id)

    def test_generation_is_idempotent(self, make_order):
        order = make_order(approvers=["bob"])
        order_service.decide(order.order_id, "bob", "pass")
        order_service.update_progress(order.order_id, OrderProgress.APPROVED, "root")
        assert len(task_service.list_tasks(order.order_id)) == 1

    def test_unknown_progress(self, make_order):
        order = make_order()
        with pytest.raises(ValidationError):
            order_service.update_progress(order.order_id, "Done", "root")


# ═════════════════════════════════════════════════════════════════════════
# 5. Queries
# ═════════════════════════════════════════════════════════════════════════


class TestListOrders:
    def test_filters_and_pagination(self, make_order):
        for i in range(3):
            make_order(applicant="alice", title=f"alice {i}")
        make_order(applicant="dave", title="dave order")

        page = order_service.list_orders({"applicant": "alice"}, page=1, page_size=2)
        assert page["total"] == 3
        assert len(page["items"]) == 2

        assert order_service.list_orders({"title": "dave"})["total"] == 1
        assert order_service.list_orders({"progress": "Approved"})["total"] == 0

    def test_page_size_capped(self, make_order):
        make_order()
        assert order_service.list_orders({}, page_size=1000)["page_size"] == 100
