"""
Deferred execution: one-shot timers for scheduled orders.

APScheduler's BackgroundScheduler is replaced by a MagicMock so no timer
thread runs; catch-up executions use a synchronous spawn.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from apscheduler.jobstores.base import JobLookupError

from sqlgate.models.order import OrderProgress
from sqlgate.services import order_service
from sqlgate.services.scheduler_service import DeferredScheduler, OneShotTrigger, execute_scheduled_order


def _sync_spawn(fn, *args):
    fn(*args)


@pytest.fixture()
def fake_scheduler():
    sched = MagicMock()
    sched.running = False
    sched.add_job.side_effect = lambda fn, **kw: MagicMock(id=kw["id"])
    return sched


@pytest.fixture()
def deferred(app, fake_scheduler):
    fired = []
    svc = DeferredScheduler(scheduler=fake_scheduler, spawn=_sync_spawn, executor=fired.append)
    svc.app = app
    svc.fired = fired
    return svc


def _future(minutes=30):
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


class TestOneShotTrigger:
    def test_fires_once(self):
        run_at = _future()
        trigger = OneShotTrigger(run_at)
        assert trigger.get_next_fire_time(None, datetime.now(timezone.utc)) == run_at
        assert trigger.get_next_fire_time(run_at, datetime.now(timezone.utc)) is None

    def test_naive_time_is_utc(self):
        trigger = OneShotTrigger(datetime(2030, 1, 1, 12, 0))
        assert trigger.run_at == datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestRegister:
    def test_future_time_adds_a_job(self, deferred, fake_scheduler):
        assert deferred.register("o-1", _future())
        assert deferred.is_registered("o-1")
        kwargs = fake_scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == "order:o-1"
        assert kwargs["args"] == ["o-1"]
        assert isinstance(kwargs["trigger"], OneShotTrigger)
        assert deferred.fired == []

    def test_re_register_replaces_previous_timer(self, deferred, fake_scheduler):
        deferred.register("o-1", _future(10))
        deferred.register("o-1", _future(20))
        fake_scheduler.remove_job.assert_called_once_with("order:o-1")
        assert fake_scheduler.add_job.call_count == 2

    def test_past_time_executes_immediately(self, deferred, fake_scheduler):
        assert deferred.register("o-1", datetime.now(timezone.utc) - timedelta(minutes=5))
        assert deferred.fired == ["o-1"]
        fake_scheduler.add_job.assert_not_called()
        assert not deferred.is_registered("o-1")

    def test_no_time_is_ignored(self, deferred):
        assert deferred.register("o-1", None) is False

    def test_cancel_is_safe_without_timer(self, deferred):
        assert deferred.cancel("missing") is False

    def test_cancel_tolerates_job_already_gone(self, deferred, fake_scheduler):
        deferred.register("o-1", _future())
        fake_scheduler.remove_job.side_effect = JobLookupError("order:o-1")
        assert deferred.cancel("o-1") is True
        assert not deferred.is_registered("o-1")

    def test_fire_drops_registration(self, deferred):
        deferred.register("o-1", _future())
        deferred.fire("o-1")
        assert deferred.fired == ["o-1"]
        assert not deferred.is_registered("o-1")


class TestReconcile:
    def test_registers_approved_scheduled_orders(self, deferred, make_order):
        scheduled = make_order(schedule_time=_future().isoformat())
        make_order(schedule_time=_future().isoformat())  # still pending
        make_order()  # no schedule
        order_service.update_progress(scheduled.order_id, OrderProgress.APPROVED, "root")

        assert deferred.reconcile() == 1
        assert deferred.is_registered(scheduled.order_id)

    def test_order_state_drives_the_timer(self, app, deferred, make_order, monkeypatch):
        monkeypatch.setitem(app.config, "SCHEDULER_ENABLED", True)
        monkeypatch.setitem(app.extensions, "deferred_scheduler", deferred)
        order = make_order(approvers=["bob"], schedule_time=_future().isoformat())

        order_service.decide(order.order_id, "bob", "pass")
        assert deferred.is_registered(order.order_id)

        order_service.update_progress(order.order_id, OrderProgress.REJECTED, "root")
        assert not deferred.is_registered(order.order_id)


class TestExecuteScheduledOrder:
    def test_runs_execute_all_as_first_executor(self, make_order, query_target):
        order = make_order(approvers=["bob"], executors=["carol", "dave"],
                           content="UPDATE users SET age = 7 WHERE id = 1")
        order_service.decide(order.order_id, "bob", "pass")

        execute_scheduled_order(order.order_id)

        order = order_service.get_order(order.order_id)
        assert order.progress == OrderProgress.COMPLETED
        assert query_target("SELECT age FROM users WHERE id = 1") == [(7,)]
        users = {log.username for log in order_service.list_op_logs(order.order_id)}
        assert "carol" in users

    def test_noop_unless_still_approved(self, make_order, query_target):
        order = make_order(content="UPDATE users SET age = 7 WHERE id = 1")
        execute_scheduled_order(order.order_id)
        assert order_service.get_order(order.order_id).progress == OrderProgress.PENDING
        assert query_target("SELECT age FROM users WHERE id = 1") == [(30,)]

    def test_unknown_order_is_ignored(self):
        execute_scheduled_order("missing")
