"""
SQLGate: SQL change-order platform
Deferred execution scheduler.

Approved orders with a ``schedule_time`` get a one-shot APScheduler job that
runs ExecuteAll for them. The service object is created once per app and
stored in ``app.extensions["deferred_scheduler"]``.

Architecture:
    - OneShotTrigger: fires once at ``run_at`` and then never again
    - DeferredScheduler: owns the BackgroundScheduler and the
      order_id → job id map (guarded by its own lock)
    - reconcile(): re-registers every Approved + scheduled order at startup
    - fire(): re-reads the order and only acts if it is still Approved
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from flask import Flask

from sqlgate.core.exceptions import SqlGateError
from sqlgate.models import db
from sqlgate.models.order import Order, OrderProgress

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OneShotTrigger(BaseTrigger):
    """Next fire time is ``run_at`` until it has fired once, then never."""

    def __init__(self, run_at: datetime):
        self.run_at = _as_utc(run_at)

    def get_next_fire_time(self, previous_fire_time, now):
        if previous_fire_time is None:
            return self.run_at
        return None

    def __str__(self):
        return f"oneshot[{self.run_at.isoformat()}]"

    def __repr__(self):
        return f"<OneShotTrigger (run_at='{self.run_at.isoformat()}')>"


def _spawn_thread(fn: Callable, *args) -> None:
    threading.Thread(target=fn, args=args, daemon=True, name="deferred-catch-up").start()


def execute_scheduled_order(order_id: str) -> None:
    """Default fire action; must run inside an app context."""
    from sqlgate.services import task_service

    order = Order.query_active().filter_by(order_id=order_id).first()
    if order is None or order.progress != OrderProgress.APPROVED:
        logger.info("Scheduled execution skipped: order no longer approved",
                    extra={"order_id": order_id})
        return
    executors = order.executors or []
    username = executors[0] if executors else order.applicant
    logger.info("Scheduled execution starting as %s", username, extra={"order_id": order_id})
    try:
        summary = task_service.execute_all(order_id, username)
    except SqlGateError as exc:
        logger.error("Scheduled execution failed: %s", exc, extra={"order_id": order_id})
        return
    logger.info("Scheduled execution finished: %s", summary["execute_result"],
                extra={"order_id": order_id})


class DeferredScheduler:
    """One-shot timers for scheduled orders."""

    def __init__(
        self,
        app: Flask | None = None,
        scheduler=None,
        spawn: Callable | None = None,
        executor: Callable[[str], None] | None = None,
    ):
        self.app: Flask | None = None
        self._scheduler = scheduler
        self._spawn = spawn or _spawn_thread
        self._executor = executor or execute_scheduled_order
        self._jobs: dict[str, str] = {}
        self._lock = threading.Lock()
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        self.app = app
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(timezone=timezone.utc)
        app.extensions["deferred_scheduler"] = self
        if app.config.get("SCHEDULER_ENABLED"):
            self.start()
        logger.info("DeferredScheduler initialized (enabled=%s)", bool(app.config.get("SCHEDULER_ENABLED")))

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return bool(self._scheduler is not None and self._scheduler.running)

    def start(self) -> int:
        if not self._scheduler.running:
            self._scheduler.start()
        with self.app.app_context():
            return self.reconcile()

    def shutdown(self) -> None:
        if self.running:
            self._scheduler.shutdown(wait=False)

    def reconcile(self) -> int:
        """Register every Approved order that carries a schedule time."""
        orders = db.session.execute(
            db.select(Order.order_id, Order.schedule_time).where(
                Order.progress == OrderProgress.APPROVED,
                Order.schedule_time.is_not(None),
                Order.deleted_at.is_(None),
            )
        ).all()
        for order_id, schedule_time in orders:
            self.register(order_id, schedule_time)
        logger.info("Scheduler reconciled %d scheduled orders", len(orders))
        return len(orders)

    # ── Registration ──────────────────────────────────────────────────────

    def register(self, order_id: str, run_at: datetime | None) -> bool:
        """Arm a timer; a time in the past executes immediately."""
        if run_at is None:
            return False
        run_at = _as_utc(run_at)
        if run_at <= datetime.now(timezone.utc):
            logger.info("Schedule time %s already passed, executing now", run_at.isoformat(),
                        extra={"order_id": order_id})
            self.cancel(order_id)
            self._spawn(self.fire, order_id)
            return True

        with self._lock:
            previous = self._jobs.pop(order_id, None)
            if previous is not None:
                self._remove_job(previous)
            job = self._scheduler.add_job(
                self.fire,
                trigger=OneShotTrigger(run_at),
                args=[order_id],
                id=f"order:{order_id}",
                name=f"execute order {order_id}",
                replace_existing=True,
                misfire_grace_time=None,
                coalesce=True,
            )
            self._jobs[order_id] = job.id
        logger.info("Scheduled execution at %s", run_at.isoformat(), extra={"order_id": order_id})
        return True

    def cancel(self, order_id: str) -> bool:
        """Disarm the timer of an order; safe when none exists."""
        with self._lock:
            job_id = self._jobs.pop(order_id, None)
            if job_id is None:
                return False
            self._remove_job(job_id)
        logger.info("Scheduled execution cancelled", extra={"order_id": order_id})
        return True

    def _remove_job(self, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            # Fired or removed already
            pass

    def is_registered(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._jobs

    def fire(self, order_id: str) -> None:
        with self._lock:
            self._jobs.pop(order_id, None)
        with self.app.app_context():
            self._executor(order_id)
