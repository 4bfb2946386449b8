"""
Task manager.

Splits approved orders into tasks and runs them one at a time per order.

Claiming a task is a small transaction that always starts with a
conditional UPDATE of the order row. On server databases that takes the
row lock; on SQLite it takes the write lock. The sibling check and the task
update that follow therefore never race another claim on the same order,
and task + order move to Executing together or not at all.
"""

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import exists, update

from sqlgate.core.exceptions import (
    BusyError,
    ExecutionFailure,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from sqlgate.models import commit_session, db
from sqlgate.models.instance import DBInstance
from sqlgate.models.order import ExecuteResult, Order, OrderProgress, OrderTask, TaskProgress
from sqlgate.services import authorization
from sqlgate.services.execution import ExecutionJob, ExecutionResult, get_strategy
from sqlgate.services.notification import publish_event
from sqlgate.services.order_service import get_order, log_op
from sqlgate.services.sql_text import split_statements, statement_kind

logger = logging.getLogger(__name__)


def _now():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════
# Split
# ═════════════════════════════════════════════════════════════════════════


def generate_tasks(order: Order) -> list[OrderTask]:
    """Create one Pending task per statement; no-op if tasks already exist.

    Stages the rows in the current session; the caller commits.
    """
    if db.session.query(exists().where(OrderTask.order_id == order.order_id)).scalar():
        return []
    tasks = []
    for position, stmt in enumerate(split_statements(order.content)):
        kind = "EXPORT" if order.sql_type == "EXPORT" else statement_kind(stmt)
        task = OrderTask(
            order_id=order.order_id,
            position=position,
            db_type=order.db_type,
            sql_type=kind,
            sql=stmt,
            progress=TaskProgress.PENDING,
        )
        db.session.add(task)
        tasks.append(task)
    logger.info("Generated %d tasks", len(tasks), extra={"order_id": order.order_id})
    return tasks


def list_tasks(order_id: str) -> list[OrderTask]:
    get_order(order_id)
    return (
        OrderTask.query.filter_by(order_id=order_id)
        .order_by(OrderTask.position)
        .all()
    )


def get_task(task_id: str) -> OrderTask:
    task = db.session.get(OrderTask, task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


# ═════════════════════════════════════════════════════════════════════════
# Claim
# ═════════════════════════════════════════════════════════════════════════


def _claim(task_id: str, order_id: str) -> None:
    """Atomically move task and order to Executing.

    Raises:
        InvalidStateError: order not executable, or task completed / running.
        BusyError: another task of the order is Executing.
    """
    db.session.rollback()
    order_rows = db.session.execute(
        update(Order)
        .where(Order.order_id == order_id,
               Order.progress.in_(OrderProgress.EXECUTABLE))
        .values(progress=OrderProgress.EXECUTING, updated_at=_now())
        .execution_options(synchronize_session=False)
    ).rowcount
    if order_rows != 1:
        db.session.rollback()
        raise InvalidStateError("Order is not approved for execution")

    busy = db.session.execute(
        db.select(OrderTask.task_id)
        .where(OrderTask.order_id == order_id,
               OrderTask.task_id != task_id,
               OrderTask.progress == TaskProgress.EXECUTING)
        .limit(1)
        .with_for_update()
    ).first()
    if busy is not None:
        db.session.rollback()
        raise BusyError("Another task of this order is executing")

    task_rows = db.session.execute(
        update(OrderTask)
        .where(OrderTask.task_id == task_id,
               OrderTask.progress.notin_([TaskProgress.EXECUTING, TaskProgress.COMPLETED]))
        .values(progress=TaskProgress.EXECUTING, updated_at=_now())
        .execution_options(synchronize_session=False)
    ).rowcount
    if task_rows != 1:
        db.session.rollback()
        task = get_task(task_id)
        if task.progress == TaskProgress.COMPLETED:
            raise InvalidStateError("Task already completed")
        raise InvalidStateError("Task is already running")
    commit_session()


# ═════════════════════════════════════════════════════════════════════════
# Execute
# ═════════════════════════════════════════════════════════════════════════


def _build_job(order: Order, task: OrderTask) -> ExecutionJob:
    instance = db.session.get(DBInstance, order.instance_id)
    if instance is None or instance.is_deleted:
        raise NotFoundError(resource="Instance", resource_id=order.instance_id)
    cfg = current_app.config
    return ExecutionJob(
        order_id=order.order_id,
        task_id=task.task_id,
        db_type=order.db_type,
        sql_type=order.sql_type,
        statement_kind=task.sql_type,
        sql=task.sql,
        schema=order.schema_name,
        connection_url=instance.connection_url(order.schema_name),
        timeout=cfg.get("EXECUTE_TIMEOUT_SECONDS", 600),
        export_format=order.export_file_format,
        export_dir=cfg.get("EXPORT_DIR"),
        host=instance.hostname,
        port=instance.port or 0,
        username=instance.username or "",
        password=instance.password,
    )


def _record_outcome(task_id: str, order_id: str, username: str, result: ExecutionResult) -> None:
    progress = TaskProgress.COMPLETED if result.success else TaskProgress.FAILED
    db.session.execute(
        update(OrderTask)
        .where(OrderTask.task_id == task_id)
        .values(progress=progress, result=result.to_payload(), updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.success:
        msg = f"task {task_id}: success, affected rows {result.affected_rows}"
    else:
        msg = f"task {task_id}: failed, {result.error}"
    log_op(order_id, username, msg)
    commit_session()
    db.session.expire_all()


def _finish_if_done(order_id: str, username: str) -> bool:
    """Complete the order when every task is Completed."""
    unfinished = exists().where(
        OrderTask.order_id == order_id,
        OrderTask.progress != TaskProgress.COMPLETED,
    )
    rows = db.session.execute(
        update(Order)
        .where(Order.order_id == order_id,
               Order.progress == OrderProgress.EXECUTING,
               ~unfinished)
        .values(progress=OrderProgress.COMPLETED, updated_at=_now())
        .execution_options(synchronize_session=False)
    ).rowcount
    if rows:
        log_op(order_id, username, "all tasks completed, order finished")
    commit_session()
    db.session.expire_all()
    if rows:
        logger.info("Order completed", extra={"order_id": order_id})
        publish_event(order_id, "status", "order completed")
    return bool(rows)


def execute_task(task_id: str, username: str, *, authorized: bool = False) -> OrderTask:
    """Run one task. Raises ExecutionFailure after persisting a failed result."""
    task = get_task(task_id)
    order = get_order(task.order_id)
    order_id = order.order_id
    if not authorized:
        authorization.require_executor(order.executors, username)
    if order.progress not in OrderProgress.EXECUTABLE:
        raise InvalidStateError(f"Order is {order.progress}, execution not allowed")
    if task.progress == TaskProgress.COMPLETED:
        raise InvalidStateError("Task already completed")
    if task.progress == TaskProgress.EXECUTING:
        raise InvalidStateError("Task is already running")

    _claim(task_id, order_id)
    logger.info("Task execution started by %s", username,
                extra={"order_id": order_id, "task_id": task_id, "username": username})
    publish_event(order_id, "status", f"task {task_id} started")

    order = get_order(order_id)
    task = get_task(task_id)
    try:
        job = _build_job(order, task)
        strategy = get_strategy(job)
        result = strategy.start(job).wait()
    except Exception as exc:
        logger.exception("Task execution aborted", extra={"order_id": order_id, "task_id": task_id})
        result = ExecutionResult(success=False, error=str(exc), log=f"execution aborted: {exc}")

    _record_outcome(task_id, order_id, username, result)
    if not result.success:
        publish_event(order_id, "status", f"task {task_id} failed: {result.error}")
        raise ExecutionFailure(f"Task {task_id} failed: {result.error}", payload=result.to_payload())

    publish_event(order_id, "status", f"task {task_id} completed, affected rows {result.affected_rows}")
    _finish_if_done(order_id, username)
    return get_task(task_id)


def execute_all(order_id: str, username: str) -> dict:
    """Run every non-Completed task in split order.

    A failed task does not stop the batch unless ``STOP_ON_TASK_FAILURE``
    is set. Returns ``{execute_result, succeeded, failed, skipped}``.
    """
    order = get_order(order_id)
    authorization.require_executor(order.executors, username)
    if order.progress not in OrderProgress.EXECUTABLE:
        raise InvalidStateError(f"Order is {order.progress}, execution not allowed")

    tasks = list_tasks(order_id)
    if any(t.progress in TaskProgress.RUNNING for t in tasks):
        raise BusyError("A task of this order is executing or paused")
    if not tasks:
        logger.warning("Execute-all on an order without tasks", extra={"order_id": order_id})
        return {"execute_result": ExecuteResult.NOTHING_TO_DO, "succeeded": 0, "failed": 0, "skipped": 0}

    stop_on_failure = current_app.config.get("STOP_ON_TASK_FAILURE", False)
    pending_ids = [t.task_id for t in tasks if t.progress != TaskProgress.COMPLETED]
    skipped = len(tasks) - len(pending_ids)
    log_op(order_id, username, f"execute all tasks ({len(pending_ids)} to run)")
    commit_session()

    succeeded = failed = 0
    for task_id in pending_ids:
        try:
            execute_task(task_id, username, authorized=True)
            succeeded += 1
        except ExecutionFailure:
            failed += 1
            if stop_on_failure:
                logger.info("Stopping batch after failed task", extra={"order_id": order_id, "task_id": task_id})
                break

    if failed == 0 and succeeded == 0:
        outcome = ExecuteResult.NOTHING_TO_DO
    elif failed == 0:
        outcome = ExecuteResult.ALL_SUCCEEDED
    elif succeeded == 0:
        outcome = ExecuteResult.ALL_FAILED
    else:
        outcome = ExecuteResult.PARTIAL

    db.session.execute(
        update(Order)
        .where(Order.order_id == order_id)
        .values(execute_result=outcome, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    log_op(order_id, username, f"execute all finished: {succeeded} succeeded, {failed} failed")
    commit_session()
    _finish_if_done(order_id, username)

    logger.info("Execute-all %s: %d succeeded, %d failed, %d skipped", outcome, succeeded, failed, skipped,
                extra={"order_id": order_id, "username": username})
    publish_event(order_id, "status", f"execute all finished: {succeeded} succeeded, {failed} failed")
    return {"execute_result": outcome, "succeeded": succeeded, "failed": failed, "skipped": skipped}


# ═════════════════════════════════════════════════════════════════════════
# Manual progress
# ═════════════════════════════════════════════════════════════════════════


def update_task_progress(task_id: str, progress: str, username: str) -> OrderTask:
    """Administrative override of a task's progress (e.g. reset for retry)."""
    if progress not in TaskProgress.ALL:
        raise ValidationError(f"progress must be one of {sorted(TaskProgress.ALL)}")
    task = get_task(task_id)
    previous = task.progress
    if progress == TaskProgress.EXECUTING and previous != TaskProgress.EXECUTING:
        raise InvalidStateError("Tasks enter Executing only through execution")
    task.progress = progress
    log_op(task.order_id, username, f"task {task_id} progress {previous} → {progress}")
    commit_session()
    logger.info("Task progress %s → %s by %s", previous, progress, username,
                extra={"order_id": task.order_id, "task_id": task_id})
    return task
