"""
Direct strategy: run one statement over a short-lived SQLAlchemy engine.

DML/DDL run inside a transaction and report the driver rowcount. EXPORT
statements stream their result set into ``<export_dir>/<order_id>/<task_id>``
as CSV or XLSX.
"""

import csv
import logging
import os
import time

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from sqlgate.services.execution.base import Execution, ExecutionJob, ExecutionResult, ExecutionStrategy

logger = logging.getLogger(__name__)

HEADER_FILL = PatternFill(start_color="354A5F", end_color="354A5F", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True, size=11)

# SQLite VM instructions between deadline checks
SQLITE_PROGRESS_STEPS = 10000


def _connect_args(job: ExecutionJob) -> dict:
    if job.db_type == "SQLite":
        return {"timeout": job.timeout}
    return {"connect_timeout": 10, "read_timeout": job.timeout, "write_timeout": job.timeout}


def _limit_sqlite_runtime(engine, timeout: int) -> None:
    """Interrupt SQLite statements still running ``timeout`` seconds from now.

    The driver timeout only covers lock waits, so the statement itself is
    bounded through a progress handler.
    """
    deadline = time.monotonic() + timeout

    @event.listens_for(engine, "connect")
    def _set_deadline(dbapi_conn, connection_record):
        dbapi_conn.set_progress_handler(lambda: int(time.monotonic() > deadline), SQLITE_PROGRESS_STEPS)


def _apply_header_style(ws, col_count: int) -> None:
    for col in range(1, col_count + 1):
        cell = ws.cell(row=1, column=col)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal="center", vertical="center")


def _auto_width(ws) -> None:
    """Auto-size column widths based on content (capped at 60 chars)."""
    for col in ws.columns:
        max_len = 0
        col_letter = get_column_letter(col[0].column)
        for cell in col:
            if cell.value is not None:
                max_len = max(max_len, min(len(str(cell.value)), 60))
        ws.column_dimensions[col_letter].width = max(max_len + 4, 12)


def write_export(path: str, fmt: str, columns: list[str], rows) -> int:
    """Write a result set to ``path``; returns the number of data rows."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    count = 0
    if fmt == "xlsx":
        wb = Workbook()
        ws = wb.active
        ws.title = "Export"
        ws.append(columns)
        _apply_header_style(ws, len(columns))
        for row in rows:
            ws.append([v if isinstance(v, (int, float)) or v is None else str(v) for v in row])
            count += 1
        _auto_width(ws)
        wb.save(path)
        return count

    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(columns)
        for row in rows:
            writer.writerow(row)
            count += 1
    return count


class DirectStrategy(ExecutionStrategy):
    name = "direct"

    def start(self, job: ExecutionJob) -> Execution:
        return Execution.finished(self.run(job))

    def run(self, job: ExecutionJob) -> ExecutionResult:
        started = time.perf_counter()
        engine = create_engine(job.connection_url, poolclass=NullPool,
                               connect_args=_connect_args(job))
        if job.db_type == "SQLite":
            _limit_sqlite_runtime(engine, job.timeout)
        try:
            if job.sql_type == "EXPORT":
                result = self._export(engine, job)
            else:
                result = self._execute(engine, job)
        except SQLAlchemyError as exc:
            error = str(getattr(exc, "orig", None) or exc)
            if error == "interrupted":
                error = f"statement interrupted after {job.timeout}s timeout"
            logger.warning("Task %s failed: %s", job.task_id, error,
                           extra={"order_id": job.order_id, "task_id": job.task_id})
            result = ExecutionResult(success=False, error=error, log=f"execute failed: {error}")
        except OSError as exc:
            result = ExecutionResult(success=False, error=str(exc), log=f"export failed: {exc}")
        finally:
            engine.dispose()
        result.duration_ms = int((time.perf_counter() - started) * 1000)
        return result

    def _execute(self, engine, job: ExecutionJob) -> ExecutionResult:
        with engine.begin() as conn:
            conn = conn.execution_options(no_parameters=True)
            cursor = conn.exec_driver_sql(job.sql)
            affected = max(cursor.rowcount or 0, 0)
        return ExecutionResult(success=True, affected_rows=affected,
                               log=f"success, affected rows {affected}")

    def _export(self, engine, job: ExecutionJob) -> ExecutionResult:
        fmt = (job.export_format or "csv").lower()
        path = os.path.join(job.export_dir or ".", job.order_id, f"{job.task_id}.{fmt}")
        with engine.connect() as conn:
            conn = conn.execution_options(no_parameters=True, stream_results=True)
            cursor = conn.exec_driver_sql(job.sql)
            columns = list(cursor.keys())
            count = write_export(path, fmt, columns, cursor)
        return ExecutionResult(
            success=True,
            affected_rows=count,
            log=f"success, exported {count} rows",
            extra={"file": os.path.basename(path), "path": path, "columns": columns,
                   "format": fmt},
        )
