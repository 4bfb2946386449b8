"""
Structural-change strategy: online ALTER TABLE through gh-ost.

``start`` spawns the gh-ost process, records its control socket in the lookup
store and returns at once. A watcher thread streams every output line to the
order channel and completes the Execution when the process exits.
"""

import collections
import logging
import os
import shlex
import subprocess
import threading
import time

from sqlgate.services import cache_service
from sqlgate.services.execution.base import Execution, ExecutionJob, ExecutionResult, ExecutionStrategy
from sqlgate.services.notification import publish_event
from sqlgate.services.sql_text import parse_alter_table

logger = logging.getLogger(__name__)

# Output lines kept in the task result
LOG_TAIL = 200


def socket_path(socket_dir: str, order_id: str, schema: str, table: str) -> str:
    """Control socket of the gh-ost run for (order, schema, table)."""
    return os.path.join(socket_dir, f"gh-ost.{order_id}.{schema}.{table}.sock")


class StructuralStrategy(ExecutionStrategy):
    name = "structural"

    def __init__(self, app, popen=subprocess.Popen):
        self.app = app
        self._popen = popen

    @property
    def config(self):
        return self.app.config

    def build_command(self, job: ExecutionJob, schema: str, table: str, alter: str, sock: str) -> list[str]:
        cmd = [
            self.config.get("GHOST_BINARY", "gh-ost"),
            f"--host={job.host}",
            f"--port={job.port}",
            f"--user={job.username}",
            f"--password={job.password}",
            f"--database={schema}",
            f"--table={table}",
            f"--alter={alter}",
            f"--serve-socket-file={sock}",
            "--allow-on-master",
            "--assume-rbr",
            "--initially-drop-old-table",
            "--initially-drop-ghost-table",
            "--ok-to-drop-table",
            "--execute",
        ]
        extra = self.config.get("GHOST_EXTRA_ARGS") or ""
        cmd.extend(shlex.split(extra))
        return cmd

    def start(self, job: ExecutionJob) -> Execution:
        parsed = parse_alter_table(job.sql)
        if parsed is None:
            return Execution.finished(ExecutionResult(
                success=False, error="not an ALTER TABLE statement",
                log="gh-ost requires ALTER TABLE [schema.]table ...",
            ))
        schema, table, alter = parsed
        schema = schema or job.schema
        sock = socket_path(self.config.get("GHOST_SOCKET_DIR", "/tmp"), job.order_id, schema, table)
        cmd = self.build_command(job, schema, table, alter, sock)

        started = time.perf_counter()
        try:
            proc = self._popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            logger.error("Cannot start gh-ost for task %s: %s", job.task_id, exc,
                         extra={"order_id": job.order_id, "task_id": job.task_id})
            publish_event(job.order_id, "status", f"gh-ost failed to start: {exc}", app=self.app)
            return Execution.finished(ExecutionResult(success=False, error=str(exc),
                                                      log=f"gh-ost failed to start: {exc}"))

        cache_service.remember_socket(job.order_id, sock, self.config.get("GHOST_SOCKET_TTL", 86400))
        logger.info("gh-ost started for %s.%s pid=%s", schema, table, proc.pid,
                    extra={"order_id": job.order_id, "task_id": job.task_id})
        publish_event(job.order_id, "status", f"gh-ost started on {schema}.{table}", app=self.app)

        execution = Execution(control_path=sock)
        watcher = threading.Thread(
            target=self._watch,
            args=(proc, job, sock, started, execution),
            name=f"gh-ost-{job.task_id}",
            daemon=True,
        )
        watcher.start()
        return execution

    def _watch(self, proc, job: ExecutionJob, sock: str, started: float, execution: Execution) -> None:
        tail = collections.deque(maxlen=LOG_TAIL)
        result = None
        try:
            try:
                for line in proc.stdout:
                    line = line.rstrip("\n")
                    if not line:
                        continue
                    tail.append(line)
                    publish_event(job.order_id, "output", line, app=self.app)
                exit_code = proc.wait()
            except Exception as exc:
                logger.exception("gh-ost output stream failed for task %s", job.task_id,
                                 extra={"order_id": job.order_id, "task_id": job.task_id})
                tail.append(f"output stream error: {exc}")
                proc.kill()
                proc.wait()
                # killed runs always fail, whatever the exit status
                exit_code = -1
            finally:
                cache_service.forget_socket(job.order_id)
            result = self._result(job, exit_code, tail, started)
        finally:
            if result is None:
                result = ExecutionResult(
                    success=False,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                    log="\n".join(tail),
                    error="gh-ost watcher stopped unexpectedly",
                )
            execution.complete(result)

    def _result(self, job: ExecutionJob, exit_code: int, tail, started: float) -> ExecutionResult:
        duration_ms = int((time.perf_counter() - started) * 1000)
        log = "\n".join(tail)
        if exit_code == 0:
            result = ExecutionResult(success=True, duration_ms=duration_ms, log=log,
                                     extra={"exit_code": 0})
            publish_event(job.order_id, "status", "gh-ost completed", app=self.app)
        else:
            error = tail[-1] if tail else f"gh-ost exited with code {exit_code}"
            result = ExecutionResult(success=False, duration_ms=duration_ms, log=log, error=error,
                                     extra={"exit_code": exit_code})
            publish_event(job.order_id, "status", f"gh-ost failed (exit code {exit_code})", app=self.app)
        logger.info("gh-ost finished exit_code=%s", exit_code,
                    extra={"order_id": job.order_id, "task_id": job.task_id})
        return result
