"""
Execution engine primitives.

A strategy turns an ``ExecutionJob`` into an ``Execution`` handle. Direct
execution completes before ``start`` returns; structural changes return
while the subprocess is still running and complete the handle from a
watcher thread. Strategies never raise for target-side errors: failures
come back as ``ExecutionResult(success=False)``.
"""

import abc
import threading
from dataclasses import dataclass, field


@dataclass
class ExecutionJob:
    order_id: str
    task_id: str
    db_type: str
    sql_type: str            # order kind: DDL / DML / EXPORT
    statement_kind: str      # kind of this statement
    sql: str
    schema: str
    connection_url: object   # sqlalchemy URL
    timeout: int = 600
    export_format: str | None = None
    export_dir: str | None = None
    host: str = ""
    port: int = 0
    username: str = ""
    password: str = ""


@dataclass
class ExecutionResult:
    success: bool
    affected_rows: int = 0
    duration_ms: int = 0
    log: str = ""
    error: str = ""
    extra: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        payload = {
            "success": self.success,
            "affected_rows": self.affected_rows,
            "duration_ms": self.duration_ms,
            "log": self.log,
        }
        if self.error:
            payload["error"] = self.error
        payload.update(self.extra)
        return payload


class Execution:
    """Handle on a (possibly still running) execution."""

    def __init__(self, control_path: str | None = None):
        self.control_path = control_path
        self._done = threading.Event()
        self._result: ExecutionResult | None = None

    @classmethod
    def finished(cls, result: ExecutionResult) -> "Execution":
        execution = cls()
        execution.complete(result)
        return execution

    def complete(self, result: ExecutionResult) -> None:
        self._result = result
        self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> ExecutionResult:
        if not self._done.wait(timeout):
            raise TimeoutError("execution still running")
        return self._result


class ExecutionStrategy(abc.ABC):
    name = "base"

    @abc.abstractmethod
    def start(self, job: ExecutionJob) -> Execution:
        """Begin executing ``job``; never raises for target-side failures."""
