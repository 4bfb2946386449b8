"""
Execution engine.

``get_strategy(job)`` picks the strategy for one task: ALTER TABLE on a
MySQL target goes through gh-ost, everything else runs directly.
"""

from flask import current_app

from sqlgate.services.execution.base import (  # noqa: F401
    Execution,
    ExecutionJob,
    ExecutionResult,
    ExecutionStrategy,
)
from sqlgate.services.execution.direct import DirectStrategy
from sqlgate.services.execution.structural import StructuralStrategy
from sqlgate.services.sql_text import DDL, parse_alter_table

STRUCTURAL_DB_TYPES = {"MySQL"}


def get_strategy(job: ExecutionJob) -> ExecutionStrategy:
    if (
        job.statement_kind == DDL
        and job.db_type in STRUCTURAL_DB_TYPES
        and parse_alter_table(job.sql) is not None
    ):
        return StructuralStrategy(current_app._get_current_object())
    return DirectStrategy()
