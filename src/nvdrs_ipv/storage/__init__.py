"""
Storage layer for narrative results.

All writes to ``narrative_results`` and the experiment counters go through
:func:`store_result` or :func:`store_results_batch`.
"""

from .backends import (
    InsertResult,
    ResultWriter,
    SQLiteResultWriter,
    PostgresResultWriter,
    resolve_writer,
    writer_for,
)
from .records import NarrativeResultRecord, validate_record
from .results import BatchOutcome, StoreOutcome, store_result, store_results_batch

__all__ = [
    "InsertResult",
    "ResultWriter",
    "SQLiteResultWriter",
    "PostgresResultWriter",
    "resolve_writer",
    "writer_for",
    "NarrativeResultRecord",
    "validate_record",
    "BatchOutcome",
    "StoreOutcome",
    "store_result",
    "store_results_batch",
]
