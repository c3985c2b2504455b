"""
Dialect-specific insert strategies for ``narrative_results``.

Both writers expose the same interface and differ only in how a repeated
``(experiment_id, incident_id, narrative_type)`` is detected:

- ``SQLiteResultWriter`` checks for the key before inserting and re-checks
  after an ``IntegrityError`` to absorb a concurrent writer winning the race.
- ``PostgresResultWriter`` lets the server resolve the conflict with
  ``INSERT ... ON CONFLICT ON CONSTRAINT ... DO NOTHING``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.models import NarrativeResult, RESULT_UNIQUE_CONSTRAINT
from ..errors import StorageError

logger = logging.getLogger(__name__)

_results_table = NarrativeResult.__table__


@dataclass(frozen=True)
class InsertResult:
    """Outcome of a single insert attempt."""
    inserted: bool
    result_id: Optional[int] = None


class ResultWriter:
    """Base class for backend insert strategies."""

    dialect_name: Optional[str] = None

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger

    def find_existing(self, session: Session, row: Dict[str, Any]) -> Optional[int]:
        """Return the ``result_id`` already stored under the row's natural key."""
        stmt = select(NarrativeResult.result_id).where(
            NarrativeResult.experiment_id == row["experiment_id"],
            NarrativeResult.incident_id == row["incident_id"],
            NarrativeResult.narrative_type == row["narrative_type"],
        )
        return session.execute(stmt).scalar_one_or_none()

    def insert(self, session: Session, row: Dict[str, Any]) -> InsertResult:
        raise NotImplementedError


class SQLiteResultWriter(ResultWriter):
    """Embedded single-file backend: client-side duplicate pre-check."""

    dialect_name = "sqlite"

    def insert(self, session: Session, row: Dict[str, Any]) -> InsertResult:
        existing = self.find_existing(session, row)
        if existing is not None:
            return InsertResult(inserted=False, result_id=existing)

        try:
            with session.begin_nested():
                result = session.execute(_results_table.insert().values(**row))
        except IntegrityError:
            existing = self.find_existing(session, row)
            if existing is not None:
                self.logger.debug(f"Concurrent insert won for key {row['experiment_id']}/{row['incident_id']}")
                return InsertResult(inserted=False, result_id=existing)
            raise
        return InsertResult(inserted=True, result_id=result.inserted_primary_key[0])


class PostgresResultWriter(ResultWriter):
    """Networked relational backend: server-side conflict clause."""

    dialect_name = "postgresql"

    def build_insert(self, row: Dict[str, Any]):
        """INSERT ... ON CONFLICT ON CONSTRAINT ... DO NOTHING RETURNING result_id."""
        return (
            postgresql.insert(_results_table)
            .values(**row)
            .on_conflict_do_nothing(constraint=RESULT_UNIQUE_CONSTRAINT)
            .returning(_results_table.c.result_id)
        )

    def insert(self, session: Session, row: Dict[str, Any]) -> InsertResult:
        with session.begin_nested():
            result_id = session.execute(self.build_insert(row)).scalar_one_or_none()
        if result_id is None:
            return InsertResult(inserted=False, result_id=self.find_existing(session, row))
        return InsertResult(inserted=True, result_id=result_id)


WRITERS = {
    SQLiteResultWriter.dialect_name: SQLiteResultWriter,
    PostgresResultWriter.dialect_name: PostgresResultWriter,
}


def resolve_writer(dialect_name: str, log: Optional[logging.Logger] = None) -> ResultWriter:
    """
    Resolve a dialect name to its writer.

    Raises:
        StorageError: If no writer supports the dialect
    """
    if dialect_name not in WRITERS:
        raise StorageError(f"No result writer available for dialect: {dialect_name}")
    return WRITERS[dialect_name](log)


def writer_for(session: Session, log: Optional[logging.Logger] = None) -> ResultWriter:
    """Writer matching the dialect ``session`` is bound to."""
    return resolve_writer(session.get_bind().dialect.name, log)


__all__ = [
    "InsertResult",
    "ResultWriter",
    "SQLiteResultWriter",
    "PostgresResultWriter",
    "resolve_writer",
    "writer_for",
]
