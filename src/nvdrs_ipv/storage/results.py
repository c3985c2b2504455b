"""
Atomic single-row and chunked batch writes of narrative results.

Each row is written inside a SAVEPOINT together with the matching experiment
counter increment (``narratives_processed`` for an insert,
``narratives_skipped`` for a duplicate), so counters and rows never drift
apart. A duplicate natural key is reported as a successful no-op.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.models import Experiment
from ..errors import ConstraintViolation, ExperimentStateError, IPVTrackerError
from .backends import ResultWriter, writer_for
from .records import NarrativeResultRecord, validate_record

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 100


@dataclass
class StoreOutcome:
    """Result of storing one narrative result."""
    success: bool
    rows_affected: int = 0
    duplicate: bool = False
    result_id: Optional[int] = None
    warning: Optional[str] = None
    error: Optional[str] = None
    error_field: Optional[str] = None


@dataclass
class BatchOutcome:
    """Aggregate result of a chunked batch write."""
    total: int = 0
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    chunk_errors: int = 0
    error_messages: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.errors == 0

    @property
    def success_rate(self) -> Optional[float]:
        if self.total == 0:
            return None
        return (self.inserted + self.duplicates) / self.total


def _increment_counter(session: Session, experiment_id: str, inserted: bool) -> None:
    """SQL-side ``+ 1`` on the experiment counter; only while it is running."""
    column = Experiment.narratives_processed if inserted else Experiment.narratives_skipped
    stmt = (
        update(Experiment)
        .where(Experiment.experiment_id == experiment_id, Experiment.status == "running")
        .values({column: column + 1})
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount != 1:
        raise ExperimentStateError(f"Experiment {experiment_id} is not running; result not recorded")


def _write(session: Session, record: NarrativeResultRecord, writer: ResultWriter,
           update_counters: bool, log: logging.Logger) -> StoreOutcome:
    """Validate and insert one record inside a SAVEPOINT. Does not commit."""
    try:
        validate_record(record)
    except ConstraintViolation as e:
        log.warning(f"Rejected result {record.incident_id}/{record.narrative_type}: {e}")
        return StoreOutcome(success=False, error=str(e), error_field=e.field)

    try:
        with session.begin_nested():
            result = writer.insert(session, record.to_row())
            if update_counters:
                _increment_counter(session, record.experiment_id, result.inserted)
    except IntegrityError as e:
        message = f"Constraint violation: {e.orig}"
        log.warning(f"Rejected result {record.incident_id}/{record.narrative_type}: {message}")
        return StoreOutcome(success=False, error=message)

    if not result.inserted:
        warning = (
            f"Duplicate result skipped: experiment={record.experiment_id} "
            f"incident={record.incident_id} type={record.narrative_type}"
        )
        log.info(warning)
        return StoreOutcome(success=True, duplicate=True, result_id=result.result_id, warning=warning)

    return StoreOutcome(success=True, rows_affected=1, result_id=result.result_id)


def store_result(record: NarrativeResultRecord, session: Session,
                 writer: Optional[ResultWriter] = None,
                 commit: bool = True,
                 update_counters: bool = True,
                 log: Optional[logging.Logger] = None) -> StoreOutcome:
    """
    Store one narrative result.

    Args:
        record: Result to insert
        session: Session bound to the target database
        writer: Backend writer; resolved from the session's dialect if omitted
        commit: Commit the session after the write
        update_counters: Increment the owning experiment's counters
        log: Optional logger

    Returns:
        StoreOutcome. Duplicates are ``success=True, duplicate=True``;
        constraint violations are ``success=False`` with ``error`` set.

    Raises:
        ExperimentStateError: If the owning experiment is no longer running
        SQLAlchemyError: On fatal database failures (lost connection, disk full)
    """
    log = log or logger
    writer = writer or writer_for(session, log)
    outcome = _write(session, record, writer, update_counters, log)
    if commit:
        session.commit()
    return outcome


def _chunks(records: Sequence[NarrativeResultRecord], size: int) -> Iterable[Sequence[NarrativeResultRecord]]:
    for start in range(0, len(records), size):
        yield records[start:start + size]


def store_results_batch(records: Sequence[NarrativeResultRecord], session: Session,
                        chunk_size: int = DEFAULT_CHUNK_SIZE,
                        writer: Optional[ResultWriter] = None,
                        update_counters: bool = True,
                        log: Optional[logging.Logger] = None) -> BatchOutcome:
    """
    Store results in chunks, one transaction per chunk.

    A bad record only fails its own row; a database failure only fails its own
    chunk. Later chunks are always attempted.

    Args:
        records: Results to insert
        session: Session bound to the target database
        chunk_size: Records per transaction
        writer: Backend writer; resolved from the session's dialect if omitted
        update_counters: Increment the owning experiments' counters
        log: Optional logger

    Returns:
        BatchOutcome with total/inserted/duplicates/errors and failed chunk count
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")

    log = log or logger
    writer = writer or writer_for(session, log)
    records = list(records)
    outcome = BatchOutcome(total=len(records))

    for index, chunk in enumerate(_chunks(records, chunk_size)):
        inserted = duplicates = errors = 0
        messages: List[str] = []
        try:
            for record in chunk:
                try:
                    row_outcome = _write(session, record, writer, update_counters, log)
                except IPVTrackerError as e:
                    row_outcome = StoreOutcome(success=False, error=str(e))
                if row_outcome.duplicate:
                    duplicates += 1
                elif row_outcome.success:
                    inserted += 1
                else:
                    errors += 1
                    messages.append(f"{record.incident_id}/{record.narrative_type}: {row_outcome.error}")
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            log.error(f"Batch chunk {index} failed, {len(chunk)} record(s) not stored: {e}")
            outcome.chunk_errors += 1
            outcome.errors += len(chunk)
            outcome.error_messages.append(f"chunk {index}: {e}")
            continue

        outcome.inserted += inserted
        outcome.duplicates += duplicates
        outcome.errors += errors
        outcome.error_messages.extend(messages)

    log.info(
        f"Batch stored: total={outcome.total} inserted={outcome.inserted} "
        f"duplicates={outcome.duplicates} errors={outcome.errors} chunk_errors={outcome.chunk_errors}"
    )
    return outcome


__all__ = [
    "StoreOutcome",
    "BatchOutcome",
    "store_result",
    "store_results_batch",
    "DEFAULT_CHUNK_SIZE",
]
