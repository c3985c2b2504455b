"""
Tests for result storage.

Covers single-row writes, duplicate handling, constraint rejection, counter
bookkeeping, chunked batch writes and the dialect-specific writers.
"""

import pytest
from unittest.mock import MagicMock
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from nvdrs_ipv.db.models import Experiment, NarrativeResult
from nvdrs_ipv.errors import ConstraintViolation, ExperimentStateError, StorageError
from nvdrs_ipv.storage import (
    BatchOutcome,
    PostgresResultWriter,
    SQLiteResultWriter,
    resolve_writer,
    store_result,
    store_results_batch,
    writer_for,
)
from nvdrs_ipv.storage.records import validate_record


def _row_count(session, experiment_id):
    stmt = select(func.count()).select_from(NarrativeResult).where(NarrativeResult.experiment_id == experiment_id)
    return session.execute(stmt).scalar_one()


def _experiment(session, experiment_id):
    return session.get(Experiment, experiment_id, populate_existing=True)


class TestStoreResult:
    """Test single-row writes."""

    def test_insert(self, session, experiment_id, make_record):
        """Test a valid record is inserted and counted."""
        outcome = store_result(make_record(experiment_id), session)

        assert outcome.success is True
        assert outcome.rows_affected == 1
        assert outcome.duplicate is False
        assert outcome.result_id is not None
        assert _row_count(session, experiment_id) == 1
        assert _experiment(session, experiment_id).narratives_processed == 1

    def test_duplicate_is_successful_noop(self, session, experiment_id, make_record):
        """Test storing the same key twice keeps one row and reports a duplicate."""
        record = make_record(experiment_id)
        first = store_result(record, session)
        second = store_result(record, session)

        assert second.success is True
        assert second.duplicate is True
        assert second.rows_affected == 0
        assert second.result_id == first.result_id
        assert "Duplicate" in second.warning
        assert _row_count(session, experiment_id) == 1

        experiment = _experiment(session, experiment_id)
        assert experiment.narratives_processed == 1
        assert experiment.narratives_skipped == 1

    def test_same_incident_other_type_is_not_duplicate(self, session, experiment_id, make_record):
        """Test CME and LE narratives of one incident are distinct rows."""
        store_result(make_record(experiment_id, narrative_type="cme"), session)
        outcome = store_result(make_record(experiment_id, narrative_type="le"), session)

        assert outcome.duplicate is False
        assert _row_count(session, experiment_id) == 2

    @pytest.mark.parametrize("overrides, error_field", [
        ({"confidence": 1.5}, "confidence"),
        ({"confidence": -0.1}, "confidence"),
        ({"confidence": float("nan")}, "confidence"),
        ({"prompt_tokens": -1}, "prompt_tokens"),
        ({"prompt_tokens": "12"}, "prompt_tokens"),
        ({"tokens_used": True}, "tokens_used"),
        ({"response_time_seconds": float("nan")}, "response_time_seconds"),
        ({"response_time_seconds": -2.0}, "response_time_seconds"),
        ({"narrative_type": "xx"}, "narrative_type"),
        ({"incident_id": ""}, "incident_id"),
        ({"is_false_positive": True}, "outcome"),
    ])
    def test_constraint_rejection(self, session, experiment_id, make_record, overrides, error_field):
        """Test invalid records are rejected with the offending field and nothing is written."""
        outcome = store_result(make_record(experiment_id, **overrides), session)

        assert outcome.success is False
        assert outcome.error_field == error_field
        assert _row_count(session, experiment_id) == 0
        assert _experiment(session, experiment_id).narratives_processed == 0

    def test_unknown_experiment_rejected(self, session, experiment_id, make_record):
        """Test the foreign key to experiments is enforced."""
        outcome = store_result(make_record("no-such-experiment"), session)

        assert outcome.success is False
        assert "Constraint violation" in outcome.error
        assert _row_count(session, "no-such-experiment") == 0

    def test_write_to_finalized_experiment(self, session, tracker, experiment_id, make_record):
        """Test results cannot be added once an experiment is completed."""
        tracker.finalize_experiment(experiment_id)

        with pytest.raises(ExperimentStateError):
            store_result(make_record(experiment_id), session)
        session.rollback()

        assert _row_count(session, experiment_id) == 0

    def test_without_counters(self, session, experiment_id, make_record):
        """Test counters are left alone when disabled."""
        store_result(make_record(experiment_id), session, update_counters=False)

        assert _row_count(session, experiment_id) == 1
        assert _experiment(session, experiment_id).narratives_processed == 0

    def test_check_constraint_backstop(self, session, experiment_id):
        """Test the table itself rejects an out-of-range confidence."""
        with pytest.raises(IntegrityError):
            session.execute(NarrativeResult.__table__.insert().values(
                experiment_id=experiment_id, incident_id="x", narrative_type="cme", confidence=2.0,
            ))
        session.rollback()

    def test_single_outcome_backstop(self, session, experiment_id):
        """Test the table rejects two outcome flags on one row."""
        with pytest.raises(IntegrityError):
            session.execute(NarrativeResult.__table__.insert().values(
                experiment_id=experiment_id, incident_id="x", narrative_type="cme",
                is_true_positive=True, is_false_negative=True,
            ))
        session.rollback()


class TestValidateRecord:
    """Test record validation without a database."""

    def test_valid_record(self, make_record):
        """Test a valid record passes."""
        validate_record(make_record("exp"))

    def test_boolean_confidence_rejected(self, make_record):
        """Test booleans are not accepted as confidence."""
        with pytest.raises(ConstraintViolation) as exc:
            validate_record(make_record("exp", confidence=True))
        assert exc.value.field == "confidence"

    def test_null_confidence_allowed(self, make_record):
        """Test a missing confidence is fine."""
        validate_record(make_record("exp", confidence=None))


class TestBatchStorage:
    """Test chunked batch writes."""

    def test_partial_failure(self, session, experiment_id, make_record):
        """Test one bad record fails alone and the rest are stored."""
        records = [make_record(experiment_id, incident_id=f"{i}") for i in range(5)]
        records[2] = make_record(experiment_id, incident_id="2", confidence=1.5)

        outcome = store_results_batch(records, session, chunk_size=2)

        assert outcome.total == 5
        assert outcome.inserted == 4
        assert outcome.errors == 1
        assert outcome.duplicates == 0
        assert outcome.chunk_errors == 0
        assert outcome.success is False
        assert outcome.success_rate == pytest.approx(0.8)
        assert _row_count(session, experiment_id) == 4
        assert _experiment(session, experiment_id).narratives_processed == 4

    def test_non_numeric_count_fails_alone(self, session, experiment_id, make_record):
        """Test a record with a text token count is rejected and its chunk still commits."""
        records = [make_record(experiment_id, incident_id=f"{i}") for i in range(4)]
        records[1] = make_record(experiment_id, incident_id="1", completion_tokens="10")

        outcome = store_results_batch(records, session, chunk_size=4)

        assert outcome.inserted == 3
        assert outcome.errors == 1
        assert outcome.chunk_errors == 0
        assert "completion_tokens" in outcome.error_messages[0]
        assert _row_count(session, experiment_id) == 3

    def test_duplicates_counted(self, session, experiment_id, make_record):
        """Test records already stored are counted as duplicates."""
        store_result(make_record(experiment_id, incident_id="0"), session)
        records = [make_record(experiment_id, incident_id=f"{i}") for i in range(3)]

        outcome = store_results_batch(records, session)

        assert outcome.inserted == 2
        assert outcome.duplicates == 1
        assert outcome.success is True
        assert _row_count(session, experiment_id) == 3

    def test_chunk_failure_isolated(self, session, experiment_id, make_record):
        """Test a database failure rolls back its chunk and later chunks still run."""

        class FlakyWriter(SQLiteResultWriter):
            def insert(self, session, row):
                if row["incident_id"] == "boom":
                    raise OperationalError("INSERT", {}, Exception("disk I/O error"))
                return super().insert(session, row)

        records = [
            make_record(experiment_id, incident_id="1"),
            make_record(experiment_id, incident_id="boom"),
            make_record(experiment_id, incident_id="3"),
            make_record(experiment_id, incident_id="4"),
        ]

        outcome = store_results_batch(records, session, chunk_size=2, writer=FlakyWriter())

        assert outcome.chunk_errors == 1
        assert outcome.errors == 2
        assert outcome.inserted == 2
        assert _row_count(session, experiment_id) == 2
        assert _experiment(session, experiment_id).narratives_processed == 2

    def test_invalid_chunk_size(self, session, experiment_id, make_record):
        """Test a chunk size below one is refused."""
        with pytest.raises(ValueError):
            store_results_batch([make_record(experiment_id)], session, chunk_size=0)

    def test_empty_batch(self, session):
        """Test an empty batch succeeds trivially."""
        outcome = store_results_batch([], session)

        assert outcome.total == 0
        assert outcome.success is True
        assert outcome.success_rate is None

    def test_batch_outcome_rate(self):
        """Test success rate counts duplicates as successes."""
        assert BatchOutcome(total=4, inserted=2, duplicates=1, errors=1).success_rate == 0.75


class TestWriters:
    """Test writer resolution and the dialect-specific insert paths."""

    def test_writer_for_sqlite_session(self, session):
        """Test a SQLite session resolves to the SQLite writer."""
        assert isinstance(writer_for(session), SQLiteResultWriter)

    def test_resolve_postgres(self):
        """Test the PostgreSQL dialect name resolves."""
        assert isinstance(resolve_writer("postgresql"), PostgresResultWriter)

    def test_unknown_dialect(self):
        """Test an unsupported dialect raises a storage error."""
        with pytest.raises(StorageError):
            resolve_writer("mssql")

    def test_concurrent_insert_absorbed(self, session, experiment_id, make_record):
        """Test a unique-key race resolves to a duplicate, not an error."""

        class RacyWriter(SQLiteResultWriter):
            def __init__(self):
                super().__init__()
                self.calls = 0

            def find_existing(self, session, row):
                # first lookup misses, as if another writer committed in between
                self.calls += 1
                if self.calls == 1:
                    return None
                return super().find_existing(session, row)

        record = make_record(experiment_id)
        first = store_result(record, session)
        outcome = store_result(record, session, writer=RacyWriter())

        assert outcome.success is True
        assert outcome.duplicate is True
        assert outcome.result_id == first.result_id
        assert _row_count(session, experiment_id) == 1

    def test_postgres_statement(self, make_record):
        """Test the PostgreSQL insert resolves conflicts on the named unique constraint."""
        stmt = PostgresResultWriter().build_insert(make_record("exp").to_row())
        sql = str(stmt.compile(dialect=postgresql.dialect()))

        assert "ON CONFLICT ON CONSTRAINT uq_narrative_results_experiment_narrative DO NOTHING" in sql
        assert "RETURNING narrative_results.result_id" in sql

    def test_postgres_conflict_returns_existing(self, make_record):
        """Test a conflicting insert reports the existing row id."""
        session = MagicMock()
        session.execute.return_value.scalar_one_or_none.side_effect = [None, 42]

        result = PostgresResultWriter().insert(session, make_record("exp").to_row())

        assert result.inserted is False
        assert result.result_id == 42
        assert session.execute.call_count == 2

    def test_postgres_insert(self, make_record):
        """Test a fresh insert returns the new row id."""
        session = MagicMock()
        session.execute.return_value.scalar_one_or_none.return_value = 7

        result = PostgresResultWriter().insert(session, make_record("exp").to_row())

        assert result.inserted is True
        assert result.result_id == 7
        session.begin_nested.assert_called_once()
