"""Tests for schema creation and additive migration."""

import pytest
from sqlalchemy import inspect, text

from nvdrs_ipv.db import create_db_engine, ensure_schema, is_memory_url
from nvdrs_ipv.errors import SchemaError


@pytest.fixture
def file_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'legacy.db'}")
    yield engine
    engine.dispose()


class TestEnsureSchema:
    """Test table, index and column creation."""

    def test_fresh_database(self, engine):
        """Test all tables and indexes exist after the first run."""
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        indexes = {ix["name"] for ix in inspector.get_indexes("narrative_results")}

        assert {"experiments", "narrative_results", "source_narratives"} <= tables
        assert {"ix_narrative_results_fp", "ix_narrative_results_fn",
                "ix_narrative_results_experiment_tokens"} <= indexes

    def test_idempotent(self, engine):
        """Test running again changes nothing."""
        assert ensure_schema(engine) == []
        assert ensure_schema(engine) == []

    def test_adds_missing_columns(self, file_engine):
        """Test columns missing from an older table are added without data loss."""
        with file_engine.begin() as conn:
            conn.execute(text(
                "CREATE TABLE narrative_results ("
                "result_id INTEGER PRIMARY KEY, experiment_id VARCHAR(64) NOT NULL, "
                "incident_id VARCHAR(64) NOT NULL, narrative_type VARCHAR(8) NOT NULL, "
                "detected BOOLEAN, confidence FLOAT)"
            ))
            conn.execute(text(
                "INSERT INTO narrative_results (experiment_id, incident_id, narrative_type, detected) "
                "VALUES ('old', '1', 'cme', 1)"
            ))

        added = ensure_schema(file_engine)

        assert "narrative_results.prompt_tokens" in added
        assert "narrative_results.tokens_used" in added
        assert "narrative_results.error_occurred" in added
        columns = {c["name"] for c in inspect(file_engine).get_columns("narrative_results")}
        assert {"prompt_tokens", "completion_tokens", "tokens_used", "is_false_positive"} <= columns
        indexes = {ix["name"] for ix in inspect(file_engine).get_indexes("narrative_results")}
        assert "ix_narrative_results_experiment_tokens" in indexes

        with file_engine.connect() as conn:
            row = conn.execute(text(
                "SELECT incident_id, error_occurred, tokens_used FROM narrative_results"
            )).one()
        assert row.incident_id == "1"
        assert not row.error_occurred
        assert row.tokens_used is None

        assert ensure_schema(file_engine) == []

    def test_required_column_cannot_be_added(self, file_engine):
        """Test a NOT NULL column without a default is refused."""
        with file_engine.begin() as conn:
            conn.execute(text("CREATE TABLE experiments (experiment_id VARCHAR(64) PRIMARY KEY, name TEXT NOT NULL)"))

        with pytest.raises(SchemaError):
            ensure_schema(file_engine)


class TestEngine:
    """Test engine helpers."""

    @pytest.mark.parametrize("url, expected", [
        ("sqlite://", True),
        ("sqlite:///:memory:", True),
        ("sqlite:///experiments.db", False),
        ("postgresql://user@host/db", False),
    ])
    def test_is_memory_url(self, url, expected):
        """Test in-memory SQLite URLs are recognised."""
        assert is_memory_url(url) is expected

    def test_sqlite_pragmas(self, file_engine):
        """Test foreign keys and WAL are switched on for file databases."""
        with file_engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
            assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
