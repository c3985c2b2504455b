"""
Tests for the experiment orchestrator.

The LLM is replaced by a fake caller; everything else (parser, storage,
tracking, logging, export) runs for real against SQLite.
"""

import json
import os
import threading
from dataclasses import replace

import pytest
from sqlalchemy import select

from nvdrs_ipv.db import create_db_engine, ensure_schema, make_session_factory
from nvdrs_ipv.db.models import Experiment, NarrativeResult
from nvdrs_ipv.errors import ExperimentStateError, ResumeLockError
from nvdrs_ipv.ingest.narratives import load_source_narratives
from nvdrs_ipv.parsing import parse
from nvdrs_ipv.pipeline import ExperimentOrchestrator, run_experiment
from nvdrs_ipv.storage.records import NarrativeResultRecord
from nvdrs_ipv.tracking.experiments import ExperimentTracker

from conftest import make_completion


class ProcessKilled(BaseException):
    """Stands in for the process dying mid-run."""


class FakeLLM:
    """Detects IPV whenever the narrative mentions abuse."""

    def __init__(self, fail_on=(), error=None):
        self.fail_on = set(fail_on)
        self.error = error or TimeoutError("Request timed out")
        self.seen = []
        self._lock = threading.Lock()

    def __call__(self, messages):
        text = messages[-1]["content"]
        with self._lock:
            self.seen.append(text)
        if any(marker in text for marker in self.fail_on):
            raise self.error
        detected = "abuse" in text
        confidence = 0.9 if detected else 0.2
        return make_completion(json.dumps({
            "detected": detected,
            "confidence": confidence,
            "indicators": ["partner abuse"] if detected else [],
            "rationale": "test",
        }))


def _results(session, experiment_id):
    stmt = select(NarrativeResult).where(NarrativeResult.experiment_id == experiment_id).order_by(NarrativeResult.row_num)
    return list(session.execute(stmt).scalars())


def _experiment(session, experiment_id):
    return session.get(Experiment, experiment_id, populate_existing=True)


class TestRun:
    """Test fresh runs."""

    def test_sequential_run(self, session, session_factory, experiment_config, narratives):
        """Test every narrative is called, stored and scored."""
        caller = FakeLLM()
        sleeps = []

        result = ExperimentOrchestrator(experiment_config, session_factory, caller=caller,
                                        sleep=sleeps.append).run(narratives)

        assert len(caller.seen) == 10
        assert result.attempted == 10
        assert result.stored == 10
        assert result.parse_errors == 0
        assert result.summary.status == "completed"
        assert result.summary.metrics.accuracy == 1.0
        assert sleeps == []

        experiment = _experiment(session, result.experiment_id)
        assert experiment.narratives_total == 10
        assert experiment.narratives_processed == 10
        assert experiment.f1 == 1.0
        rows = _results(session, result.experiment_id)
        assert [r.row_num for r in rows] == list(range(1, 11))
        assert rows[0].tokens_used == 60
        assert rows[0].parse_stage == "direct"

    def test_prompt_substitution(self, session_factory, experiment_config, narratives):
        """Test the narrative replaces the placeholder in the user turn."""
        caller = FakeLLM()

        ExperimentOrchestrator(experiment_config, session_factory, caller=caller).run(narratives[:1])

        assert caller.seen == ["Narrative: Narrative 1: history of abuse by partner\nRespond in JSON."]

    def test_timeout_recorded_as_error_row(self, session, session_factory, experiment_config, narratives):
        """Test an exhausted retry stores an error row and the batch continues."""
        caller = FakeLLM(fail_on=["Narrative 3:"])
        sleeps = []

        result = ExperimentOrchestrator(experiment_config, session_factory, caller=caller,
                                        sleep=sleeps.append).run(narratives)

        assert result.summary.status == "completed"
        assert result.attempted == 10
        assert result.parse_errors == 1
        assert sleeps == [0.0]

        failed = [r for r in _results(session, result.experiment_id) if r.error_occurred]
        assert len(failed) == 1
        assert failed[0].incident_id == "1003"
        assert "TimeoutError" in failed[0].error_message
        assert failed[0].detected is None
        assert result.summary.metrics.n_evaluated == 9

    def test_fatal_error_marks_failed(self, session, session_factory, experiment_config, narratives):
        """Test an unexpected exception fails the experiment and propagates."""
        caller = FakeLLM(fail_on=["Narrative 4:"], error=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            ExperimentOrchestrator(experiment_config, session_factory, caller=caller).run(
                narratives, experiment_id="exp-fatal")

        experiment = _experiment(session, "exp-fatal")
        assert experiment.status == "failed"
        assert experiment.notes == "FAILED: RuntimeError: boom"
        assert experiment.narratives_processed == 3

    def test_max_narratives(self, session_factory, experiment_config, narratives):
        """Test the run stops at the configured limit."""
        config = replace(experiment_config, run=replace(experiment_config.run, max_narratives=3))
        caller = FakeLLM()

        result = ExperimentOrchestrator(config, session_factory, caller=caller).run(narratives)

        assert result.attempted == 3
        assert result.summary.narratives_total == 3

    def test_narratives_from_database(self, session, session_factory, experiment_config, narratives):
        """Test narratives are read from source_narratives when not given."""
        load_source_narratives(session, narratives[:4], data_source="narratives.csv")
        session.commit()

        result = run_experiment(experiment_config, session_factory, caller=FakeLLM())

        assert result.attempted == 4

    def test_export(self, session, session_factory, experiment_config, narratives, tmp_path):
        """Test results are exported and the paths kept on the experiment."""
        config = replace(experiment_config, run=replace(experiment_config.run, save_results=True))

        result = ExperimentOrchestrator(config, session_factory, caller=FakeLLM()).run(narratives[:2])

        assert set(result.exported) == {"csv", "json"}
        assert result.exported["csv"].exists()
        assert len(json.loads(result.exported["json"].read_text())) == 2
        assert _experiment(session, result.experiment_id).csv_file == str(result.exported["csv"])

    def test_experiment_logs(self, session_factory, experiment_config, narratives, tmp_path):
        """Test the per-experiment log files are written."""
        caller = FakeLLM(fail_on=["Narrative 2:"])

        result = ExperimentOrchestrator(experiment_config, session_factory, caller=caller).run(narratives[:2])

        log_dir = tmp_path / "logs" / result.experiment_id
        assert "1001/cme" in (log_dir / "api_calls.log").read_text()
        assert "Request timed out" in (log_dir / "errors.log").read_text()
        assert "completed" in (log_dir / "experiment.log").read_text()

    def test_parallel_run(self, tmp_path, experiment_config, narratives):
        """Test worker threads each store through their own session."""
        engine = create_db_engine(f"sqlite:///{tmp_path / 'parallel.db'}")
        ensure_schema(engine)
        factory = make_session_factory(engine)
        config = replace(experiment_config, run=replace(experiment_config.run, workers=4))
        caller = FakeLLM()

        try:
            result = ExperimentOrchestrator(config, factory, caller=caller).run(narratives)

            assert len(caller.seen) == 10
            assert result.stored == 10
            with factory() as s:
                assert _experiment(s, result.experiment_id).narratives_processed == 10
                assert len(_results(s, result.experiment_id)) == 10
        finally:
            engine.dispose()

    def test_parallel_falls_back_for_memory_db(self, session_factory, experiment_config, narratives):
        """Test an in-memory database is processed sequentially."""
        config = replace(experiment_config, run=replace(experiment_config.run, workers=4))

        result = ExperimentOrchestrator(config, session_factory, caller=FakeLLM()).run(narratives)

        assert result.stored == 10


class TestResume:
    """Test resuming a crashed experiment."""

    @pytest.fixture
    def crashed(self, session, experiment_config, narratives):
        """An experiment that stored three of ten narratives before dying."""
        tracker = ExperimentTracker(session)
        experiment_id = tracker.start_experiment(experiment_config, experiment_id="exp-resume")
        tracker.set_total(experiment_id, 10)
        for row_num, narrative in enumerate(narratives[:3], start=1):
            parsed = parse(make_completion('{"detected": true, "confidence": 0.7}'), narrative.key)
            record = NarrativeResultRecord.from_parsed(parsed, experiment_id, narrative, row_num=row_num)
            tracker.log_result(experiment_id, record)
        return experiment_id

    def test_processes_only_remaining(self, session, session_factory, experiment_config, narratives, crashed):
        """Test only unprocessed narratives are sent and existing rows stay untouched."""
        before = {r.incident_id: (r.result_id, r.processed_at) for r in _results(session, crashed)}
        session.commit()
        caller = FakeLLM()

        result = ExperimentOrchestrator(experiment_config, session_factory, caller=caller).resume(crashed, narratives)

        assert len(caller.seen) == 7
        assert not any("Narrative 1:" in text or "Narrative 2:" in text for text in caller.seen)
        assert result.resumed_skips == 3
        assert result.attempted == 7
        assert result.summary.status == "completed"

        session.expire_all()
        rows = _results(session, crashed)
        assert len(rows) == 10
        after = {r.incident_id: (r.result_id, r.processed_at) for r in rows}
        for incident_id, snapshot in before.items():
            assert after[incident_id] == snapshot

        experiment = _experiment(session, crashed)
        assert experiment.narratives_processed == 10
        assert experiment.narratives_skipped == 0

    def test_interrupted_resume_resumed_again(self, session, session_factory, experiment_config, narratives,
                                              crashed):
        """Test counters stay within the total across repeated resumes."""
        session.commit()
        killer = FakeLLM(fail_on=["Narrative 6:"], error=ProcessKilled())

        with pytest.raises(ProcessKilled):
            ExperimentOrchestrator(experiment_config, session_factory, caller=killer).resume(crashed, narratives)

        caller = FakeLLM()
        result = ExperimentOrchestrator(experiment_config, session_factory, caller=caller).resume(crashed, narratives)

        assert len(caller.seen) == 5
        assert result.resumed_skips == 5
        experiment = _experiment(session, crashed)
        assert experiment.status == "completed"
        assert experiment.narratives_total == 10
        assert experiment.narratives_processed == 10
        assert experiment.narratives_skipped == 0

    def test_lock_released(self, session_factory, experiment_config, narratives, crashed, tmp_path):
        """Test the lock file is gone after a resume."""
        ExperimentOrchestrator(experiment_config, session_factory, caller=FakeLLM()).resume(crashed, narratives)

        assert not (tmp_path / "logs" / f".resume_lock_{crashed}.pid").exists()

    def test_live_lock_refused(self, session, session_factory, experiment_config, narratives, crashed, tmp_path):
        """Test a lock held by another live process blocks the resume."""
        lock_dir = tmp_path / "logs"
        lock_dir.mkdir(parents=True, exist_ok=True)
        (lock_dir / f".resume_lock_{crashed}.pid").write_text(str(os.getppid()))
        caller = FakeLLM()

        with pytest.raises(ResumeLockError):
            ExperimentOrchestrator(experiment_config, session_factory, caller=caller).resume(crashed, narratives)

        assert caller.seen == []
        assert _experiment(session, crashed).status == "running"

    def test_completed_experiment_refused(self, session_factory, experiment_config, narratives):
        """Test only running experiments can be resumed."""
        result = ExperimentOrchestrator(experiment_config, session_factory, caller=FakeLLM()).run(narratives[:1])

        with pytest.raises(ExperimentStateError):
            ExperimentOrchestrator(experiment_config, session_factory, caller=FakeLLM()).resume(
                result.experiment_id, narratives)

    def test_nothing_left(self, session, session_factory, experiment_config, narratives, crashed):
        """Test resuming with every narrative done just finalizes."""
        session.commit()
        caller = FakeLLM()

        result = ExperimentOrchestrator(experiment_config, session_factory, caller=caller).resume(
            crashed, narratives[:3])

        assert caller.seen == []
        assert result.summary.status == "completed"
        assert result.summary.narratives_processed == 3

