"""
IPV Detection Experiment Orchestrator

Drives one experiment end to end:
1. Start (or reopen for resume) the experiment record
2. For each narrative: build the prompt, call the LLM with retry, parse the
   response and store the result
3. Optionally export results to CSV/JSON
4. Finalize with metrics, or mark the experiment failed on a fatal error

Narratives run sequentially unless ``run.workers > 1``; in parallel mode every
task opens its own database session.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session, sessionmaker

from ..config import ExperimentConfig
from ..db.session import is_memory_url, session_scope
from ..errors import ExperimentStateError
from ..ingest.narratives import NarrativeRecord, get_source_narratives
from ..llm.client import ChatClient
from ..llm.prompts import messages_for_narrative
from ..logging_setup import close_experiment_logger, experiment_log_dir, init_experiment_logger
from ..parsing.response_parser import parse
from ..storage.records import NarrativeResultRecord
from ..storage.results import StoreOutcome
from ..tracking.experiments import ExperimentSummary, ExperimentTracker
from ..tracking.export import export_results
from ..utils.run_id import make_experiment_id
from .resume import ResumeLock
from .retry import call_with_retry

logger = logging.getLogger(__name__)

LLMCaller = Callable[[List[Dict[str, str]]], Dict[str, Any]]


@dataclass
class RunResult:
    """What one run or resume did."""
    experiment_id: str
    summary: ExperimentSummary
    attempted: int = 0
    resumed_skips: int = 0
    stored: int = 0
    duplicates: int = 0
    storage_errors: int = 0
    parse_errors: int = 0
    exported: Dict[str, Path] = field(default_factory=dict)


@dataclass
class _Tally:
    attempted: int = 0
    stored: int = 0
    duplicates: int = 0
    storage_errors: int = 0
    parse_errors: int = 0

    def add(self, record: NarrativeResultRecord, outcome: StoreOutcome) -> None:
        self.attempted += 1
        if record.error_occurred:
            self.parse_errors += 1
        if outcome.duplicate:
            self.duplicates += 1
        elif outcome.success:
            self.stored += 1
        else:
            self.storage_errors += 1


class ExperimentOrchestrator:
    """Runs and resumes IPV detection experiments."""

    def __init__(self, config: ExperimentConfig, session_factory: sessionmaker,
                 caller: Optional[LLMCaller] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 log_root: Optional[str] = None):
        """
        Initialize the orchestrator.

        Args:
            config: Frozen experiment configuration
            session_factory: Factory for database sessions
            caller: LLM caller taking chat messages and returning a raw response
                dict; defaults to an OpenAI-compatible :class:`ChatClient`
            sleep: Sleep used between retries
            log_root: Root of per-experiment log directories (``run.log_dir``)
        """
        self.config = config
        self.session_factory = session_factory
        self._caller = caller
        self.sleep = sleep
        self.log_root = log_root or config.run.log_dir
        self.logger = logger

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, narratives: Optional[Sequence[NarrativeRecord]] = None,
            experiment_id: Optional[str] = None) -> RunResult:
        """
        Start a new experiment and process every narrative.

        Args:
            narratives: Narratives to process; read from ``source_narratives``
                (filtered by ``data.file``) if omitted
            experiment_id: Explicit id for the new experiment

        Raises:
            Any fatal error, after the experiment has been marked failed
        """
        experiment_id = experiment_id or make_experiment_id()
        exp_logger = init_experiment_logger(experiment_id, self.log_root)
        session = self.session_factory()
        tracker = ExperimentTracker(session, log=exp_logger)
        try:
            tracker.start_experiment(
                self.config,
                log_dir=str(experiment_log_dir(experiment_id, self.log_root)),
                experiment_id=experiment_id,
            )
            try:
                batch = self._select_narratives(session, narratives)
                tracker.set_total(experiment_id, len(batch))
                exp_logger.info(f"Processing {len(batch)} narratives with {self.config.model.name}")
                return self._complete(tracker, experiment_id, list(enumerate(batch, start=1)), 0, exp_logger)
            except Exception as e:
                self._fail(tracker, experiment_id, e, exp_logger)
                raise
        finally:
            session.close()
            close_experiment_logger(exp_logger)

    def resume(self, experiment_id: str,
               narratives: Optional[Sequence[NarrativeRecord]] = None,
               lock_dir: Optional[str] = None) -> RunResult:
        """
        Continue a ``running`` experiment left behind by a crashed process.

        Narratives that already have a result row are skipped; existing rows
        are not touched.

        Raises:
            ExperimentNotFoundError: Unknown experiment
            ExperimentStateError: Experiment is not running
            ResumeLockError: Another live process is resuming it
        """
        session = self.session_factory()
        tracker = ExperimentTracker(session)
        try:
            experiment = tracker.get_experiment(experiment_id)
            if experiment.status != "running":
                raise ExperimentStateError(
                    f"Experiment {experiment_id} is '{experiment.status}'; only running experiments can be resumed"
                )
        except Exception:
            session.close()
            raise

        exp_logger = init_experiment_logger(experiment_id, self.log_root)
        tracker.logger = exp_logger
        lock = ResumeLock(experiment_id, lock_dir or self.log_root, log=exp_logger)
        try:
            with lock:
                try:
                    batch = self._select_narratives(session, narratives)
                    done = tracker.completed_keys(experiment_id)
                    pending = [(row_num, n) for row_num, n in enumerate(batch, start=1) if n.key not in done]
                    skipped = len(batch) - len(pending)  # already in narratives_processed
                    exp_logger.info(
                        f"Resuming {experiment_id}: {skipped} already processed, {len(pending)} remaining"
                    )
                    if experiment.narratives_total is None:
                        tracker.set_total(experiment_id, len(batch))
                    return self._complete(tracker, experiment_id, pending, skipped, exp_logger)
                except Exception as e:
                    self._fail(tracker, experiment_id, e, exp_logger)
                    raise
        finally:
            session.close()
            close_experiment_logger(exp_logger)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @property
    def caller(self) -> LLMCaller:
        if self._caller is None:
            self._caller = ChatClient(self.config.model).complete
        return self._caller

    def _select_narratives(self, session: Session,
                           narratives: Optional[Sequence[NarrativeRecord]]) -> List[NarrativeRecord]:
        limit = self.config.run.max_narratives
        if narratives is None:
            return get_source_narratives(session, data_source=self.config.data.file, max_narratives=limit)
        batch = list(narratives)
        return batch[:limit] if limit is not None else batch

    def _parallel_enabled(self, exp_logger: logging.Logger) -> bool:
        if self.config.run.workers <= 1:
            return False
        bind = self.session_factory.kw.get("bind")
        if bind is not None and is_memory_url(str(bind.url)):
            exp_logger.warning("In-memory database cannot be shared between workers; running sequentially")
            return False
        return True

    def _complete(self, tracker: ExperimentTracker, experiment_id: str,
                  pending: List[Tuple[int, NarrativeRecord]], resumed_skips: int,
                  exp_logger: logging.Logger) -> RunResult:
        # release the SQLite write lock taken by earlier reads
        tracker.session.commit()
        if self._parallel_enabled(exp_logger):
            tally = self._process_parallel(experiment_id, pending, exp_logger)
        else:
            tally = self._process_sequential(tracker, experiment_id, pending, exp_logger)

        exported: Dict[str, Path] = {}
        if self.config.run.save_results:
            exported = export_results(tracker.session, experiment_id, self.config.run.output_dir)

        summary = tracker.finalize_experiment(
            experiment_id,
            csv_file=str(exported["csv"]) if "csv" in exported else None,
            json_file=str(exported["json"]) if "json" in exported else None,
        )
        exp_logger.info(
            f"Experiment {experiment_id} completed: attempted={tally.attempted} stored={tally.stored} "
            f"duplicates={tally.duplicates} storage_errors={tally.storage_errors} "
            f"parse_errors={tally.parse_errors}"
        )
        return RunResult(
            experiment_id=experiment_id,
            summary=summary,
            attempted=tally.attempted,
            resumed_skips=resumed_skips,
            stored=tally.stored,
            duplicates=tally.duplicates,
            storage_errors=tally.storage_errors,
            parse_errors=tally.parse_errors,
            exported=exported,
        )

    def _build_record(self, experiment_id: str, row_num: int, narrative: NarrativeRecord,
                      exp_logger: logging.Logger) -> NarrativeResultRecord:
        label = f"{narrative.incident_id}/{narrative.narrative_type}"
        messages = messages_for_narrative(self.config.prompt, narrative.narrative_text or "")
        call = call_with_retry(
            lambda: self.caller(messages),
            self.config.retry,
            sleep=self.sleep,
            log=exp_logger,
            label=label,
        )
        parsed = parse(
            call.response,
            narrative_id=f"{narrative.incident_id}_{narrative.narrative_type}",
            metadata={"attempts": call.attempts},
            options=self.config.parser,
        )
        exp_logger.getChild("api").info(
            f"{label} attempts={call.attempts} seconds={call.elapsed_seconds:.3f} "
            f"tokens={parsed.tokens_used} error={parsed.error_kind.value if parsed.error_kind else None}"
        )
        for warning in parsed.warnings:
            exp_logger.warning(f"{label}: {warning}")
        if parsed.parse_error:
            exp_logger.warning(f"{label}: {parsed.error_message}")

        return NarrativeResultRecord.from_parsed(
            parsed, experiment_id, narrative,
            response_time_seconds=call.elapsed_seconds,
            row_num=row_num,
        )

    def _process_sequential(self, tracker: ExperimentTracker, experiment_id: str,
                            pending: List[Tuple[int, NarrativeRecord]],
                            exp_logger: logging.Logger) -> _Tally:
        tally = _Tally()
        for row_num, narrative in pending:
            record = self._build_record(experiment_id, row_num, narrative, exp_logger)
            tally.add(record, tracker.log_result(experiment_id, record))
        return tally

    def _store_in_own_session(self, experiment_id: str, row_num: int, narrative: NarrativeRecord,
                              exp_logger: logging.Logger) -> Tuple[NarrativeResultRecord, StoreOutcome]:
        record = self._build_record(experiment_id, row_num, narrative, exp_logger)
        with session_scope(self.session_factory) as session:
            outcome = ExperimentTracker(session, log=exp_logger).log_result(experiment_id, record)
        return record, outcome

    def _process_parallel(self, experiment_id: str, pending: List[Tuple[int, NarrativeRecord]],
                          exp_logger: logging.Logger) -> _Tally:
        tally = _Tally()
        workers = self.config.run.workers
        exp_logger.info(f"Processing with {workers} workers")
        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = [
                executor.submit(self._store_in_own_session, experiment_id, row_num, narrative, exp_logger)
                for row_num, narrative in pending
            ]
            for future in as_completed(futures):
                tally.add(*future.result())
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return tally

    def _fail(self, tracker: ExperimentTracker, experiment_id: str, error: Exception,
              exp_logger: logging.Logger) -> None:
        """
        Record a fatal error on the experiment.

        Tries the run's own session first (``mark_failed`` rolls it back), then
        a fresh session in case the original connection is gone.
        """
        message = f"{type(error).__name__}: {error}"
        exp_logger.error(f"Fatal error in experiment {experiment_id}: {message}")
        try:
            tracker.mark_failed(experiment_id, message)
            return
        except ExperimentStateError:
            exp_logger.warning(f"Experiment {experiment_id} already left 'running'; status not changed")
            return
        except Exception:
            exp_logger.exception("Could not mark failure on the run session; retrying with a fresh one")
            tracker.session.close()
        try:
            with session_scope(self.session_factory) as session:
                ExperimentTracker(session, log=exp_logger).mark_failed(experiment_id, message)
        except Exception:
            exp_logger.exception(f"Could not mark experiment {experiment_id} as failed")


def run_experiment(config: ExperimentConfig, session_factory: sessionmaker,
                   caller: Optional[LLMCaller] = None,
                   narratives: Optional[Sequence[NarrativeRecord]] = None) -> RunResult:
    """Convenience wrapper: run one experiment with default settings."""
    return ExperimentOrchestrator(config, session_factory, caller=caller).run(narratives)


def resume_experiment(config: ExperimentConfig, session_factory: sessionmaker, experiment_id: str,
                      caller: Optional[LLMCaller] = None,
                      narratives: Optional[Sequence[NarrativeRecord]] = None) -> RunResult:
    """Convenience wrapper: resume a crashed experiment."""
    return ExperimentOrchestrator(config, session_factory, caller=caller).resume(experiment_id, narratives)


__all__ = [
    "ExperimentOrchestrator",
    "RunResult",
    "run_experiment",
    "resume_experiment",
]
