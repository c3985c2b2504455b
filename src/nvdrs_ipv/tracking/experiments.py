"""
Experiment lifecycle tracking.

An experiment starts in ``running`` and ends exactly once, in ``completed``
(``finalize_experiment``) or ``failed`` (``mark_failed``). Every status change
is a conditional UPDATE on ``status = 'running'``, so a finalized experiment
can never be reopened or written to again.
"""

import logging
import platform
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import case, false, func, select, update
from sqlalchemy.orm import Session

from ..config import ExperimentConfig
from ..db.models import Experiment, NarrativeResult
from ..errors import ExperimentNotFoundError, ExperimentStateError
from ..storage.backends import ResultWriter
from ..storage.records import NarrativeResultRecord
from ..storage.results import BatchOutcome, StoreOutcome, store_result, store_results_batch
from ..utils.run_id import make_experiment_id, utcnow
from .metrics import ConfusionCounts, MetricSummary, compute_metrics

logger = logging.getLogger(__name__)


@dataclass
class ExperimentSummary:
    """Snapshot of an experiment's state and metrics."""
    experiment_id: str
    name: str
    status: str
    narratives_total: Optional[int]
    narratives_processed: int
    narratives_skipped: int
    start_time: datetime
    end_time: Optional[datetime] = None
    total_runtime_seconds: Optional[float] = None
    avg_time_per_narrative_seconds: Optional[float] = None
    metrics: Optional[MetricSummary] = None
    notes: Optional[str] = None


def environment_fingerprint() -> dict:
    """Interpreter, OS and host of the current process."""
    return {
        "python_version": platform.python_version(),
        "os_info": f"{platform.system()} {platform.release()}".strip(),
        "hostname": socket.gethostname(),
    }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they were written as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ExperimentTracker:
    """Creates experiments, records per-narrative results and finalizes runs."""

    def __init__(self, session: Session, log: Optional[logging.Logger] = None,
                 writer: Optional[ResultWriter] = None):
        """
        Initialize the tracker.

        Args:
            session: Session used for every read and write
            log: Optional logger (defaults to the module logger)
            writer: Optional result writer; resolved from the session's dialect if omitted
        """
        self.session = session
        self.logger = log or logger
        self.writer = writer

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_experiment(self, experiment_id: str) -> Experiment:
        experiment = self.session.get(Experiment, experiment_id, populate_existing=True)
        if experiment is None:
            raise ExperimentNotFoundError(f"Experiment not found: {experiment_id}")
        return experiment

    def _require_transition(self, experiment_id: str, rowcount: int, action: str) -> None:
        if rowcount == 1:
            return
        self.session.rollback()
        experiment = self.get_experiment(experiment_id)
        raise ExperimentStateError(
            f"Cannot {action} experiment {experiment_id}: status is '{experiment.status}'"
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_experiment(self, config: ExperimentConfig, log_dir: Optional[str] = None,
                         experiment_id: Optional[str] = None) -> str:
        """
        Insert a new experiment in ``running`` state.

        Args:
            config: Experiment configuration; a credential-free snapshot is stored
            log_dir: Directory holding this experiment's log files
            experiment_id: Explicit id (a fresh UUID otherwise)

        Returns:
            The experiment id
        """
        experiment_id = experiment_id or make_experiment_id()
        now = utcnow()
        experiment = Experiment(
            experiment_id=experiment_id,
            name=config.name,
            status="running",
            model_name=config.model.name,
            model_provider=config.model.provider,
            temperature=config.model.temperature,
            system_prompt=config.prompt.system_prompt,
            user_template=config.prompt.user_template,
            prompt_version=config.prompt.version,
            prompt_author=config.prompt.author,
            run_seed=config.run.seed,
            data_file=config.data.file,
            api_url=config.model.api_url,
            config_snapshot=config.snapshot(),
            narratives_processed=0,
            narratives_skipped=0,
            start_time=now,
            created_at=now,
            log_dir=log_dir,
            **environment_fingerprint(),
        )
        self.session.add(experiment)
        self.session.commit()
        self.logger.info(f"Started experiment {experiment_id} ({config.name}, model={config.model.name})")
        return experiment_id

    def set_total(self, experiment_id: str, total: int) -> None:
        """Record how many narratives the run covers."""
        stmt = (
            update(Experiment)
            .where(Experiment.experiment_id == experiment_id, Experiment.status == "running")
            .values({Experiment.narratives_total: total})
            .execution_options(synchronize_session=False)
        )
        self._require_transition(experiment_id, self.session.execute(stmt).rowcount, "update total of")
        self.session.commit()

    def set_log_dir(self, experiment_id: str, log_dir: str) -> None:
        stmt = (
            update(Experiment)
            .where(Experiment.experiment_id == experiment_id, Experiment.status == "running")
            .values({Experiment.log_dir: log_dir})
            .execution_options(synchronize_session=False)
        )
        self._require_transition(experiment_id, self.session.execute(stmt).rowcount, "update log dir of")
        self.session.commit()

    def log_result(self, experiment_id: str, record: NarrativeResultRecord) -> StoreOutcome:
        """
        Store one narrative result and bump the experiment counters.

        Raises:
            ExperimentStateError: If the experiment is not running
        """
        if record.experiment_id != experiment_id:
            raise ValueError(
                f"Record belongs to experiment {record.experiment_id}, not {experiment_id}"
            )
        try:
            return store_result(record, self.session, writer=self.writer, log=self.logger)
        except ExperimentStateError:
            self.session.rollback()
            raise

    def log_results_batch(self, experiment_id: str, records: Iterable[NarrativeResultRecord],
                          chunk_size: int = 100) -> BatchOutcome:
        """Store many results in chunked transactions."""
        records = list(records)
        foreign = [r for r in records if r.experiment_id != experiment_id]
        if foreign:
            raise ValueError(f"{len(foreign)} record(s) do not belong to experiment {experiment_id}")
        return store_results_batch(records, self.session, chunk_size=chunk_size,
                                   writer=self.writer, log=self.logger)

    def record_skipped(self, experiment_id: str, count: int = 1) -> None:
        """Count narratives skipped without a write (e.g. already done before a resume)."""
        if count <= 0:
            return
        stmt = (
            update(Experiment)
            .where(Experiment.experiment_id == experiment_id, Experiment.status == "running")
            .values({Experiment.narratives_skipped: Experiment.narratives_skipped + count})
            .execution_options(synchronize_session=False)
        )
        self._require_transition(experiment_id, self.session.execute(stmt).rowcount, "record skips on")
        self.session.commit()

    def compute_experiment_metrics(self, experiment_id: str) -> MetricSummary:
        """Aggregate metrics over the experiment's error-free results."""
        r = NarrativeResult

        def _count(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        stmt = select(
            func.count(),
            _count(r.is_true_positive.is_(True)),
            _count(r.is_true_negative.is_(True)),
            _count(r.is_false_positive.is_(True)),
            _count(r.is_false_negative.is_(True)),
            _count(r.detected.is_(True)),
            _count(r.detected.is_(False)),
            _count(r.manual_flag_individual.is_(True)),
            _count(r.manual_flag_individual.is_(False)),
        ).where(r.experiment_id == experiment_id, r.error_occurred == false())

        n, tp, tn, fp, fn, pos_det, neg_det, pos_man, neg_man = self.session.execute(stmt).one()
        return compute_metrics(
            ConfusionCounts(int(tp), int(tn), int(fp), int(fn)),
            n_evaluated=int(n),
            n_positive_detected=int(pos_det),
            n_negative_detected=int(neg_det),
            n_positive_manual=int(pos_man),
            n_negative_manual=int(neg_man),
        )

    def finalize_experiment(self, experiment_id: str, metrics: Optional[MetricSummary] = None,
                            csv_file: Optional[str] = None,
                            json_file: Optional[str] = None) -> ExperimentSummary:
        """
        Write metrics and move the experiment to ``completed``.

        Args:
            experiment_id: Experiment to finalize
            metrics: Precomputed metrics; computed from stored results if omitted
            csv_file / json_file: Exported result files, if any

        Raises:
            ExperimentNotFoundError: If the experiment does not exist
            ExperimentStateError: If it is not running
        """
        experiment = self.get_experiment(experiment_id)
        if metrics is None:
            metrics = self.compute_experiment_metrics(experiment_id)

        end_time = utcnow()
        runtime = (end_time - _as_utc(experiment.start_time)).total_seconds()
        per_narrative_base = experiment.narratives_total or experiment.narratives_processed
        avg_time = runtime / per_narrative_base if per_narrative_base else None

        counts = metrics.counts
        stmt = (
            update(Experiment)
            .where(Experiment.experiment_id == experiment_id, Experiment.status == "running")
            .values({
                Experiment.status: "completed",
                Experiment.end_time: end_time,
                Experiment.total_runtime_seconds: runtime,
                Experiment.avg_time_per_narrative_seconds: avg_time,
                Experiment.accuracy: metrics.accuracy,
                Experiment.precision: metrics.precision,
                Experiment.recall: metrics.recall,
                Experiment.f1: metrics.f1,
                Experiment.n_true_positive: counts.true_positive,
                Experiment.n_true_negative: counts.true_negative,
                Experiment.n_false_positive: counts.false_positive,
                Experiment.n_false_negative: counts.false_negative,
                Experiment.n_positive_detected: metrics.n_positive_detected,
                Experiment.n_negative_detected: metrics.n_negative_detected,
                Experiment.n_positive_manual: metrics.n_positive_manual,
                Experiment.n_negative_manual: metrics.n_negative_manual,
                Experiment.pct_overlap_with_manual: metrics.pct_overlap_with_manual,
                Experiment.csv_file: csv_file,
                Experiment.json_file: json_file,
            })
            .execution_options(synchronize_session=False)
        )
        self._require_transition(experiment_id, self.session.execute(stmt).rowcount, "finalize")
        self.session.commit()

        self.logger.info(
            f"Finalized experiment {experiment_id}: accuracy={metrics.accuracy} "
            f"precision={metrics.precision} recall={metrics.recall} f1={metrics.f1}"
        )
        return self.get_summary(experiment_id, metrics=metrics)

    def mark_failed(self, experiment_id: str, error_message: str) -> None:
        """
        Move a running experiment to ``failed`` and keep the reason in ``notes``.

        Discards whatever the session had pending, so it can be called from a
        failure handler after a mid-batch error.
        """
        self.session.rollback()
        stmt = (
            update(Experiment)
            .where(Experiment.experiment_id == experiment_id, Experiment.status == "running")
            .values({
                Experiment.status: "failed",
                Experiment.end_time: utcnow(),
                Experiment.notes: f"FAILED: {error_message}",
            })
            .execution_options(synchronize_session=False)
        )
        self._require_transition(experiment_id, self.session.execute(stmt).rowcount, "mark failed")
        self.session.commit()
        self.logger.error(f"Experiment {experiment_id} marked as failed: {error_message}")

    # ------------------------------------------------------------------
    # Resume support
    # ------------------------------------------------------------------

    def find_running_experiments(self) -> List[Experiment]:
        stmt = select(Experiment).where(Experiment.status == "running").order_by(Experiment.start_time)
        return list(self.session.execute(stmt).scalars())

    def completed_keys(self, experiment_id: str) -> Set[Tuple[str, str]]:
        """``(incident_id, narrative_type)`` pairs that already have a result row."""
        stmt = select(NarrativeResult.incident_id, NarrativeResult.narrative_type).where(
            NarrativeResult.experiment_id == experiment_id
        )
        return {(incident_id, narrative_type) for incident_id, narrative_type in self.session.execute(stmt)}

    def get_summary(self, experiment_id: str,
                    metrics: Optional[MetricSummary] = None) -> ExperimentSummary:
        experiment = self.get_experiment(experiment_id)
        if metrics is None and experiment.status == "completed":
            metrics = self.compute_experiment_metrics(experiment_id)
        return ExperimentSummary(
            experiment_id=experiment.experiment_id,
            name=experiment.name,
            status=experiment.status,
            narratives_total=experiment.narratives_total,
            narratives_processed=experiment.narratives_processed,
            narratives_skipped=experiment.narratives_skipped,
            start_time=_as_utc(experiment.start_time),
            end_time=_as_utc(experiment.end_time),
            total_runtime_seconds=experiment.total_runtime_seconds,
            avg_time_per_narrative_seconds=experiment.avg_time_per_narrative_seconds,
            metrics=metrics,
            notes=experiment.notes,
        )


__all__ = [
    "ExperimentTracker",
    "ExperimentSummary",
    "environment_fingerprint",
]
