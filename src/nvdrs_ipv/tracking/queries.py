"""Read-only queries for listing, comparing and inspecting experiments."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..db.models import EXPERIMENT_STATUSES, Experiment, NarrativeResult

DISAGREEMENT_KINDS = ("false_positive", "false_negative", "both")


@dataclass
class ErrorSummary:
    experiment_id: str
    name: str
    error_count: int = 0
    error_messages: List[str] = field(default_factory=list)


def list_experiments(session: Session, status: Optional[str] = None) -> List[Experiment]:
    """Experiments, newest first, optionally filtered by status."""
    if status is not None and status not in EXPERIMENT_STATUSES:
        raise ValueError(f"Unknown status {status!r}; expected one of {EXPERIMENT_STATUSES}")
    stmt = select(Experiment).order_by(Experiment.created_at.desc())
    if status is not None:
        stmt = stmt.where(Experiment.status == status)
    return list(session.execute(stmt).scalars())


def get_experiment_results(session: Session, experiment_id: str) -> List[NarrativeResult]:
    """All result rows of one experiment in processing order."""
    stmt = (
        select(NarrativeResult)
        .where(NarrativeResult.experiment_id == experiment_id)
        .order_by(NarrativeResult.row_num, NarrativeResult.result_id)
    )
    return list(session.execute(stmt).scalars())


def compare_experiments(session: Session, experiment_ids: Sequence[str]) -> List[Experiment]:
    """Experiments side by side, best F1 first; unfinished runs sort last."""
    if not experiment_ids:
        raise ValueError("No experiment IDs provided")
    stmt = (
        select(Experiment)
        .where(Experiment.experiment_id.in_(list(experiment_ids)))
        .order_by(Experiment.f1.desc().nulls_last(), Experiment.experiment_id)
    )
    return list(session.execute(stmt).scalars())


def find_disagreements(session: Session, experiment_id: str, kind: str = "both") -> List[NarrativeResult]:
    """
    Results where the model disagrees with the manual flag.

    Args:
        kind: ``false_positive``, ``false_negative`` or ``both``
    """
    if kind == "false_positive":
        condition = NarrativeResult.is_false_positive.is_(True)
    elif kind == "false_negative":
        condition = NarrativeResult.is_false_negative.is_(True)
    elif kind == "both":
        condition = or_(NarrativeResult.is_false_positive.is_(True),
                        NarrativeResult.is_false_negative.is_(True))
    else:
        raise ValueError(f"Unknown disagreement kind {kind!r}; expected one of {DISAGREEMENT_KINDS}")

    stmt = (
        select(NarrativeResult)
        .where(NarrativeResult.experiment_id == experiment_id, condition)
        .order_by(NarrativeResult.confidence.desc().nulls_last(), NarrativeResult.result_id)
    )
    return list(session.execute(stmt).scalars())


def summarize_errors(session: Session, experiment_id: Optional[str] = None) -> List[ErrorSummary]:
    """Errored results per experiment with their distinct messages, most errors first."""
    stmt = (
        select(Experiment.experiment_id, Experiment.name, NarrativeResult.error_message)
        .join(NarrativeResult, NarrativeResult.experiment_id == Experiment.experiment_id)
        .where(NarrativeResult.error_occurred.is_(True))
        .order_by(NarrativeResult.result_id)
    )
    if experiment_id is not None:
        stmt = stmt.where(Experiment.experiment_id == experiment_id)

    summaries: Dict[str, ErrorSummary] = {}
    for exp_id, name, message in session.execute(stmt):
        summary = summaries.setdefault(exp_id, ErrorSummary(experiment_id=exp_id, name=name))
        summary.error_count += 1
        if message and message not in summary.error_messages:
            summary.error_messages.append(message)
    return sorted(summaries.values(), key=lambda s: s.error_count, reverse=True)


__all__ = [
    "ErrorSummary",
    "list_experiments",
    "get_experiment_results",
    "compare_experiments",
    "find_disagreements",
    "summarize_errors",
    "DISAGREEMENT_KINDS",
]
