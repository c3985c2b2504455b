"""
Confusion-matrix outcomes and experiment-level detection metrics.

Undefined ratios are reported as ``None``, never NaN or 0.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, Optional


class Outcome(Enum):
    """Confusion-matrix cell for one narrative."""
    TRUE_POSITIVE = "is_true_positive"
    TRUE_NEGATIVE = "is_true_negative"
    FALSE_POSITIVE = "is_false_positive"
    FALSE_NEGATIVE = "is_false_negative"


def classify_outcome(detected: Optional[bool], truth: Optional[bool]) -> Optional[Outcome]:
    """Compare a prediction with ground truth; ``None`` when either is unknown."""
    if detected is None or truth is None:
        return None
    if detected:
        return Outcome.TRUE_POSITIVE if truth else Outcome.FALSE_POSITIVE
    return Outcome.FALSE_NEGATIVE if truth else Outcome.TRUE_NEGATIVE


def outcome_flags(detected: Optional[bool], truth: Optional[bool]) -> Dict[str, bool]:
    """The four ``is_*`` column values, at most one of them True."""
    outcome = classify_outcome(detected, truth)
    return {member.value: member is outcome for member in Outcome}


@dataclass(frozen=True)
class ConfusionCounts:
    true_positive: int = 0
    true_negative: int = 0
    false_positive: int = 0
    false_negative: int = 0

    @property
    def total(self) -> int:
        return self.true_positive + self.true_negative + self.false_positive + self.false_negative


@dataclass(frozen=True)
class MetricSummary:
    """Aggregate detection metrics for one experiment."""
    counts: ConfusionCounts
    accuracy: Optional[float] = None
    precision: Optional[float] = None
    recall: Optional[float] = None
    f1: Optional[float] = None
    n_evaluated: int = 0
    n_positive_detected: int = 0
    n_negative_detected: int = 0
    n_positive_manual: int = 0
    n_negative_manual: int = 0
    pct_overlap_with_manual: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        counts = data.pop("counts")
        data.update({f"n_{k}": v for k, v in counts.items()})
        return data


def _ratio(numerator: int, denominator: int) -> Optional[float]:
    if denominator == 0:
        return None
    return numerator / denominator


def compute_metrics(counts: ConfusionCounts,
                    n_evaluated: Optional[int] = None,
                    n_positive_detected: int = 0,
                    n_negative_detected: int = 0,
                    n_positive_manual: int = 0,
                    n_negative_manual: int = 0) -> MetricSummary:
    """
    Compute accuracy, precision, recall and F1 from confusion counts.

    Args:
        counts: Confusion-matrix counts
        n_evaluated: Rows considered (error-free results, including those with
            unknown ground truth); defaults to ``counts.total``
        n_positive_detected .. n_negative_manual: Marginal totals echoed on the summary

    Returns:
        MetricSummary with ``None`` for every undefined ratio
    """
    tp, fp, fn = counts.true_positive, counts.false_positive, counts.false_negative
    correct = tp + counts.true_negative
    evaluated = counts.total if n_evaluated is None else n_evaluated

    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    f1 = None
    if precision is not None and recall is not None and (precision + recall) > 0:
        f1 = 2 * precision * recall / (precision + recall)

    overlap = _ratio(correct, evaluated)

    return MetricSummary(
        counts=counts,
        accuracy=_ratio(correct, counts.total),
        precision=precision,
        recall=recall,
        f1=f1,
        n_evaluated=evaluated,
        n_positive_detected=n_positive_detected,
        n_negative_detected=n_negative_detected,
        n_positive_manual=n_positive_manual,
        n_negative_manual=n_negative_manual,
        pct_overlap_with_manual=overlap * 100 if overlap is not None else None,
    )


__all__ = [
    "Outcome",
    "classify_outcome",
    "outcome_flags",
    "ConfusionCounts",
    "MetricSummary",
    "compute_metrics",
]
