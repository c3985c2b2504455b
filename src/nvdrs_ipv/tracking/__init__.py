"""
Experiment tracking.

The lifecycle manager lives in :mod:`.experiments`, read-side helpers in
:mod:`.queries` and :mod:`.export`. Only the storage-independent metrics are
re-exported here.
"""

from .metrics import (
    Outcome,
    classify_outcome,
    outcome_flags,
    ConfusionCounts,
    MetricSummary,
    compute_metrics,
)

__all__ = [
    "Outcome",
    "classify_outcome",
    "outcome_flags",
    "ConfusionCounts",
    "MetricSummary",
    "compute_metrics",
]
