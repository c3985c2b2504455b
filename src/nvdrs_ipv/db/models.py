# src/nvdrs_ipv/db/models.py
"""
Database models for IPV detection experiments.

Three tables:
    source_narratives   narratives loaded from the NVDRS export (ground truth)
    experiments         one row per configured batch run
    narrative_results   one row per narrative per experiment

Range, sign and outcome-exclusivity rules are declared as CHECK constraints so
they hold at the storage boundary regardless of which code path writes.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Text, Boolean, DateTime, Float, ForeignKey, Index, Integer, JSON,
    UniqueConstraint, CheckConstraint, false, text,
)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """SQLAlchemy declarative base for experiment tracking models."""
    pass


NARRATIVE_TYPES = ("cme", "le")
EXPERIMENT_STATUSES = ("running", "completed", "failed")

RESULT_UNIQUE_CONSTRAINT = "uq_narrative_results_experiment_narrative"
SOURCE_UNIQUE_CONSTRAINT = "uq_source_narratives_incident_type"


def _null_or_between(column: str, low: float, high: float) -> str:
    return f"{column} IS NULL OR ({column} >= {low} AND {column} <= {high})"


def _null_or_non_negative(column: str) -> str:
    return f"{column} IS NULL OR {column} >= 0"


# ---------------------------------------------------------------------------
# Source narratives
# ---------------------------------------------------------------------------

class SourceNarrative(Base):
    __tablename__ = "source_narratives"

    narrative_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[str] = mapped_column(String(64), nullable=False)
    narrative_type: Mapped[str] = mapped_column(String(8), nullable=False)
    narrative_text: Mapped[Optional[str]] = mapped_column(Text)
    manual_flag_individual: Mapped[Optional[bool]] = mapped_column(Boolean)
    manual_flag_case: Mapped[Optional[bool]] = mapped_column(Boolean)
    data_source: Mapped[Optional[str]] = mapped_column(Text)
    loaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("incident_id", "narrative_type", name=SOURCE_UNIQUE_CONSTRAINT),
        CheckConstraint("narrative_type IN ('cme', 'le')", name="ck_source_narratives_type"),
        Index("ix_source_narratives_incident", "incident_id"),
        Index("ix_source_narratives_type", "narrative_type"),
        Index("ix_source_narratives_manual", "manual_flag_individual"),
        Index("ix_source_narratives_data_source", "data_source"),
    )

    def __repr__(self) -> str:
        return f"<SourceNarrative {self.incident_id}/{self.narrative_type}>"


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------

class Experiment(Base):
    __tablename__ = "experiments"

    experiment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default=text("'running'"))

    # configuration echoed for reproducibility
    model_name: Mapped[str] = mapped_column(Text, nullable=False)
    model_provider: Mapped[Optional[str]] = mapped_column(Text)
    temperature: Mapped[float] = mapped_column(Float, nullable=False)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    user_template: Mapped[str] = mapped_column(Text, nullable=False)
    prompt_version: Mapped[Optional[str]] = mapped_column(Text)
    prompt_author: Mapped[Optional[str]] = mapped_column(Text)
    run_seed: Mapped[Optional[int]] = mapped_column(Integer)
    data_file: Mapped[Optional[str]] = mapped_column(Text)
    api_url: Mapped[Optional[str]] = mapped_column(Text)
    config_snapshot: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    # environment fingerprint
    python_version: Mapped[Optional[str]] = mapped_column(Text)
    os_info: Mapped[Optional[str]] = mapped_column(Text)
    hostname: Mapped[Optional[str]] = mapped_column(Text)

    # progress counters
    narratives_total: Mapped[Optional[int]] = mapped_column(Integer)
    narratives_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    narratives_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    # timing
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    total_runtime_seconds: Mapped[Optional[float]] = mapped_column(Float)
    avg_time_per_narrative_seconds: Mapped[Optional[float]] = mapped_column(Float)

    # metrics (NULL until finalized)
    n_positive_detected: Mapped[Optional[int]] = mapped_column(Integer)
    n_negative_detected: Mapped[Optional[int]] = mapped_column(Integer)
    n_positive_manual: Mapped[Optional[int]] = mapped_column(Integer)
    n_negative_manual: Mapped[Optional[int]] = mapped_column(Integer)
    accuracy: Mapped[Optional[float]] = mapped_column(Float)
    precision: Mapped[Optional[float]] = mapped_column("precision_ipv", Float)
    recall: Mapped[Optional[float]] = mapped_column("recall_ipv", Float)
    f1: Mapped[Optional[float]] = mapped_column("f1_ipv", Float)
    n_true_positive: Mapped[Optional[int]] = mapped_column(Integer)
    n_true_negative: Mapped[Optional[int]] = mapped_column(Integer)
    n_false_positive: Mapped[Optional[int]] = mapped_column(Integer)
    n_false_negative: Mapped[Optional[int]] = mapped_column(Integer)
    pct_overlap_with_manual: Mapped[Optional[float]] = mapped_column(Float)

    # artifacts
    csv_file: Mapped[Optional[str]] = mapped_column(Text)
    json_file: Mapped[Optional[str]] = mapped_column(Text)
    log_dir: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    results: Mapped[List["NarrativeResult"]] = relationship(
        back_populates="experiment",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_experiments_status"),
        CheckConstraint(_null_or_between("accuracy", 0, 1), name="ck_experiments_accuracy_range"),
        CheckConstraint(_null_or_between("precision_ipv", 0, 1), name="ck_experiments_precision_range"),
        CheckConstraint(_null_or_between("recall_ipv", 0, 1), name="ck_experiments_recall_range"),
        CheckConstraint(_null_or_between("f1_ipv", 0, 1), name="ck_experiments_f1_range"),
        CheckConstraint(
            "status <> 'running' OR (accuracy IS NULL AND precision_ipv IS NULL "
            "AND recall_ipv IS NULL AND f1_ipv IS NULL)",
            name="ck_experiments_metrics_null_while_running",
        ),
        CheckConstraint("narratives_processed >= 0 AND narratives_skipped >= 0",
                        name="ck_experiments_counters_non_negative"),
        CheckConstraint(_null_or_non_negative("narratives_total"), name="ck_experiments_total_non_negative"),
        Index("ix_experiments_status", "status"),
        Index("ix_experiments_model_name", "model_name"),
        Index("ix_experiments_prompt_version", "prompt_version"),
        Index("ix_experiments_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Experiment {self.experiment_id} {self.name!r} {self.status}>"


# ---------------------------------------------------------------------------
# Narrative results
# ---------------------------------------------------------------------------

class NarrativeResult(Base):
    __tablename__ = "narrative_results"

    result_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    experiment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("experiments.experiment_id", ondelete="CASCADE"), nullable=False
    )
    incident_id: Mapped[str] = mapped_column(String(64), nullable=False)
    narrative_type: Mapped[str] = mapped_column(String(8), nullable=False)
    row_num: Mapped[Optional[int]] = mapped_column(Integer)
    narrative_text: Mapped[Optional[str]] = mapped_column(Text)

    # ground truth copied from source_narratives at processing time
    manual_flag_individual: Mapped[Optional[bool]] = mapped_column(Boolean)
    manual_flag_case: Mapped[Optional[bool]] = mapped_column(Boolean)

    # LLM output
    detected: Mapped[Optional[bool]] = mapped_column(Boolean)
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    indicators: Mapped[Optional[List[str]]] = mapped_column(JSON)
    rationale: Mapped[Optional[str]] = mapped_column(Text)
    reasoning_steps: Mapped[Optional[List[str]]] = mapped_column(JSON)
    raw_response: Mapped[Optional[str]] = mapped_column(Text)
    model_name: Mapped[Optional[str]] = mapped_column(Text)
    parse_stage: Mapped[Optional[str]] = mapped_column(String(16))
    warnings: Mapped[Optional[List[str]]] = mapped_column(JSON)

    # performance
    response_time_seconds: Mapped[Optional[float]] = mapped_column(Float)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    prompt_tokens: Mapped[Optional[int]] = mapped_column(Integer)
    completion_tokens: Mapped[Optional[int]] = mapped_column(Integer)
    tokens_used: Mapped[Optional[int]] = mapped_column(Integer)

    # errors
    error_occurred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # confusion-matrix outcome
    is_true_positive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_true_negative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_false_positive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_false_negative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    experiment: Mapped["Experiment"] = relationship(back_populates="results")

    __table_args__ = (
        UniqueConstraint("experiment_id", "incident_id", "narrative_type", name=RESULT_UNIQUE_CONSTRAINT),
        CheckConstraint("narrative_type IN ('cme', 'le')", name="ck_narrative_results_type"),
        CheckConstraint(_null_or_between("confidence", 0, 1), name="ck_narrative_results_confidence_range"),
        CheckConstraint(_null_or_non_negative("prompt_tokens"), name="ck_narrative_results_prompt_tokens"),
        CheckConstraint(_null_or_non_negative("completion_tokens"), name="ck_narrative_results_completion_tokens"),
        CheckConstraint(_null_or_non_negative("tokens_used"), name="ck_narrative_results_tokens_used"),
        CheckConstraint(_null_or_non_negative("response_time_seconds"), name="ck_narrative_results_response_time"),
        CheckConstraint(
            "CAST(is_true_positive AS INTEGER) + CAST(is_true_negative AS INTEGER) + "
            "CAST(is_false_positive AS INTEGER) + CAST(is_false_negative AS INTEGER) <= 1",
            name="ck_narrative_results_single_outcome",
        ),
        Index("ix_narrative_results_experiment", "experiment_id"),
        Index("ix_narrative_results_incident", "incident_id"),
        Index("ix_narrative_results_type", "narrative_type"),
        Index("ix_narrative_results_detected", "detected"),
        Index("ix_narrative_results_manual", "manual_flag_individual"),
        Index("ix_narrative_results_error", "error_occurred"),
        Index("ix_narrative_results_tp", "is_true_positive"),
        Index("ix_narrative_results_tn", "is_true_negative"),
        Index("ix_narrative_results_fp", "is_false_positive"),
        Index("ix_narrative_results_fn", "is_false_negative"),
        Index("ix_narrative_results_experiment_tokens", "experiment_id", "tokens_used"),
    )

    def __repr__(self) -> str:
        return f"<NarrativeResult {self.experiment_id}:{self.incident_id}/{self.narrative_type}>"


__all__ = [
    "Base",
    "SourceNarrative",
    "Experiment",
    "NarrativeResult",
    "NARRATIVE_TYPES",
    "EXPERIMENT_STATUSES",
    "RESULT_UNIQUE_CONSTRAINT",
    "SOURCE_UNIQUE_CONSTRAINT",
]
