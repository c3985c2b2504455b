"""
Result records handed to the storage layer.

A :class:`NarrativeResultRecord` is the write-side shape of one
``narrative_results`` row. :func:`validate_record` applies the same rules the
table's CHECK constraints enforce, so violations are reported with the
offending field instead of a driver error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from ..db.models import NARRATIVE_TYPES
from ..errors import ConstraintViolation
from ..parsing.response_parser import ParsedResult
from ..tracking.metrics import Outcome, outcome_flags
from ..utils.run_id import utcnow

if TYPE_CHECKING:
    from ..ingest.narratives import NarrativeRecord

_NON_NEGATIVE_FIELDS = ("prompt_tokens", "completion_tokens", "tokens_used", "response_time_seconds")
_OUTCOME_FIELDS = tuple(member.value for member in Outcome)


@dataclass
class NarrativeResultRecord:
    experiment_id: str
    incident_id: str
    narrative_type: str
    narrative_text: Optional[str] = None
    row_num: Optional[int] = None
    manual_flag_individual: Optional[bool] = None
    manual_flag_case: Optional[bool] = None
    detected: Optional[bool] = None
    confidence: Optional[float] = None
    indicators: List[str] = field(default_factory=list)
    rationale: Optional[str] = None
    reasoning_steps: List[str] = field(default_factory=list)
    raw_response: Optional[str] = None
    model_name: Optional[str] = None
    parse_stage: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    response_time_seconds: Optional[float] = None
    processed_at: Optional[datetime] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    tokens_used: Optional[int] = None
    error_occurred: bool = False
    error_message: Optional[str] = None
    is_true_positive: bool = False
    is_true_negative: bool = False
    is_false_positive: bool = False
    is_false_negative: bool = False

    @property
    def key(self) -> tuple:
        """Natural key: one row per narrative per experiment."""
        return (self.experiment_id, self.incident_id, self.narrative_type)

    @classmethod
    def from_parsed(cls, parsed: ParsedResult, experiment_id: str,
                    narrative: "NarrativeRecord",
                    response_time_seconds: Optional[float] = None,
                    row_num: Optional[int] = None,
                    processed_at: Optional[datetime] = None) -> "NarrativeResultRecord":
        """Combine a parsed response with its narrative and derive the outcome flags."""
        flags = outcome_flags(parsed.detected, narrative.manual_flag_individual)
        return cls(
            experiment_id=experiment_id,
            incident_id=narrative.incident_id,
            narrative_type=narrative.narrative_type,
            narrative_text=narrative.narrative_text,
            row_num=row_num,
            manual_flag_individual=narrative.manual_flag_individual,
            manual_flag_case=narrative.manual_flag_case,
            detected=parsed.detected,
            confidence=parsed.confidence,
            indicators=list(parsed.indicators),
            rationale=parsed.rationale,
            reasoning_steps=list(parsed.reasoning_steps),
            raw_response=parsed.raw_response,
            model_name=parsed.model,
            parse_stage=parsed.parse_stage.value if parsed.parse_stage else None,
            warnings=list(parsed.warnings),
            response_time_seconds=response_time_seconds,
            processed_at=processed_at or utcnow(),
            prompt_tokens=parsed.prompt_tokens,
            completion_tokens=parsed.completion_tokens,
            tokens_used=parsed.tokens_used,
            error_occurred=parsed.parse_error,
            error_message=parsed.error_message,
            **flags,
        )

    def to_row(self) -> Dict[str, Any]:
        """Column values for an INSERT into ``narrative_results``."""
        row = {f.name: getattr(self, f.name) for f in fields(self)}
        row["indicators"] = list(self.indicators)
        row["reasoning_steps"] = list(self.reasoning_steps)
        row["warnings"] = list(self.warnings)
        return row


def validate_record(record: NarrativeResultRecord) -> None:
    """
    Check a record against the storage constraints.

    Raises:
        ConstraintViolation: On the first violated rule
    """
    for key_field in ("experiment_id", "incident_id", "narrative_type"):
        if not getattr(record, key_field):
            raise ConstraintViolation(key_field, getattr(record, key_field), f"{key_field} is required")

    if record.narrative_type not in NARRATIVE_TYPES:
        raise ConstraintViolation("narrative_type", record.narrative_type,
                                  f"narrative_type must be one of {NARRATIVE_TYPES}")

    confidence = record.confidence
    if confidence is not None:
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise ConstraintViolation("confidence", confidence, "confidence must be numeric")
        if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
            raise ConstraintViolation("confidence", confidence, "confidence must be within [0, 1]")

    for name in _NON_NEGATIVE_FIELDS:
        value = getattr(record, name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConstraintViolation(name, value, f"{name} must be numeric")
        if math.isnan(value) or value < 0:
            raise ConstraintViolation(name, value, f"{name} must not be negative")

    set_flags = [name for name in _OUTCOME_FIELDS if getattr(record, name)]
    if len(set_flags) > 1:
        raise ConstraintViolation("outcome", set_flags, "at most one outcome flag may be set")


__all__ = ["NarrativeResultRecord", "validate_record"]
