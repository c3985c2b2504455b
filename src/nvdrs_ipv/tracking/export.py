"""CSV / JSON export of an experiment's narrative results."""

import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from ..db.models import NarrativeResult
from ..utils.run_id import make_timestamp_tag
from .queries import get_experiment_results

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "result_id", "experiment_id", "row_num", "incident_id", "narrative_type",
    "manual_flag_individual", "manual_flag_case", "detected", "confidence",
    "indicators", "rationale", "reasoning_steps", "parse_stage", "warnings",
    "response_time_seconds", "processed_at", "prompt_tokens", "completion_tokens",
    "tokens_used", "error_occurred", "error_message", "is_true_positive",
    "is_true_negative", "is_false_positive", "is_false_negative", "narrative_text",
    "raw_response",
]
_LIST_COLUMNS = ("indicators", "reasoning_steps", "warnings")
SUPPORTED_FORMATS = ("csv", "json")


def result_to_dict(result: NarrativeResult) -> Dict[str, Any]:
    data = {column: getattr(result, column) for column in EXPORT_COLUMNS}
    if isinstance(data["processed_at"], datetime):
        data["processed_at"] = data["processed_at"].isoformat()
    for column in _LIST_COLUMNS:
        data[column] = list(data[column] or [])
    return data


def _write_csv(path: Path, rows: List[Dict[str, Any]]) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        for row in rows:
            flat = dict(row)
            for column in _LIST_COLUMNS:
                flat[column] = "; ".join(flat[column])
            writer.writerow(flat)


def _write_json(path: Path, rows: List[Dict[str, Any]]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(rows, f, indent=2, default=str)


def export_results(session: Session, experiment_id: str, output_dir: Union[str, Path],
                   formats: Iterable[str] = SUPPORTED_FORMATS,
                   timestamp: Optional[str] = None) -> Dict[str, Path]:
    """
    Write an experiment's results to ``experiment_<id>_<timestamp>.<fmt>``.

    Returns:
        Mapping of format to written file path
    """
    formats = list(formats)
    unknown = [f for f in formats if f not in SUPPORTED_FORMATS]
    if unknown:
        raise ValueError(f"Unsupported export format(s): {unknown}")

    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    stem = f"experiment_{experiment_id}_{timestamp or make_timestamp_tag()}"
    rows = [result_to_dict(r) for r in get_experiment_results(session, experiment_id)]

    written: Dict[str, Path] = {}
    for fmt in formats:
        path = out / f"{stem}.{fmt}"
        if fmt == "csv":
            _write_csv(path, rows)
        else:
            _write_json(path, rows)
        written[fmt] = path
        logger.info(f"Exported {len(rows)} results for {experiment_id} to {path}")
    return written


__all__ = ["export_results", "result_to_dict", "EXPORT_COLUMNS", "SUPPORTED_FORMATS"]
