"""
Source narrative ingestion.

The NVDRS export is wide: one row per incident with a coroner/medical examiner
(CME) narrative, a law-enforcement (LE) narrative and manual IPV flags for
each. Ingestion pivots it to one record per narrative and stores the records in
``source_narratives``, skipping any ``(incident_id, narrative_type)`` already
present.
"""

import csv
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from sqlalchemy import delete, func, insert, select
from sqlalchemy.orm import Session

from ..db.models import SourceNarrative
from ..utils.run_id import utcnow

logger = logging.getLogger(__name__)

# wide-format column -> (narrative_type, individual flag column)
NARRATIVE_COLUMNS = {
    "NarrativeCME": ("cme", "ipv_manualCME"),
    "NarrativeLE": ("le", "ipv_manualLE"),
}
INCIDENT_COLUMN = "IncidentID"
CASE_FLAG_COLUMN = "ipv_manual"

_TRUE_VALUES = {"1", "true", "t", "yes", "y"}
_FALSE_VALUES = {"0", "false", "f", "no", "n"}


@dataclass(frozen=True)
class NarrativeRecord:
    """One narrative with its ground truth."""
    incident_id: str
    narrative_type: str
    narrative_text: Optional[str]
    manual_flag_individual: Optional[bool] = None
    manual_flag_case: Optional[bool] = None
    narrative_id: Optional[int] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.incident_id, self.narrative_type)


@dataclass
class LoadOutcome:
    """Result of loading narratives from one data source."""
    data_source: str
    loaded: int = 0
    skipped_duplicates: int = 0
    already_loaded: bool = False
    existing: int = 0
    by_type: Dict[str, Dict[str, int]] = field(default_factory=dict)


def parse_flag(value: Any) -> Optional[bool]:
    """Coerce a manual flag cell to a boolean; blank or unrecognised is None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value in (0, 1):
            return bool(value)
        return None
    text = str(value).strip().lower()
    if text.endswith(".0"):
        text = text[:-2]
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return None


def _clean_incident_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    return text or None


def pivot_incident_rows(rows: Iterable[Mapping[str, Any]]) -> List[NarrativeRecord]:
    """
    Turn wide incident rows into narrative records.

    Rows without an incident id and narratives that are missing or blank are
    dropped. Output order follows input order, CME before LE per incident.
    """
    records: List[NarrativeRecord] = []
    for row in rows:
        incident_id = _clean_incident_id(row.get(INCIDENT_COLUMN))
        if incident_id is None:
            continue
        case_flag = parse_flag(row.get(CASE_FLAG_COLUMN))
        for text_column, (narrative_type, flag_column) in NARRATIVE_COLUMNS.items():
            text = row.get(text_column)
            if text is None or not str(text).strip():
                continue
            records.append(NarrativeRecord(
                incident_id=incident_id,
                narrative_type=narrative_type,
                narrative_text=str(text),
                manual_flag_individual=parse_flag(row.get(flag_column)),
                manual_flag_case=case_flag,
            ))
    return records


def read_narrative_csv(path: Union[str, Path]) -> List[Dict[str, str]]:
    """Read the wide CSV export into a list of row mappings."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        return list(csv.DictReader(f))


def _summarize(records: List[NarrativeRecord]) -> Dict[str, Dict[str, int]]:
    counts = Counter(r.narrative_type for r in records)
    positives = Counter(r.narrative_type for r in records if r.manual_flag_individual)
    return {t: {"n": counts[t], "n_positive": positives[t]} for t in sorted(counts)}


def count_loaded(session: Session, data_source: str) -> int:
    stmt = select(func.count()).select_from(SourceNarrative).where(SourceNarrative.data_source == data_source)
    return session.execute(stmt).scalar_one()


def check_data_loaded(session: Session, data_source: str) -> bool:
    """True if any narrative from ``data_source`` is stored."""
    return count_loaded(session, data_source) > 0


def load_source_narratives(session: Session, records: Iterable[NarrativeRecord], data_source: str,
                           force_reload: bool = False, commit: bool = True,
                           log: Optional[logging.Logger] = None) -> LoadOutcome:
    """
    Store narratives from one data source.

    Args:
        session: Database session
        records: Narratives to store
        data_source: Origin file/path recorded on each row
        force_reload: Delete rows previously loaded from ``data_source`` first
        commit: Commit after loading
        log: Optional logger

    Returns:
        LoadOutcome; ``already_loaded`` is set (and nothing is written) when the
        source was loaded before and ``force_reload`` is False
    """
    log = log or logger
    existing = count_loaded(session, data_source)
    if existing and not force_reload:
        log.info(f"Data already loaded from {data_source} ({existing} narratives); use force_reload to reload")
        return LoadOutcome(data_source=data_source, already_loaded=True, existing=existing)

    if existing and force_reload:
        log.info(f"Removing {existing} narratives previously loaded from {data_source}")
        session.execute(delete(SourceNarrative).where(SourceNarrative.data_source == data_source))

    stored: Set[Tuple[str, str]] = {
        (incident_id, narrative_type)
        for incident_id, narrative_type in session.execute(
            select(SourceNarrative.incident_id, SourceNarrative.narrative_type)
        )
    }

    loaded_at = utcnow()
    to_insert: List[NarrativeRecord] = []
    skipped = 0
    for record in records:
        if record.key in stored:
            skipped += 1
            continue
        stored.add(record.key)
        to_insert.append(record)

    if to_insert:
        session.execute(
            insert(SourceNarrative),
            [
                {
                    "incident_id": r.incident_id,
                    "narrative_type": r.narrative_type,
                    "narrative_text": r.narrative_text,
                    "manual_flag_individual": r.manual_flag_individual,
                    "manual_flag_case": r.manual_flag_case,
                    "data_source": data_source,
                    "loaded_at": loaded_at,
                }
                for r in to_insert
            ],
        )
    if commit:
        session.commit()

    if skipped:
        log.warning(f"Skipped {skipped} duplicate narrative(s) from {data_source}")
    log.info(f"Loaded {len(to_insert)} narratives from {data_source}")
    return LoadOutcome(
        data_source=data_source,
        loaded=len(to_insert),
        skipped_duplicates=skipped,
        existing=existing if force_reload else 0,
        by_type=_summarize(to_insert),
    )


def load_narrative_file(session: Session, path: Union[str, Path], force_reload: bool = False,
                        log: Optional[logging.Logger] = None) -> LoadOutcome:
    """Read, pivot and store a wide CSV export."""
    rows = read_narrative_csv(path)
    return load_source_narratives(session, pivot_incident_rows(rows), str(path),
                                  force_reload=force_reload, log=log)


def get_source_narratives(session: Session, data_source: Optional[str] = None,
                          max_narratives: Optional[int] = None) -> List[NarrativeRecord]:
    """Stored narratives in load order, optionally filtered and limited."""
    stmt = select(SourceNarrative).order_by(SourceNarrative.narrative_id)
    if data_source is not None:
        stmt = stmt.where(SourceNarrative.data_source == data_source)
    if max_narratives is not None:
        stmt = stmt.limit(max_narratives)
    return [
        NarrativeRecord(
            incident_id=row.incident_id,
            narrative_type=row.narrative_type,
            narrative_text=row.narrative_text,
            manual_flag_individual=row.manual_flag_individual,
            manual_flag_case=row.manual_flag_case,
            narrative_id=row.narrative_id,
        )
        for row in session.execute(stmt).scalars()
    ]


__all__ = [
    "NarrativeRecord",
    "LoadOutcome",
    "parse_flag",
    "pivot_incident_rows",
    "read_narrative_csv",
    "load_source_narratives",
    "load_narrative_file",
    "get_source_narratives",
    "check_data_loaded",
    "count_loaded",
]
