from .narratives import (
    NarrativeRecord,
    LoadOutcome,
    parse_flag,
    pivot_incident_rows,
    read_narrative_csv,
    load_source_narratives,
    load_narrative_file,
    get_source_narratives,
    check_data_loaded,
)

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
]
