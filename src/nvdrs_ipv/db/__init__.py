from .models import Base, Experiment, NarrativeResult, SourceNarrative
from .schema import ensure_schema
from .session import create_db_engine, is_memory_url, make_session_factory, session_scope

__all__ = [
    "Base",
    "Experiment",
    "NarrativeResult",
    "SourceNarrative",
    "ensure_schema",
    "create_db_engine",
    "is_memory_url",
    "make_session_factory",
    "session_scope",
]
