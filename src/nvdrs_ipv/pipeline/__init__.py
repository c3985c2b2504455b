"""
Experiment pipeline: retrying LLM calls, resume locking and the orchestrator
that wires narratives, parser, storage and tracking together.
"""

from .orchestrator import (
    ExperimentOrchestrator,
    RunResult,
    run_experiment,
    resume_experiment,
)
from .resume import ResumeLock
from .retry import CallOutcome, call_with_retry, is_transient

__all__ = [
    "ExperimentOrchestrator",
    "RunResult",
    "run_experiment",
    "resume_experiment",
    "ResumeLock",
    "CallOutcome",
    "call_with_retry",
    "is_transient",
]
