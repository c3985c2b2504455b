"""
Exception hierarchy for the IPV experiment tracker.

Malformed LLM output is never signalled through these exceptions; the parser
encodes it on the result. These are reserved for configuration problems,
storage failures and illegal experiment state transitions.
"""

from typing import Any, Optional


class IPVTrackerError(Exception):
    """Base class for all tracker errors."""
    pass


class ConfigError(IPVTrackerError):
    """Raised when an experiment configuration is missing or invalid."""
    pass


class StorageError(IPVTrackerError):
    """Exception raised for storage-related errors."""
    pass


class SchemaError(StorageError):
    """Raised when the existing schema cannot be brought up to date additively."""
    pass


class ConstraintViolation(StorageError):
    """A record violates a storage constraint (range, sign, required key)."""

    def __init__(self, field: str, value: Any, message: Optional[str] = None):
        self.field = field
        self.value = value
        super().__init__(message or f"Constraint violated on '{field}': {value!r}")


class ExperimentNotFoundError(IPVTrackerError):
    """Raised when an experiment id does not exist."""
    pass


class ExperimentStateError(IPVTrackerError):
    """Raised on an illegal experiment status transition or a write to a finalized experiment."""
    pass


class ResumeLockError(IPVTrackerError):
    """Raised when another live process holds the resume lock for an experiment."""
    pass
