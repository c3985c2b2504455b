"""
Bounded retry for LLM calls.

Transient failures (timeouts, dropped connections, rate limits, 5xx) are
retried with exponential backoff. When retries run out, or the provider rejects
the request outright, the failure is returned as an error-shaped response
(``{"error": {"type": ..., "message": ...}}``) for the parser to record, so a
single bad narrative never stops the batch. Any other exception propagates.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import openai

from ..config import RetryPolicy

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    TimeoutError,
    ConnectionError,
)
RETRYABLE_CALL_ERRORS = (openai.APIError, TimeoutError, ConnectionError)


@dataclass
class CallOutcome:
    """Response (or error-shaped stand-in) plus how it was obtained."""
    response: Dict[str, Any]
    attempts: int
    elapsed_seconds: float

    @property
    def failed(self) -> bool:
        return "error" in self.response


def is_transient(error: BaseException) -> bool:
    if isinstance(error, TRANSIENT_ERRORS):
        return True
    status = getattr(error, "status_code", None)
    return isinstance(error, openai.APIStatusError) and status is not None and status >= 500


def error_type(error: BaseException) -> str:
    if isinstance(error, (openai.APITimeoutError, TimeoutError)):
        return "timeout"
    if isinstance(error, openai.RateLimitError):
        return "rate_limit"
    if isinstance(error, (openai.APIConnectionError, ConnectionError)):
        return "connection_error"
    return "provider_error"


def error_response(error: BaseException, attempts: int) -> Dict[str, Any]:
    """Error-shaped response understood by the response parser."""
    return {
        "error": {
            "type": error_type(error),
            "message": f"{type(error).__name__}: {error} (after {attempts} attempt(s))",
        }
    }


def call_with_retry(call: Callable[[], Dict[str, Any]], policy: RetryPolicy,
                    sleep: Callable[[float], None] = time.sleep,
                    log: Optional[logging.Logger] = None,
                    label: str = "LLM call") -> CallOutcome:
    """
    Run ``call`` under ``policy``.

    Args:
        call: Zero-argument callable returning a raw response dict
        policy: Attempt count and backoff bounds
        sleep: Sleep function (injectable for tests)
        log: Optional logger
        label: Text identifying the call in log messages

    Returns:
        CallOutcome; ``response`` is error-shaped when every attempt failed
    """
    log = log or logger
    started = time.monotonic()
    attempt = 0
    while True:
        attempt += 1
        try:
            response = call()
            return CallOutcome(response, attempt, time.monotonic() - started)
        except RETRYABLE_CALL_ERRORS as e:
            if not is_transient(e):
                log.error(f"{label} rejected by provider: {e}")
                return CallOutcome(error_response(e, attempt), attempt, time.monotonic() - started)
            if attempt >= policy.max_attempts:
                log.error(f"{label} failed after {attempt} attempt(s): {e}")
                return CallOutcome(error_response(e, attempt), attempt, time.monotonic() - started)
            delay = policy.delay_for(attempt - 1)
            log.warning(f"{label} attempt {attempt} failed ({e}); retrying in {delay:.1f}s")
            sleep(delay)
