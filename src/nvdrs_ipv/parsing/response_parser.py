"""
Response parser for IPV detection calls.

Turns a raw chat-completion response into a :class:`ParsedResult`. ``parse`` is a
pure function and never raises: every failure is encoded on the result through
``parse_error``, ``error_kind`` and ``error_message``.

Recovery runs as a fixed sequence of stages, each of which either yields a
payload or hands over to the next one:

    direct     strict JSON parse of the cleaned content
    substring  strict parse of the first bracket-matched object/array
    repaired   strict parse after :func:`json_repair.repair`
    regex      field-level extraction of ``detected`` / ``confidence``
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .json_repair import find_json_span, repair


class ErrorKind(Enum):
    """Why a response could not produce detection fields."""
    NULL_RESPONSE = "null_response"
    INVALID_RESPONSE = "invalid_response"
    PROVIDER_ERROR = "provider_error"
    TIMEOUT = "timeout"
    NO_CONTENT = "no_content"
    UNPARSEABLE = "unparseable"


class ParseStage(Enum):
    """Recovery stage that produced the payload."""
    DIRECT = "direct"
    SUBSTRING = "substring"
    REPAIRED = "repaired"
    REGEX = "regex"


@dataclass(frozen=True)
class ParserOptions:
    """Parser policy supplied by configuration."""
    max_rationale_length: Optional[int] = None


@dataclass(frozen=True)
class ParsedResult:
    """Structured outcome of parsing one LLM response."""
    narrative_id: Any
    detected: Optional[bool] = None
    confidence: Optional[float] = None
    indicators: Tuple[str, ...] = ()
    rationale: Optional[str] = None
    reasoning_steps: Tuple[str, ...] = ()
    raw_response: Optional[str] = None
    parse_error: bool = False
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    parse_stage: Optional[ParseStage] = None
    warnings: Tuple[str, ...] = ()
    model: Optional[str] = None
    response_id: Optional[str] = None
    created_at: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    tokens_used: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.parse_error


_FENCE = re.compile(r"```[A-Za-z]*")
_SPECIAL_TOKEN = re.compile(r"<\|[^|]+\|>")
_DETECTED_RE = re.compile(r'"detected"\s*:\s*(true|false)', re.IGNORECASE)
_CONFIDENCE_RE = re.compile(r'"confidence"\s*:\s*(-?[0-9.]+)')
_RATIONALE_RE = re.compile(r'"rationale"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)

_KNOWN_FIELDS = ("detected", "confidence", "indicators", "rationale", "reasoning_steps")
_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0"}


def clean_content(content: str) -> str:
    """Strip markdown code fences and special delimiter tokens."""
    text = _SPECIAL_TOKEN.sub("", content)
    text = _FENCE.sub("", text)
    return text.strip()


def _loads(text: Optional[str]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Strict parse returning (payload, error). Only objects count as payloads."""
    if not text:
        return None, "empty text"
    try:
        value = json.loads(text)
    except RecursionError:
        return None, "JSON nested too deeply"
    except ValueError as e:
        return None, str(e)
    if isinstance(value, list):
        value = next((item for item in value if isinstance(item, dict)), None)
    if not isinstance(value, dict):
        return None, "JSON is not an object"
    return value, None


def _stage_direct(cleaned: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    return _loads(cleaned)


def _stage_substring(cleaned: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    span = find_json_span(cleaned)
    if span is None:
        return None, "no JSON object found"
    if span == cleaned:
        return None, "substring identical to content"
    return _loads(span)


def _stage_repaired(cleaned: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    span = find_json_span(cleaned)
    if span is None:
        return None, "no JSON object found"
    return _loads(repair(span))


def _stage_regex(cleaned: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    payload: Dict[str, Any] = {}
    detected = _DETECTED_RE.search(cleaned)
    if detected:
        payload["detected"] = detected.group(1).lower() == "true"
    confidence = _CONFIDENCE_RE.search(cleaned)
    if confidence:
        payload["confidence"] = confidence.group(1)
    if not payload:
        return None, "no recoverable fields"
    rationale = _RATIONALE_RE.search(cleaned)
    if rationale:
        payload["rationale"] = rationale.group(1).replace('\\"', '"')
    return payload, None


_STAGES: List[Tuple[ParseStage, Callable[[str], Tuple[Optional[Dict[str, Any]], Optional[str]]]]] = [
    (ParseStage.DIRECT, _stage_direct),
    (ParseStage.SUBSTRING, _stage_substring),
    (ParseStage.REPAIRED, _stage_repaired),
    (ParseStage.REGEX, _stage_regex),
]


def _coerce_detected(value: Any, warnings: List[str]) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    warnings.append(f"detected_not_boolean:{value}")
    return None


def _coerce_confidence(value: Any, warnings: List[str]) -> Optional[float]:
    """Confidence outside [0, 1] is flagged and dropped, never clamped."""
    if value is None:
        return None
    if isinstance(value, bool):
        warnings.append(f"confidence_not_numeric:{value}")
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        warnings.append(f"confidence_not_numeric:{value}")
        return None
    if math.isnan(number):
        warnings.append(f"confidence_not_numeric:{value}")
        return None
    if not 0.0 <= number <= 1.0:
        warnings.append(f"confidence_out_of_range:{value}")
        return None
    return number


def _coerce_strings(value: Any) -> Tuple[str, ...]:
    """Ordered, de-duplicated tuple of non-empty strings."""
    if value is None:
        return ()
    items = value if isinstance(value, (list, tuple)) else [value]
    seen: Dict[str, None] = {}
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            seen.setdefault(text, None)
    return tuple(seen)


def _coerce_rationale(value: Any, options: ParserOptions) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    limit = options.max_rationale_length
    if limit is not None and len(text) > limit:
        text = text[:limit]
    return text


_USAGE_FIELDS = (
    ("prompt_tokens", "prompt_tokens"),
    ("completion_tokens", "completion_tokens"),
    ("tokens_used", "total_tokens"),
)


def _created_at(created: Any, warnings: List[str]) -> Optional[str]:
    if created is None:
        return None
    if isinstance(created, (int, float)) and not isinstance(created, bool):
        try:
            return datetime.fromtimestamp(created, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            warnings.append(f"created_out_of_range:{created}")
            return str(created)
    return str(created)


def _response_fields(raw: Dict[str, Any], warnings: List[str]) -> Dict[str, Any]:
    """Model, id, creation time and token usage from a completion response."""
    usage = raw.get("usage") or {}
    if not isinstance(usage, dict):
        usage = {}
    values: Dict[str, Any] = {
        "model": raw.get("model"),
        "response_id": raw.get("id"),
        "created_at": _created_at(raw.get("created"), warnings),
    }
    for name, usage_key in _USAGE_FIELDS:
        value = usage.get(usage_key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            warnings.append(f"usage_not_integer:{usage_key}={value}")
            value = None
        values[name] = value
    return values


def _extract_content(raw: Dict[str, Any]) -> Optional[str]:
    choices = raw.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0]
        if isinstance(first, dict):
            message = first.get("message") or {}
            if isinstance(message, dict):
                content = message.get("content")
                if isinstance(content, str):
                    return content
            text = first.get("text")
            if isinstance(text, str):
                return text
        return None
    content = raw.get("content")
    return content if isinstance(content, str) else None


def _error_result(narrative_id: Any, kind: ErrorKind, message: str,
                  metadata: Dict[str, Any], raw_response: Optional[str] = None,
                  **extra: Any) -> ParsedResult:
    return ParsedResult(
        narrative_id=narrative_id,
        raw_response=raw_response,
        parse_error=True,
        error_kind=kind,
        error_message=message,
        metadata=metadata,
        **extra,
    )


def parse(raw_response: Any, narrative_id: Any,
          metadata: Optional[Dict[str, Any]] = None,
          options: Optional[ParserOptions] = None) -> ParsedResult:
    """
    Parse a raw LLM response into a :class:`ParsedResult`.

    Args:
        raw_response: ``None``, an error-shaped mapping (``{"error": ...}``), a
            chat-completion mapping, or the content string itself
        narrative_id: Identifier attached to the result
        metadata: Extra fields merged into ``result.metadata``
        options: Parser policy (rationale length bound)

    Returns:
        ParsedResult; never raises for malformed input
    """
    options = options or ParserOptions()
    meta: Dict[str, Any] = dict(metadata or {})

    if raw_response is None:
        return _error_result(narrative_id, ErrorKind.NULL_RESPONSE, "Response is NULL", meta)

    response_fields: Dict[str, Any] = {}
    warnings: List[str] = []
    if isinstance(raw_response, str):
        content: Optional[str] = raw_response
    elif isinstance(raw_response, dict):
        error = raw_response.get("error")
        if error:
            if isinstance(error, dict):
                message = error.get("message") or "API error occurred"
                kind = ErrorKind.TIMEOUT if error.get("type") == "timeout" else ErrorKind.PROVIDER_ERROR
            else:
                message = str(error)
                kind = ErrorKind.PROVIDER_ERROR
            return _error_result(
                narrative_id, kind, message, meta,
                raw_response=json.dumps(raw_response, default=str),
            )
        response_fields = _response_fields(raw_response, warnings)
        content = _extract_content(raw_response)
    else:
        return _error_result(
            narrative_id, ErrorKind.INVALID_RESPONSE,
            f"Invalid response format: {type(raw_response).__name__}", meta,
        )

    if content is None or not content.strip():
        return _error_result(
            narrative_id, ErrorKind.NO_CONTENT, "No content in response", meta,
            raw_response=content, warnings=tuple(warnings), **response_fields,
        )

    cleaned = clean_content(content)
    payload: Optional[Dict[str, Any]] = None
    stage: Optional[ParseStage] = None
    last_error = "empty content after cleaning"
    if cleaned:
        for candidate_stage, attempt in _STAGES:
            payload, error = attempt(cleaned)
            if payload is not None:
                stage = candidate_stage
                break
            last_error = error or last_error

    if payload is None:
        return _error_result(
            narrative_id, ErrorKind.UNPARSEABLE,
            f"Failed to parse response: {last_error}", meta,
            raw_response=content, warnings=tuple(warnings), **response_fields,
        )

    for key, value in payload.items():
        if key not in _KNOWN_FIELDS:
            meta[f"llm_{key}"] = value

    return ParsedResult(
        narrative_id=narrative_id,
        detected=_coerce_detected(payload.get("detected"), warnings),
        confidence=_coerce_confidence(payload.get("confidence"), warnings),
        indicators=_coerce_strings(payload.get("indicators")),
        rationale=_coerce_rationale(payload.get("rationale"), options),
        reasoning_steps=_coerce_strings(payload.get("reasoning_steps")),
        raw_response=content,
        parse_stage=stage,
        warnings=tuple(warnings),
        metadata=meta,
        **response_fields,
    )
