"""LLM response parsing and JSON repair."""

from .json_repair import repair, find_json_span
from .response_parser import (
    ErrorKind,
    ParseStage,
    ParsedResult,
    ParserOptions,
    clean_content,
    parse,
)

__all__ = [
    "repair",
    "find_json_span",
    "ErrorKind",
    "ParseStage",
    "ParsedResult",
    "ParserOptions",
    "clean_content",
    "parse",
]
