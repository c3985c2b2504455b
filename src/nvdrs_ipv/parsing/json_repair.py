"""
Best-effort syntactic repair of near-valid JSON emitted by LLMs.

Every step only rearranges or closes what is already in the text; no step ever
adds a key or a value. Each step is safe to apply on its own and applying it a
second time is a no-op.
"""

import re
from typing import List, Optional, Tuple

_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}": "{", "]": "["}

_NUMBER_WORDS = {
    "zero": "0", "one": "1", "two": "2", "three": "3", "four": "4",
    "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}
_SPELLED_DECIMAL = re.compile(
    r"\b0\.\s*(" + "|".join(_NUMBER_WORDS) + r")\b",
    re.IGNORECASE,
)


def _scan_state(text: str) -> Tuple[List[str], bool, bool]:
    """Return (open bracket stack, inside string, pending escape) at end of text."""
    stack: List[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(ch)
        elif ch in _CLOSERS and stack and stack[-1] == _CLOSERS[ch]:
            stack.pop()
    return stack, in_string, escaped


def find_json_span(text: str) -> Optional[str]:
    """
    Locate the first JSON object or array in ``text``.

    Returns the substring from the first ``{``/``[`` to its matching closer, or
    to the end of the text when the structure is never closed (truncation).
    Brackets inside string literals are ignored. Returns None when the text has
    no opening bracket at all.
    """
    start = None
    depth = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            if start is not None:
                in_string = True
            continue
        if ch in _OPENERS:
            if start is None:
                start = i
            depth += 1
        elif ch in _CLOSERS and start is not None:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    if start is None:
        return None
    return text[start:]


def repair_spelled_decimals(text: str) -> str:
    """Rewrite spelled-out decimals such as ``0. nine`` to ``0.9``."""
    return _SPELLED_DECIMAL.sub(lambda m: "0." + _NUMBER_WORDS[m.group(1).lower()], text)


def convert_single_quotes(text: str) -> str:
    """
    Convert single-quoted keys and values to double-quoted ones.

    Only applied when every single-quoted token is unambiguous: it sits in a
    key/value position, contains no double quote, and is properly terminated.
    Otherwise the text is returned unchanged.
    """
    if "'" not in text:
        return text

    out: List[str] = []
    i = 0
    n = len(text)
    in_string = False
    escaped = False
    changed = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue
        if ch != "'":
            out.append(ch)
            i += 1
            continue

        prev = "".join(out).rstrip()[-1:]
        if prev not in ("{", "[", ",", ":"):
            return text
        j = i + 1
        while j < n and (text[j] != "'" or text[j - 1] == "\\"):
            j += 1
        if j >= n:
            return text
        content = text[i + 1:j]
        if '"' in content:
            return text
        rest = text[j + 1:].lstrip()
        if rest and rest[0] not in ":,}]":
            return text
        out.append('"' + content.replace("\\'", "'") + '"')
        changed = True
        i = j + 1

    return "".join(out) if changed else text


def strip_trailing_prose(text: str) -> str:
    """Drop anything after the closer that balances the first opening bracket."""
    span = find_json_span(text)
    if span is None:
        return text
    start = text.find(span)
    stack, _, _ = _scan_state(span)
    if stack:
        # never closed; nothing trails it
        return text
    return text[:start + len(span)]


def remove_trailing_commas(text: str) -> str:
    """Remove commas that directly precede a closing bracket."""
    out: List[str] = []
    in_string = False
    escaped = False
    n = len(text)
    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] in _CLOSERS:
                continue
        out.append(ch)
    return "".join(out)


def balance_brackets(text: str) -> str:
    """Append the closers needed for unterminated strings, objects and arrays."""
    stack, in_string, escaped = _scan_state(text)
    if not stack and not in_string:
        return text
    body = text.rstrip()
    if escaped:
        body = body[:-1]
    suffix = '"' if in_string else ""
    suffix += "".join(_OPENERS[opener] for opener in reversed(stack))
    return body + suffix


def repair(malformed_json_text: str) -> str:
    """
    Apply every repair step to ``malformed_json_text``.

    Returns the repaired text; it may still fail a strict parse downstream.
    """
    if not malformed_json_text:
        return malformed_json_text or ""

    text = malformed_json_text.strip()
    text = repair_spelled_decimals(text)
    text = convert_single_quotes(text)
    text = strip_trailing_prose(text)
    text = balance_brackets(text)
    text = remove_trailing_commas(text)
    return text
