"""Recover a JSON value from free-form language-model text.

Models wrap structured output in prose or markdown fences often enough that a
plain ``json.loads`` is not good enough. ``extract_json`` runs an ordered list
of small strategies and returns the first value that parses cleanly. Each
strategy takes the raw text and returns the parsed value or ``None``.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable

from pipeline.errors import ParseError

logger = logging.getLogger(__name__)

_MISSING = object()

# Whole text is one fenced block; the closing fence is the last one, so fences
# inside JSON string values stay part of the body.
_OUTER_FENCE_RE = re.compile(r"^```[ \t]*(?:json)?[ \t]*\n?([\s\S]*?)\n?[ \t]*```$", re.IGNORECASE)
# A fenced block inside prose; both fences sit on their own lines.
_EMBEDDED_FENCE_RE = re.compile(
    r"^[ \t]*```[ \t]*(?:json)?[ \t]*\n([\s\S]*?)\n[ \t]*```[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_LEADING_JSON_TOKEN_RE = re.compile(r"^json\s*", re.IGNORECASE)
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return _MISSING


def strip_fences(text: str) -> str:
    """Return the body of the outer ```json / ``` fence, minus a leading bare ``json`` token.

    Only the enclosing fence is removed. Backticks inside the payload are kept.
    """
    stripped = text.strip()
    match = _OUTER_FENCE_RE.match(stripped) or _EMBEDDED_FENCE_RE.search(stripped)
    body = match.group(1) if match else stripped
    return _LEADING_JSON_TOKEN_RE.sub("", body.strip()).strip()


def parse_direct(text: str) -> Any:
    """Parse the trimmed text; unwrap one level of double-encoded JSON objects."""
    value = _loads(text.strip())
    if value is _MISSING:
        return _MISSING
    if isinstance(value, str) and value.strip().startswith("{"):
        return _loads(value)
    return value


def parse_without_fences(text: str) -> Any:
    return _loads(strip_fences(text))


def parse_first_array(text: str) -> Any:
    match = _ARRAY_RE.search(strip_fences(text))
    if not match:
        return _MISSING
    return _loads(match.group(0))


def parse_first_object(text: str) -> Any:
    match = _OBJECT_RE.search(strip_fences(text))
    if not match:
        return _MISSING
    return _loads(match.group(0))


Strategy = Callable[[str], Any]

STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("direct", parse_direct),
    ("strip_fences", parse_without_fences),
    ("first_array", parse_first_array),
    ("first_object", parse_first_object),
)


def extract_json(text: str, strategies: tuple[tuple[str, Strategy], ...] = STRATEGIES) -> Any:
    """Return the first JSON value any strategy recovers from ``text``.

    Raises ParseError with a truncated preview of the input when every
    strategy fails.
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError("Invalid input: text must be a non-empty string", preview=str(text or ""))

    for name, strategy in strategies:
        value = strategy(text)
        if value is not _MISSING:
            if name != "direct":
                logger.info("Recovered JSON via '%s' strategy (%d chars)", name, len(text))
            return value

    logger.warning("All JSON extraction strategies failed; preview: %s", text.strip()[:200])
    raise ParseError("No valid JSON found in response", preview=text.strip())


def find_first_list(value: Any, preferred_keys: tuple[str, ...] = ("ideas", "scenes")) -> list[Any] | None:
    """Locate the list inside a parsed payload.

    JSON-mode endpoints can only return objects, so an array the model was
    asked for often arrives wrapped as ``{"ideas": [...]}``.
    """
    if isinstance(value, list):
        return value
    if not isinstance(value, dict):
        return None
    for key in preferred_keys:
        if isinstance(value.get(key), list):
            return value[key]
    for item in value.values():
        if isinstance(item, list):
            return item
    return None
