"""Pull typed suggestions out of loosely structured model text."""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError

from core.ai.models import Suggestion

# Greedy on purpose: first opening bracket through last matching closer.
_JSON_SPAN_RE = re.compile(r"\{[\s\S]*\}|\[[\s\S]*\]")
_FENCE_RE = re.compile(r"```[A-Za-z0-9_-]*")
_QUOTES = "\"'`"


def extract_suggestions(raw_text: Any) -> list[Suggestion]:
    """Return every well-formed suggestion found in ``raw_text``.

    Unparseable text yields an empty list; malformed elements are dropped
    one by one without affecting their neighbours.
    """

    if not isinstance(raw_text, str) or not raw_text.strip():
        return []

    parsed = _parse_json_span(raw_text)
    if parsed is None:
        parsed = _parse_json_span(_strip_fences(raw_text))
    if parsed is None:
        return []

    return [item for item in map(_to_suggestion, _candidates(parsed)) if item is not None]


def extract_text(raw_text: Any) -> str:
    """Normalize a free-text model answer (fences, surrounding quotes, whitespace)."""

    if not isinstance(raw_text, str):
        return ""
    text = _strip_fences(raw_text).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in _QUOTES:
        text = text[1:-1].strip()
    return text


def _parse_json_span(text: str) -> Any | None:
    match = _JSON_SPAN_RE.search(text)
    if match is None:
        return None
    try:
        return json.loads(match.group(0))
    except (ValueError, RecursionError):
        return None


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).replace("`", "")


def _candidates(parsed: Any) -> list[Any]:
    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        nested = parsed.get("suggestions")
        if isinstance(nested, list):
            return nested
        return [parsed]
    return []


def _to_suggestion(item: Any) -> Suggestion | None:
    if not isinstance(item, dict):
        return None
    try:
        return Suggestion.model_validate(item)
    except ValidationError:
        return None
