"""Deterministic value transformations used when no model answer is available."""

from __future__ import annotations

import re
from datetime import datetime

_PHONE_STRIP_RE = re.compile(r"[^\d+]")
_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%d.%m.%Y",
    "%m-%d-%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)
_NAME_TYPES = {"name", "fullName", "firstName", "lastName", "middleName"}
_DATE_TYPES = {"date", "dateOfBirth"}


def transform_with_rules(value: str, field_type: str) -> str:
    """Normalize ``value`` for ``field_type``; unknown types pass through."""

    if field_type == "phone":
        return transform_phone(value)
    if field_type == "email":
        return value.strip().lower()
    if field_type in _NAME_TYPES:
        return transform_name(value)
    if field_type in _DATE_TYPES:
        return transform_date(value)
    return value


def transform_phone(phone: str) -> str:
    cleaned = _PHONE_STRIP_RE.sub("", phone)
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith("00"):
        return "+" + cleaned[2:]
    if len(cleaned) == 9 and cleaned.startswith("5"):
        return "+966" + cleaned
    return cleaned


def transform_name(name: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.split())


def transform_date(value: str) -> str:
    """ISO ``YYYY-MM-DD`` for recognised layouts; day-first wins for ``a/b/yyyy``."""

    text = value.strip()
    for layout in _DATE_FORMATS:
        try:
            return datetime.strptime(text, layout).date().isoformat()
        except ValueError:
            continue
    return value
