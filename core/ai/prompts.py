"""Prompt text for field classification and value transformation."""

from __future__ import annotations

import json
from collections.abc import Sequence

from core.ai.fingerprint import HTML_PREFIX_CHARS
from core.ai.models import FormField, PageContext

MAX_HTML_CHARS = HTML_PREFIX_CHARS

FIELD_TYPES: tuple[str, ...] = (
    "firstName",
    "lastName",
    "middleName",
    "fullName",
    "email",
    "phone",
    "date",
    "dateOfBirth",
    "gender",
    "country",
    "city",
    "address",
    "postalCode",
    "company",
    "jobTitle",
    "website",
    "unknown",
)

_FULL_INSTRUCTIONS = (
    "You classify HTML form inputs into semantic types.\n"
    "Allowed types: {types}.\n"
    "For every field listed below return one object "
    '{{"index": <index from the list>, "name": <field name>, '
    '"suggestedType": <type>, "confidence": <number between 0 and 1>, '
    '"reason": <short reason>}}.\n'
    "Use the index exactly as given. Return a JSON array only, without commentary."
)
_CONCISE_INSTRUCTIONS = (
    "Classify each field. Reply with a JSON array of "
    '{{"index","name","suggestedType","confidence"}}. Types: {types}.'
)


def build_classification_prompt(
    form_html: str,
    chunk: Sequence[FormField],
    page: PageContext | None = None,
    *,
    concise: bool = False,
) -> str:
    """Build the prompt for one chunk; fields keep their caller-side index."""

    page = page or PageContext()
    template = _CONCISE_INSTRUCTIONS if concise else _FULL_INSTRUCTIONS
    lines = [template.format(types=", ".join(FIELD_TYPES))]

    context_parts = [
        f"{label}: {value}"
        for label, value in (
            ("Page", page.page_title),
            ("Company", page.company),
            ("URL", page.page_url),
        )
        if value
    ]
    if context_parts:
        lines.append("; ".join(context_parts))

    lines.append(f"HTML:\n{form_html[:MAX_HTML_CHARS]}")
    lines.append(f"Fields: {_serialize_fields(chunk)}")
    return "\n".join(lines)


def build_transform_prompt(value: str, field_type: str, expected_format: str | None = None) -> str:
    target = expected_format or "suitable format"
    return (
        f"Transform the following value to a {field_type} string in format {target}: {value}\n"
        "Respond with only the transformed value, nothing else."
    )


def _serialize_fields(chunk: Sequence[FormField]) -> str:
    items = [
        {
            "index": field.index,
            "name": field.name,
            "label": field.label or "",
            "placeholder": field.placeholder or "",
            "detectedType": field.detected_type,
        }
        for field in chunk
    ]
    return json.dumps(items, ensure_ascii=False, separators=(",", ":"))
