"""Fold AI suggestions into pattern-based field classifications.

Rules:
- a suggestion joins its field by ``index``; one without an index joins by ``name``
- the pre-merge type/confidence are snapshotted once and never overwritten;
  every later merge arbitrates against that snapshot, so re-merging is idempotent
- the AI type wins only when its confidence is strictly greater (ties keep the pattern)
- confidence = min(1.0, chosen + (pattern + ai) / boost_divisor)
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from core.ai.models import FormField, Suggestion

BOOST_DIVISOR = 4.0


def merge_suggestions(
    fields: Sequence[FormField],
    suggestions: Sequence[Suggestion],
    *,
    boost_divisor: float = BOOST_DIVISOR,
) -> list[FormField]:
    """Return merged copies of ``fields`` in input order; inputs are left untouched."""

    if boost_divisor <= 0:
        raise ValueError(f"boost_divisor must be positive: {boost_divisor}")

    by_index, by_name = _index_suggestions(suggestions)
    merged: list[FormField] = []
    for field in fields:
        suggestion = by_index.get(field.index)
        if suggestion is None and field.name:
            suggestion = by_name.get(field.name)
        if suggestion is None:
            merged.append(field)
            continue
        merged.append(_apply(field, suggestion, boost_divisor))
    return merged


def revert_rejected(
    fields: Sequence[FormField],
    preferences: Mapping[str, bool],
) -> list[FormField]:
    """Restore the snapshotted pattern result for fields the user rejected AI on."""

    reverted: list[FormField] = []
    for field in fields:
        rejected = preferences.get(field.name) is False
        if not rejected or field.original_detected_type is None:
            reverted.append(field)
            continue
        reverted.append(
            field.model_copy(
                update={
                    "detected_type": field.original_detected_type,
                    "detection_confidence": field.original_detection_confidence
                    if field.original_detection_confidence is not None
                    else field.detection_confidence,
                }
            )
        )
    return reverted


def boosted_confidence(
    pattern_confidence: float,
    ai_confidence: float,
    *,
    boost_divisor: float = BOOST_DIVISOR,
) -> tuple[bool, float]:
    """Return ``(ai_wins, effective_confidence)`` for one pattern/AI pair."""

    ai_wins = ai_confidence > pattern_confidence
    chosen = ai_confidence if ai_wins else pattern_confidence
    return ai_wins, min(1.0, chosen + (pattern_confidence + ai_confidence) / boost_divisor)


def _apply(field: FormField, suggestion: Suggestion, boost_divisor: float) -> FormField:
    pattern_type, pattern_confidence = _pattern_baseline(field)
    ai_wins, confidence = boosted_confidence(
        pattern_confidence,
        suggestion.confidence,
        boost_divisor=boost_divisor,
    )
    return field.model_copy(
        update={
            "ai_suggested": suggestion.suggested_type,
            "ai_confidence": suggestion.confidence,
            "detection_confidence": confidence,
            "detected_type": suggestion.suggested_type if ai_wins else pattern_type,
            "original_detected_type": pattern_type,
            "original_detection_confidence": pattern_confidence,
        }
    )


def _pattern_baseline(field: FormField) -> tuple[str, float]:
    if field.original_detected_type is None:
        return field.detected_type, field.detection_confidence
    if field.original_detection_confidence is None:
        return field.original_detected_type, field.detection_confidence
    return field.original_detected_type, field.original_detection_confidence


def _index_suggestions(
    suggestions: Sequence[Suggestion],
) -> tuple[dict[int, Suggestion], dict[str, Suggestion]]:
    by_index: dict[int, Suggestion] = {}
    by_name: dict[str, Suggestion] = {}
    for suggestion in suggestions:
        if suggestion.index is not None:
            _keep_stronger(by_index, suggestion.index, suggestion)
        elif suggestion.name:
            _keep_stronger(by_name, suggestion.name, suggestion)
    return by_index, by_name


def _keep_stronger(bucket: dict, key: object, suggestion: Suggestion) -> None:
    current = bucket.get(key)
    if current is None or suggestion.confidence > current.confidence:
        bucket[key] = suggestion
