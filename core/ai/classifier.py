"""Batched, cached AI classification of low-confidence form fields."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.ai.backends import Backend
from core.ai.cache import CachedChunk, SuggestionCache
from core.ai.extractor import extract_suggestions
from core.ai.fingerprint import chunk_fingerprint
from core.ai.models import ClassificationResult, FormField, PageContext, Suggestion
from core.ai.prompts import build_classification_prompt
from core.utils.errors import BackendRequestError
from core.utils.logs import log_event

logger = logging.getLogger("fieldsense.classifier")

DEFAULT_BATCH_SIZE = 10
DEFAULT_LOW_CONFIDENCE_THRESHOLD = 0.7


class ClassifyContext(BaseModel):
    """Per-call knobs for candidate filtering, batching, and prompt style."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    only_low_confidence: bool = True
    low_confidence_threshold: float = Field(default=DEFAULT_LOW_CONFIDENCE_THRESHOLD, ge=0.0, le=1.0)
    batch_size: int = DEFAULT_BATCH_SIZE
    concise: bool = False
    verbose: bool = False
    page: PageContext = Field(default_factory=PageContext)


class BatchClassifier:
    """Classify fields chunk by chunk against one backend, reusing cached chunks."""

    def __init__(self, backend: Backend, *, cache: SuggestionCache | None = None) -> None:
        self.backend = backend
        self.cache = cache if cache is not None else SuggestionCache()

    async def classify(
        self,
        form_html: str,
        fields: Sequence[FormField],
        context: ClassifyContext | None = None,
    ) -> ClassificationResult:
        """Return suggestions for candidate fields, tagged with their original index."""

        context = context or ClassifyContext()
        candidates = select_candidates(fields, context)
        if not candidates:
            return ClassificationResult(suggestions=[], latency_ms=0, cached=False)

        suggestions: list[Suggestion] = []
        latency_ms = 0
        any_cached = False

        for chunk_index, chunk in enumerate(split_chunks(candidates, context.batch_size)):
            key = chunk_fingerprint(self.backend.kind, self.backend.port, form_html, chunk)
            hit = self.cache.get(key)
            if hit is not None:
                any_cached = True
                suggestions.extend(hit.suggestions)
                self._log(context, "chunk_cache_hit", chunk=chunk_index, size=len(chunk))
                continue

            outcome = await self._classify_chunk(form_html, chunk, context, chunk_index)
            if outcome is None:
                continue
            self.cache.put(key, outcome)
            suggestions.extend(outcome.suggestions)
            latency_ms += outcome.latency_ms

        return ClassificationResult(suggestions=suggestions, latency_ms=latency_ms, cached=any_cached)

    async def _classify_chunk(
        self,
        form_html: str,
        chunk: Sequence[FormField],
        context: ClassifyContext,
        chunk_index: int,
    ) -> CachedChunk | None:
        prompt = build_classification_prompt(form_html, chunk, context.page, concise=context.concise)
        start = time.perf_counter()
        try:
            raw_text = await self.backend.complete(prompt)
        except BackendRequestError as exc:
            log_event(
                logger,
                logging.WARNING,
                "chunk_failed",
                chunk=chunk_index,
                size=len(chunk),
                kind=self.backend.kind,
                url=exc.url,
                status_code=exc.status_code,
                error=str(exc),
            )
            return None
        latency_ms = _elapsed_ms(start)

        extracted = extract_suggestions(raw_text)
        resolved = resolve_indices(extracted, chunk)
        if not resolved:
            self._log(
                context,
                "chunk_no_suggestions",
                chunk=chunk_index,
                size=len(chunk),
                raw_chars=len(raw_text),
                level=logging.WARNING,
            )
        self._log(
            context,
            "chunk_classified",
            chunk=chunk_index,
            size=len(chunk),
            suggestions=len(resolved),
            latency_ms=latency_ms,
        )
        return CachedChunk(suggestions=tuple(resolved), latency_ms=latency_ms)

    def _log(
        self,
        context: ClassifyContext,
        event: str,
        *,
        level: int = logging.INFO,
        **fields: object,
    ) -> None:
        log_event(logger, level if context.verbose else logging.DEBUG, event, **fields)


def select_candidates(fields: Sequence[FormField], context: ClassifyContext) -> list[FormField]:
    """Fields worth sending to the backend, in caller order."""

    if not context.only_low_confidence:
        return list(fields)
    return [
        field
        for field in fields
        if field.detection_confidence < context.low_confidence_threshold
    ]


def split_chunks(items: Sequence[FormField], batch_size: int) -> list[list[FormField]]:
    size = max(1, batch_size)
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def resolve_indices(suggestions: Sequence[Suggestion], chunk: Sequence[FormField]) -> list[Suggestion]:
    """Pin each suggestion to a field of ``chunk`` by index, else by unique name."""

    chunk_indices = {field.index for field in chunk}
    by_name: dict[str, list[int]] = {}
    for field in chunk:
        by_name.setdefault(field.name, []).append(field.index)

    resolved: list[Suggestion] = []
    for suggestion in suggestions:
        if suggestion.index is not None and suggestion.index in chunk_indices:
            resolved.append(suggestion)
            continue
        matches = by_name.get(suggestion.name or "", []) if suggestion.name else []
        if len(matches) == 1:
            resolved.append(suggestion.model_copy(update={"index": matches[0]}))
    return resolved


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
