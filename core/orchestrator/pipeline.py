"""Orchestration: discover a backend, classify low-confidence fields, merge results."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from core.ai.backends import Backend
from core.ai.cache import SuggestionCache
from core.ai.classifier import BatchClassifier, ClassifyContext
from core.ai.discovery import discover, localhost_candidates, select_active
from core.ai.merger import merge_suggestions, revert_rejected
from core.ai.models import (
    BACKEND_KINDS,
    BackendKind,
    ClassificationResult,
    FormField,
    HealthResult,
    PageContext,
)
from core.ai.probe import SleepFn
from core.config.settings import AISettings


@dataclass
class PipelineOutput:
    """Merged fields plus the raw classification outcome."""

    fields: list[FormField] = field(default_factory=list)
    classification: ClassificationResult = field(default_factory=ClassificationResult)

    def to_payload(self) -> dict[str, Any]:
        return {
            "fields": [item.to_payload() for item in self.fields],
            **self.classification.to_payload(),
        }


def candidate_sets_from_settings(settings: AISettings) -> dict[BackendKind, list[tuple[str, int]]]:
    """Localhost scan lists, preferred engine first."""

    ordered = [settings.engine_type] + [kind for kind in BACKEND_KINDS if kind != settings.engine_type]
    return {kind: localhost_candidates(kind, settings.ports_for(kind)) for kind in ordered}


async def detect_backend(
    settings: AISettings,
    *,
    client: httpx.AsyncClient | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> tuple[list[HealthResult], HealthResult | None]:
    """Run discovery with settings-derived candidates; return all results and the winner."""

    results = await discover(
        candidate_sets_from_settings(settings),
        settings.probe_config(),
        custom_host=settings.custom_host,
        custom_port=settings.custom_port,
        custom_kind=settings.engine_type,
        client=client,
        sleep=sleep,
    )
    return results, select_active(results)


async def run_classification(
    form_html: str,
    fields: Sequence[FormField],
    settings: AISettings,
    *,
    backend: Backend,
    cache: SuggestionCache | None = None,
    page: PageContext | None = None,
    context: ClassifyContext | None = None,
    preferences: Mapping[str, bool] | None = None,
) -> PipelineOutput:
    """Execute classify -> merge -> revert-rejected for one form."""

    classifier = BatchClassifier(
        backend,
        cache=cache if cache is not None else SuggestionCache(settings.cache_ttl_seconds),
    )
    if context is None:
        context = settings.classify_context(page)
    elif page is not None:
        context = context.model_copy(update={"page": page})
    result = await classifier.classify(form_html, fields, context)

    merged = merge_suggestions(fields, result.suggestions, boost_divisor=settings.boost_divisor)
    if preferences:
        merged = revert_rejected(merged, preferences)
    return PipelineOutput(fields=merged, classification=result)
