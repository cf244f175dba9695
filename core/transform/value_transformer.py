"""Model-assisted value transformation with a rule-based fallback."""

from __future__ import annotations

import logging

from core.ai.backends import Backend
from core.ai.extractor import extract_text
from core.ai.prompts import build_transform_prompt
from core.transform.rules import transform_with_rules
from core.utils.errors import BackendRequestError
from core.utils.logs import log_event

logger = logging.getLogger("fieldsense.transform")


class ValueTransformer:
    """Ask the backend to reformat a value; fall back to rules on any failure."""

    def __init__(self, backend: Backend | None = None) -> None:
        self.backend = backend

    async def transform(
        self,
        value: str,
        field_type: str,
        expected_format: str | None = None,
    ) -> str:
        if self.backend is not None:
            prompt = build_transform_prompt(value, field_type, expected_format)
            try:
                answer = extract_text(await self.backend.complete(prompt))
            except BackendRequestError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "transform_fallback",
                    field_type=field_type,
                    url=exc.url,
                    error=str(exc),
                )
            else:
                if answer:
                    return answer
        return transform_with_rules(value, field_type)
