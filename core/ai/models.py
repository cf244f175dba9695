"""Data models for endpoint discovery, AI classification, and merge state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator
from pydantic.alias_generators import to_camel

BackendKind = Literal["ollama", "lmstudio"]
BACKEND_KINDS: tuple[BackendKind, ...] = ("ollama", "lmstudio")


@dataclass(frozen=True)
class ProbeConfig:
    """Per-attempt timeout and retry policy for health probes."""

    timeout_ms: int = 1500
    retries: int = 3
    backoff_multiplier: float = 1.5
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.retries < 1:
            raise ValueError(f"retries must be at least 1: {self.retries}")


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe call (all of its attempts)."""

    ok: bool
    status: int | None = None
    latency_ms: int | None = None
    error: str | None = None
    endpoint: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "status": self.status,
            "latencyMs": self.latency_ms,
            "error": self.error,
            "endpoint": self.endpoint,
        }


@dataclass(frozen=True)
class HealthResult:
    """Health of one backend candidate across its health-check paths."""

    kind: BackendKind
    host: str
    port: int
    healthy: bool
    endpoint: str | None = None
    attempts: tuple[ProbeResult, ...] = ()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "host": self.host,
            "port": self.port,
            "healthy": self.healthy,
            "endpoint": self.endpoint,
            "attempts": [attempt.to_payload() for attempt in self.attempts],
        }


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class PageContext(_CamelModel):
    """Page-level hints embedded into classification prompts."""

    page_title: str = ""
    page_url: str = ""
    company: str = ""


class FormField(_CamelModel):
    """Field descriptor supplied by the pattern analyzer, plus AI merge state."""

    index: StrictInt
    name: str = ""
    label: str | None = None
    placeholder: str | None = None
    detected_type: str = "unknown"
    detection_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    original_detected_type: str | None = None
    original_detection_confidence: float | None = None
    ai_suggested: str | None = None
    ai_confidence: float | None = None

    @property
    def is_ai_augmented(self) -> bool:
        return self.original_detected_type is not None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Suggestion(_CamelModel):
    """One AI classification suggestion for a field."""

    index: StrictInt | None = None
    name: str | None = None
    suggested_type: str
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str | None = None

    @field_validator("suggested_type")
    @classmethod
    def _non_empty_type(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("suggestedType must not be empty")
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _numeric_confidence(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("confidence must be a number")
        return value

    @field_validator("name", "reason", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class ClassificationResult:
    """Aggregate outcome of one classify call."""

    suggestions: list[Suggestion] = field(default_factory=list)
    latency_ms: int = 0
    cached: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "suggestions": [item.to_payload() for item in self.suggestions],
            "latencyMs": self.latency_ms,
            "cached": self.cached,
        }


def parse_fields(items: list[dict[str, Any]]) -> list[FormField]:
    """Validate raw field descriptors, numbering by position when ``index`` is absent."""

    fields: list[FormField] = []
    for position, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"Field descriptor at position {position} must be an object")
        data = dict(item)
        data.setdefault("index", position)
        fields.append(FormField.model_validate(data))
    return fields
