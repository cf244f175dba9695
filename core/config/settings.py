"""AI settings loading and validation."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.ai.cache import DEFAULT_TTL_SECONDS
from core.ai.classifier import ClassifyContext
from core.ai.merger import BOOST_DIVISOR
from core.ai.models import BackendKind, PageContext, ProbeConfig

_IPV4_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")
_HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$")
_ENV_PREFIX = "FIELDSENSE_"
_TRUE_VALUES = {"1", "true", "on", "yes"}
_FALSE_VALUES = {"0", "false", "off", "no"}


class AISettings(BaseModel):
    """Settings consumed by discovery, classification, and merge."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    engine_type: BackendKind = "ollama"
    custom_host: str | None = None
    custom_port: int | None = Field(default=None, ge=1, le=65535)
    ollama_ports: list[int] = Field(default_factory=lambda: [11434])
    lmstudio_ports: list[int] = Field(default_factory=lambda: [8000])
    timeout_ms: int = Field(default=1500, gt=0)
    retries: int = Field(default=3, ge=1)
    backoff_multiplier: float = Field(default=1.5, ge=1.0)
    verbose: bool = False
    batch_size: int = Field(default=10, ge=1)
    only_low_confidence: bool = True
    low_confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    concise: bool = False
    cache_ttl_seconds: float = Field(default=DEFAULT_TTL_SECONDS, ge=0.0)
    request_timeout_ms: int = Field(default=3000, gt=0)
    boost_divisor: float = Field(default=BOOST_DIVISOR, gt=0.0)

    @field_validator("custom_host")
    @classmethod
    def _validate_host(cls, value: str | None) -> str | None:
        if value is None:
            return None
        host = value.strip()
        if not host:
            return None
        if not is_valid_host(host):
            raise ValueError(f"Invalid host: {value!r}")
        return host

    @field_validator("ollama_ports", "lmstudio_ports")
    @classmethod
    def _validate_ports(cls, value: list[int]) -> list[int]:
        for port in value:
            if not is_valid_port(port):
                raise ValueError(f"Port must be between 1 and 65535: {port}")
        return value

    def probe_config(self) -> ProbeConfig:
        return ProbeConfig(
            timeout_ms=self.timeout_ms,
            retries=self.retries,
            backoff_multiplier=self.backoff_multiplier,
            verbose=self.verbose,
        )

    def classify_context(self, page: PageContext | None = None) -> ClassifyContext:
        return ClassifyContext(
            only_low_confidence=self.only_low_confidence,
            low_confidence_threshold=self.low_confidence_threshold,
            batch_size=self.batch_size,
            concise=self.concise,
            verbose=self.verbose,
            page=page or PageContext(),
        )

    def ports_for(self, kind: BackendKind) -> list[int]:
        return list(self.ollama_ports if kind == "ollama" else self.lmstudio_ports)


def is_valid_host(host: str) -> bool:
    """Accept ``localhost``, dotted IPv4 with octets 0-255, or a DNS hostname."""

    if host == "localhost":
        return True
    ipv4 = _IPV4_RE.match(host)
    if ipv4 is not None:
        return all(0 <= int(part) <= 255 for part in ipv4.groups())
    if host.replace(".", "").isdigit():
        return False
    return _HOSTNAME_RE.match(host) is not None


def is_valid_port(port: int) -> bool:
    return isinstance(port, int) and not isinstance(port, bool) and 1 <= port <= 65535


def load_settings(path: Path | None = None) -> AISettings:
    """Load and validate AI settings from YAML."""

    settings_path = path or Path(__file__).with_name("settings.yaml")

    try:
        raw = yaml.safe_load(settings_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValueError(f"Settings file not found: {settings_path}") from exc
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in settings file: {settings_path}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Settings file must contain a mapping: {settings_path}")

    # Accept both a bare mapping and one nested under "ai".
    if isinstance(raw.get("ai"), dict):
        raw = raw["ai"]

    try:
        return AISettings.model_validate(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid settings schema: {settings_path}") from exc


def apply_env_overrides(
    settings: AISettings,
    environ: Mapping[str, str] | None = None,
) -> AISettings:
    """Overlay ``FIELDSENSE_*`` variables; unparseable values are ignored."""

    env = os.environ if environ is None else environ
    update: dict[str, object] = {}

    host = env.get(f"{_ENV_PREFIX}CUSTOM_HOST")
    if host is not None and host.strip() and is_valid_host(host.strip()):
        update["custom_host"] = host.strip()

    port = _parse_int(env.get(f"{_ENV_PREFIX}CUSTOM_PORT"))
    if port is not None and is_valid_port(port):
        update["custom_port"] = port

    timeout_ms = _parse_int(env.get(f"{_ENV_PREFIX}TIMEOUT_MS"))
    if timeout_ms is not None and timeout_ms > 0:
        update["timeout_ms"] = timeout_ms

    verbose = _parse_bool(env.get(f"{_ENV_PREFIX}VERBOSE"))
    if verbose is not None:
        update["verbose"] = verbose

    if not update:
        return settings
    return settings.model_copy(update=update)


def _parse_int(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _parse_bool(raw: str | None) -> bool | None:
    if raw is None:
        return None
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return None
