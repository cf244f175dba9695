"""FastAPI wrapper for backend discovery, classification, merge, and transformation."""

from __future__ import annotations

import importlib.metadata
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.ai.backends import Backend, create_backend, list_supported_backends
from core.ai.cache import SuggestionCache
from core.ai.classifier import ClassifyContext
from core.ai.merger import merge_suggestions, revert_rejected
from core.ai.models import BackendKind, PageContext, Suggestion, parse_fields
from core.config.settings import AISettings, apply_env_overrides, is_valid_host, load_settings
from core.orchestrator.pipeline import detect_backend, run_classification
from core.transform.value_transformer import ValueTransformer
from core.utils.logs import log_event

app = FastAPI(title="fieldsense API", version="0.1.0")
logger = logging.getLogger("fieldsense.api")

_REQUEST_ID_HEADER = "X-Fieldsense-Request-Id"


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class BackendRef(_ApiModel):
    kind: BackendKind
    host: str = "localhost"
    port: int = Field(ge=1, le=65535)


class DiscoverRequest(_ApiModel):
    custom_host: str | None = None
    custom_port: int | None = Field(default=None, ge=1, le=65535)
    engine_type: BackendKind | None = None
    timeout_ms: int | None = Field(default=None, gt=0)
    retries: int | None = Field(default=None, ge=1)
    backoff_multiplier: float | None = Field(default=None, ge=1.0)
    verbose: bool | None = None


class ClassifyRequest(_ApiModel):
    form_html: str = ""
    fields: list[dict[str, Any]]
    page: PageContext = Field(default_factory=PageContext)
    context: ClassifyContext | None = None
    backend: BackendRef | None = None
    preferences: dict[str, bool] = Field(default_factory=dict)


class MergeRequest(_ApiModel):
    fields: list[dict[str, Any]]
    suggestions: list[Suggestion] = Field(default_factory=list)
    preferences: dict[str, bool] = Field(default_factory=dict)


class TransformRequest(_ApiModel):
    value: str
    field_type: str
    expected_format: str | None = None
    backend: BackendRef | None = None


class ApiRequestError(Exception):
    def __init__(
        self,
        *,
        status_code: int,
        error_code: str,
        message: str,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message
        self.detail = detail or {}


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Ensure every response has a request id header."""

    request_id = uuid.uuid4().hex
    request.state.request_id = request_id
    try:
        response = await call_next(request)
    except Exception:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "error",
            request_id=request_id,
            error_code="INTERNAL_ERROR",
            status_code=500,
            failure_stage="middleware",
        )
        response = _error_response(
            status_code=500,
            error_code="INTERNAL_ERROR",
            message="internal server error",
            request_id=request_id,
            detail={"path": request.url.path},
        )
    response.headers.setdefault(_REQUEST_ID_HEADER, request_id)
    return response


@app.exception_handler(ApiRequestError)
async def api_request_error_handler(request: Request, exc: ApiRequestError) -> JSONResponse:
    request_id = _request_id_from_request(request)
    log_event(
        logger,
        logging.WARNING,
        "error",
        request_id=request_id,
        error_code=exc.error_code,
        status_code=exc.status_code,
        path=request.url.path,
    )
    return _error_response(
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        request_id=request_id,
        detail=exc.detail,
    )


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    """Liveness endpoint."""

    return {"status": "ok"}


@app.get("/v1/meta")
async def meta_v1(request: Request) -> JSONResponse:
    """Version and supported backend kinds."""

    request_id = _request_id_from_request(request)
    return JSONResponse(
        content={
            "version": _package_version(),
            "supported_backends": list_supported_backends(),
        },
        headers={_REQUEST_ID_HEADER: request_id},
    )


@app.post("/v1/discover")
async def discover_v1(request: Request, body: DiscoverRequest) -> JSONResponse:
    """Scan for a healthy local inference backend."""

    request_id = _request_id_from_request(request)
    start = time.perf_counter()
    settings = _settings_with_overrides(_settings(), body.model_dump(exclude_none=True))

    results, active = await detect_backend(settings)
    log_event(
        logger,
        logging.INFO,
        "discover",
        request_id=request_id,
        candidates=len(results),
        healthy=active is not None,
        elapsed_ms=_elapsed_ms(start),
    )
    return JSONResponse(
        content={
            "results": [item.to_payload() for item in results],
            "active": active.to_payload() if active is not None else None,
        },
        headers={_REQUEST_ID_HEADER: request_id},
    )


@app.post("/v1/classify")
async def classify_v1(request: Request, body: ClassifyRequest) -> JSONResponse:
    """Classify low-confidence fields and merge the AI suggestions."""

    request_id = _request_id_from_request(request)
    start = time.perf_counter()
    settings = _settings()
    fields = _parse_fields_or_raise(body.fields)

    backend = await _resolve_backend(settings, body.backend)
    if backend is None:
        log_event(logger, logging.WARNING, "no_backend", request_id=request_id)
        payload = {
            "fields": [item.to_payload() for item in fields],
            "suggestions": [],
            "latencyMs": 0,
            "cached": False,
            "backend": None,
        }
        return JSONResponse(content=payload, headers={_REQUEST_ID_HEADER: request_id})

    # An explicit top-level page wins over context.page; the default does not.
    page = body.page if body.context is None or "page" in body.model_fields_set else None
    output = await run_classification(
        body.form_html,
        fields,
        settings,
        backend=backend,
        cache=_suggestion_cache(request, settings),
        page=page,
        context=body.context,
        preferences=body.preferences,
    )
    log_event(
        logger,
        logging.INFO,
        "classify",
        request_id=request_id,
        kind=backend.kind,
        fields=len(fields),
        suggestions=len(output.classification.suggestions),
        cached=output.classification.cached,
        latency_ms=output.classification.latency_ms,
        elapsed_ms=_elapsed_ms(start),
    )
    payload = output.to_payload()
    payload["backend"] = {"kind": backend.kind, "host": backend.host, "port": backend.port}
    return JSONResponse(content=payload, headers={_REQUEST_ID_HEADER: request_id})


@app.post("/v1/merge")
async def merge_v1(request: Request, body: MergeRequest) -> JSONResponse:
    """Merge caller-supplied suggestions into fields without calling a backend."""

    request_id = _request_id_from_request(request)
    settings = _settings()
    fields = _parse_fields_or_raise(body.fields)
    merged = merge_suggestions(fields, body.suggestions, boost_divisor=settings.boost_divisor)
    if body.preferences:
        merged = revert_rejected(merged, body.preferences)
    return JSONResponse(
        content={"fields": [item.to_payload() for item in merged]},
        headers={_REQUEST_ID_HEADER: request_id},
    )


@app.post("/v1/transform")
async def transform_v1(request: Request, body: TransformRequest) -> JSONResponse:
    """Reformat a value for a field type, model first and rules as fallback."""

    request_id = _request_id_from_request(request)
    settings = _settings()
    backend = await _resolve_backend(settings, body.backend) if body.backend is not None else None
    transformer = ValueTransformer(backend)
    value = await transformer.transform(body.value, body.field_type, body.expected_format)
    return JSONResponse(
        content={"value": value, "fieldType": body.field_type},
        headers={_REQUEST_ID_HEADER: request_id},
    )


async def _resolve_backend(settings: AISettings, ref: BackendRef | None) -> Backend | None:
    if ref is not None:
        if not is_valid_host(ref.host):
            raise ApiRequestError(
                status_code=400,
                error_code="INVALID_BACKEND_HOST",
                message="backend host is not a valid hostname or IPv4 address",
                detail={"host": ref.host},
            )
        return create_backend(ref.kind, ref.host, ref.port, timeout_ms=settings.request_timeout_ms)

    _, active = await detect_backend(settings)
    if active is None:
        return None
    return create_backend(active.kind, active.host, active.port, timeout_ms=settings.request_timeout_ms)


def _parse_fields_or_raise(items: list[dict[str, Any]]):
    try:
        return parse_fields(items)
    except ValueError as exc:
        raise ApiRequestError(
            status_code=422,
            error_code="INVALID_FIELDS",
            message="field descriptors failed validation",
            detail={"reason": str(exc)},
        ) from exc


def _suggestion_cache(request: Request, settings: AISettings) -> SuggestionCache:
    cache = getattr(request.app.state, "suggestion_cache", None)
    if cache is None:
        cache = SuggestionCache(settings.cache_ttl_seconds)
        request.app.state.suggestion_cache = cache
    return cache


def _settings() -> AISettings:
    raw_path = os.getenv("FIELDSENSE_SETTINGS")
    path = Path(raw_path).expanduser() if raw_path else None
    try:
        settings = load_settings(path)
    except ValueError as exc:
        raise ApiRequestError(
            status_code=500,
            error_code="INVALID_SETTINGS",
            message=str(exc),
        ) from exc
    return apply_env_overrides(settings)


def _settings_with_overrides(settings: AISettings, overrides: dict[str, Any]) -> AISettings:
    if not overrides:
        return settings
    try:
        return AISettings.model_validate({**settings.model_dump(), **overrides})
    except ValueError as exc:
        raise ApiRequestError(
            status_code=400,
            error_code="INVALID_ARGUMENT",
            message="discovery overrides failed validation",
            detail={"reason": str(exc)},
        ) from exc


def _request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if isinstance(request_id, str) and request_id:
        return request_id
    return uuid.uuid4().hex


def _package_version() -> str:
    try:
        return importlib.metadata.version("fieldsense")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _error_response(
    *,
    status_code: int,
    error_code: str,
    message: str,
    request_id: str,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    payload_detail = dict(detail or {})
    payload_detail["request_id"] = request_id

    return JSONResponse(
        status_code=status_code,
        headers={_REQUEST_ID_HEADER: request_id},
        content={
            "error_code": error_code,
            "message": message,
            "detail": payload_detail,
        },
    )
