"""Backend clients for the two supported local inference server flavors."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Protocol

import httpx

from core.ai.discovery import check_one
from core.ai.models import BackendKind, HealthResult, ProbeConfig
from core.ai.probe import SleepFn
from core.utils.errors import BackendRequestError

DEFAULT_REQUEST_TIMEOUT_MS = 3000
_FALLBACK_OLLAMA_MODEL = "ollama"


class Backend(Protocol):
    """Protocol for inference backends used by the classifier."""

    kind: BackendKind
    host: str
    port: int

    async def probe_health(self, config: ProbeConfig | None = None) -> HealthResult:
        """Check the backend's health paths."""

    async def complete(self, prompt: str) -> str:
        """Send ``prompt`` and return the model's raw text answer."""


class _HttpBackend:
    kind: BackendKind

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8000,
        *,
        timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout_ms = timeout_ms
        self._client = client
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def probe_health(self, config: ProbeConfig | None = None) -> HealthResult:
        return await check_one(
            self.kind,
            self.host,
            self.port,
            config,
            client=self._client,
            sleep=self._sleep,
        )

    async def _request_json(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        timeout_seconds = self.timeout_ms / 1000
        try:
            async with asyncio.timeout(timeout_seconds):
                if self._client is not None:
                    response = await self._client.request(
                        method, url, json=body, timeout=timeout_seconds
                    )
                else:
                    async with httpx.AsyncClient() as client:
                        response = await client.request(
                            method, url, json=body, timeout=timeout_seconds
                        )
        except (httpx.TimeoutException, TimeoutError) as exc:
            raise BackendRequestError(f"timeout after {self.timeout_ms}ms", url=url) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise BackendRequestError(f"{type(exc).__name__}: {exc}", url=url) from exc

        if not response.is_success:
            raise BackendRequestError(
                f"HTTP {response.status_code}", url=url, status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError as exc:
            raise BackendRequestError(
                "response body is not JSON", url=url, status_code=response.status_code
            ) from exc


class OllamaBackend(_HttpBackend):
    """OpenAI-style completions server (``/v1/models`` + ``/v1/completions``)."""

    kind: BackendKind = "ollama"

    def __init__(self, host: str = "localhost", port: int = 11434, **kwargs: Any) -> None:
        super().__init__(host, port, **kwargs)
        self._model: str | None = None

    async def complete(self, prompt: str) -> str:
        model = await self.resolve_model()
        url = f"{self.base_url}/v1/completions"
        data = await self._request_json("POST", "/v1/completions", {"model": model, "input": prompt})
        text = _completion_text(data)
        if text is None:
            raise BackendRequestError("response has no completion text", url=url)
        return text

    async def resolve_model(self) -> str:
        """Learn a model name from ``/v1/models`` once; fall back to a generic name."""

        if self._model is None:
            try:
                data = await self._request_json("GET", "/v1/models")
            except BackendRequestError:
                data = None
            self._model = _first_model_name(data) or _FALLBACK_OLLAMA_MODEL
        return self._model


class LMStudioBackend(_HttpBackend):
    """Generate-style server (``/api/generate``)."""

    kind: BackendKind = "lmstudio"

    def __init__(self, host: str = "localhost", port: int = 8000, **kwargs: Any) -> None:
        super().__init__(host, port, **kwargs)

    async def complete(self, prompt: str) -> str:
        url = f"{self.base_url}/api/generate"
        data = await self._request_json("POST", "/api/generate", {"prompt": prompt})
        text = _generate_text(data)
        if text is None:
            raise BackendRequestError("response has no generated text", url=url)
        return text


BackendFactory = Callable[..., Backend]

_SUPPORTED_BACKENDS: dict[BackendKind, BackendFactory] = {
    "ollama": OllamaBackend,
    "lmstudio": LMStudioBackend,
}


def create_backend(
    kind: BackendKind,
    host: str,
    port: int,
    *,
    timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
    client: httpx.AsyncClient | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> Backend:
    """Instantiate a supported backend by kind."""

    try:
        factory = _SUPPORTED_BACKENDS[kind]
    except KeyError as exc:
        raise ValueError(f"Unsupported backend kind: {kind}") from exc
    return factory(host, port, timeout_ms=timeout_ms, client=client, sleep=sleep)


def backend_from_health(
    result: HealthResult,
    *,
    timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
    client: httpx.AsyncClient | None = None,
) -> Backend:
    return create_backend(result.kind, result.host, result.port, timeout_ms=timeout_ms, client=client)


def list_supported_backends() -> list[str]:
    return sorted(_SUPPORTED_BACKENDS)


def _completion_text(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        for key in ("output_text", "text"):
            value = choices[0].get(key)
            if isinstance(value, str) and value:
                return value.strip()
    output = data.get("output")
    if output is not None and output != "":
        return str(output).strip()
    return None


def _generate_text(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    content = data.get("content")
    if content is not None and content != "":
        return str(content).strip()
    outputs = data.get("outputs")
    if isinstance(outputs, list) and outputs and outputs[0] is not None:
        return str(outputs[0]).strip()
    response = data.get("response")
    if isinstance(response, str) and response:
        return response.strip()
    return None


def _first_model_name(data: Any) -> str | None:
    if isinstance(data, dict):
        data = data.get("data") or data.get("models")
    if not isinstance(data, list) or not data:
        return None
    first = data[0]
    if isinstance(first, str):
        return first or None
    if isinstance(first, dict):
        for key in ("name", "id", "model"):
            value = first.get(key)
            if isinstance(value, str) and value:
                return value
    return None
