from __future__ import annotations

import json

import httpx
import pytest

from core.ai.backends import (
    LMStudioBackend,
    OllamaBackend,
    backend_from_health,
    create_backend,
    list_supported_backends,
)
from core.ai.models import HealthResult, ProbeConfig
from core.utils.errors import BackendRequestError


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_ollama_resolves_model_once_and_posts_completion() -> None:
    requests: list[tuple[str, str]] = []
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        if request.url.path == "/v1/models":
            return httpx.Response(200, json={"data": [{"id": "llama3"}]})
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"text": "  [] \n"}]})

    async with _client(handler) as client:
        backend = OllamaBackend("localhost", 11434, client=client)
        first = await backend.complete("classify me")
        second = await backend.complete("again")

    assert first == "[]"
    assert second == "[]"
    assert requests.count(("GET", "/v1/models")) == 1
    assert bodies == [
        {"model": "llama3", "input": "classify me"},
        {"model": "llama3", "input": "again"},
    ]


@pytest.mark.anyio
async def test_ollama_falls_back_to_generic_model_name() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/models":
            return httpx.Response(500)
        return httpx.Response(200, json={"output": "ok"})

    async with _client(handler) as client:
        backend = OllamaBackend(client=client)
        text = await backend.complete("hi")
        model = await backend.resolve_model()

    assert text == "ok"
    assert model == "ollama"


@pytest.mark.anyio
async def test_ollama_prefers_output_text() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/models":
            return httpx.Response(200, json={"models": [{"name": "mistral"}]})
        return httpx.Response(200, json={"choices": [{"output_text": "A", "text": "B"}]})

    async with _client(handler) as client:
        backend = OllamaBackend(client=client)

        assert await backend.complete("hi") == "A"
        assert await backend.resolve_model() == "mistral"


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"content": " generated "}, "generated"),
        ({"outputs": ["first", "second"]}, "first"),
        ({"response": "fallback"}, "fallback"),
    ],
)
@pytest.mark.anyio
async def test_lmstudio_generate_text_shapes(payload: dict, expected: str) -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/generate"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=payload)

    async with _client(handler) as client:
        backend = LMStudioBackend("127.0.0.1", 8000, client=client)
        text = await backend.complete("prompt text")

    assert text == expected
    assert bodies == [{"prompt": "prompt text"}]


@pytest.mark.anyio
async def test_non_2xx_raises_backend_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    async with _client(handler) as client:
        backend = LMStudioBackend(client=client)
        with pytest.raises(BackendRequestError) as excinfo:
            await backend.complete("hi")

    assert excinfo.value.status_code == 503
    assert excinfo.value.url == "http://localhost:8000/api/generate"


@pytest.mark.anyio
async def test_unusable_bodies_raise_backend_request_error() -> None:
    def not_json(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>nope</html>")

    def no_text(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    async with _client(not_json) as client:
        with pytest.raises(BackendRequestError, match="not JSON"):
            await LMStudioBackend(client=client).complete("hi")

    async with _client(no_text) as client:
        with pytest.raises(BackendRequestError, match="no generated text"):
            await LMStudioBackend(client=client).complete("hi")


@pytest.mark.anyio
async def test_transport_error_raises_backend_request_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(BackendRequestError, match="ConnectError"):
            await LMStudioBackend(client=client).complete("hi")


@pytest.mark.anyio
async def test_probe_health_uses_kind_specific_paths() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200 if request.url.path == "/api/health" else 404)

    async with _client(handler) as client:
        result = await LMStudioBackend(client=client).probe_health(ProbeConfig(retries=1))

    assert result.healthy is True
    assert result.endpoint == "http://localhost:8000/api/health"


def test_registry_creates_backends_by_kind() -> None:
    ollama = create_backend("ollama", "localhost", 11434)
    lmstudio = backend_from_health(
        HealthResult(kind="lmstudio", host="10.0.0.2", port=9000, healthy=True),
        timeout_ms=500,
    )

    assert isinstance(ollama, OllamaBackend)
    assert isinstance(lmstudio, LMStudioBackend)
    assert (lmstudio.host, lmstudio.port, lmstudio.timeout_ms) == ("10.0.0.2", 9000, 500)
    assert list_supported_backends() == ["lmstudio", "ollama"]

    with pytest.raises(ValueError, match="Unsupported backend kind"):
        create_backend("vllm", "localhost", 1)  # type: ignore[arg-type]
