from __future__ import annotations

import json

import httpx
import pytest

import apps.api.main as api_main
from apps.api.main import app
from core.ai.models import HealthResult

_REQUEST_ID = "X-Fieldsense-Request-Id"


class _StubBackend:
    kind = "ollama"
    host = "localhost"
    port = 11434

    def __init__(self, answer: str) -> None:
        self.answer = answer
        self.prompts: list[str] = []

    async def probe_health(self, config=None):
        raise NotImplementedError

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.answer


def _client() -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


@pytest.fixture(autouse=True)
def _fresh_state(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FIELDSENSE_SETTINGS",
        "FIELDSENSE_CUSTOM_HOST",
        "FIELDSENSE_CUSTOM_PORT",
        "FIELDSENSE_TIMEOUT_MS",
        "FIELDSENSE_VERBOSE",
    ):
        monkeypatch.delenv(name, raising=False)
    if hasattr(app.state, "suggestion_cache"):
        del app.state.suggestion_cache


@pytest.mark.anyio
async def test_healthz_and_request_id_header() -> None:
    async with _client() as client:
        response = await client.get("/healthz")
        missing = await client.get("/__does_not_exist__")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers[_REQUEST_ID]
    assert missing.status_code == 404
    assert missing.headers[_REQUEST_ID]


@pytest.mark.anyio
async def test_meta_lists_supported_backends() -> None:
    async with _client() as client:
        response = await client.get("/v1/meta")

    assert response.status_code == 200
    assert response.json()["supported_backends"] == ["lmstudio", "ollama"]


@pytest.mark.anyio
async def test_discover_applies_request_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = {}
    healthy = HealthResult(kind="lmstudio", host="10.1.1.1", port=9000, healthy=True, endpoint="http://10.1.1.1:9000/health")

    async def fake_detect(settings, **kwargs):
        seen["settings"] = settings
        return [healthy], healthy

    monkeypatch.setattr(api_main, "detect_backend", fake_detect)

    async with _client() as client:
        response = await client.post(
            "/v1/discover",
            json={"customHost": "10.1.1.1", "customPort": 9000, "engineType": "lmstudio", "retries": 1},
        )

    assert response.status_code == 200
    payload = response.json()
    assert payload["active"]["host"] == "10.1.1.1"
    assert payload["results"][0]["healthy"] is True
    settings = seen["settings"]
    assert (settings.custom_host, settings.custom_port, settings.retries) == ("10.1.1.1", 9000, 1)


@pytest.mark.anyio
async def test_discover_rejects_invalid_custom_host(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fail_detect(settings, **kwargs):
        raise AssertionError("discovery should not run")

    monkeypatch.setattr(api_main, "detect_backend", fail_detect)

    async with _client() as client:
        response = await client.post("/v1/discover", json={"customHost": "300.1.1.1"})

    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_ARGUMENT"
    assert response.headers[_REQUEST_ID]


@pytest.mark.anyio
async def test_classify_merges_and_caches_per_app(monkeypatch: pytest.MonkeyPatch) -> None:
    backend = _StubBackend(json.dumps([{"index": 0, "suggestedType": "phone", "confidence": 0.9}]))
    monkeypatch.setattr(api_main, "create_backend", lambda *args, **kwargs: backend)
    body = {
        "formHtml": "<form><input name='contact'></form>",
        "fields": [{"name": "contact", "detectedType": "email", "detectionConfidence": 0.3}],
        "page": {"pageTitle": "Signup"},
        "backend": {"kind": "ollama", "host": "localhost", "port": 11434},
    }

    async with _client() as client:
        first = await client.post("/v1/classify", json=body)
        second = await client.post("/v1/classify", json=body)

    assert first.status_code == 200
    payload = first.json()
    assert payload["fields"][0]["detectedType"] == "phone"
    assert payload["fields"][0]["originalDetectedType"] == "email"
    assert payload["cached"] is False
    assert payload["backend"] == {"kind": "ollama", "host": "localhost", "port": 11434}
    assert second.json()["cached"] is True
    assert len(backend.prompts) == 1
    assert "Page: Signup" in backend.prompts[0]


@pytest.mark.anyio
async def test_classify_keeps_context_page_unless_top_level_page_is_given(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    backend = _StubBackend("[]")
    monkeypatch.setattr(api_main, "create_backend", lambda *args, **kwargs: backend)
    body = {
        "formHtml": "<form></form>",
        "fields": [{"name": "contact", "detectedType": "email", "detectionConfidence": 0.3}],
        "context": {"page": {"pageTitle": "From context"}},
        "backend": {"kind": "ollama", "host": "localhost", "port": 11434},
    }

    async with _client() as client:
        implicit = await client.post("/v1/classify", json=body)
        explicit = await client.post(
            "/v1/classify",
            json={**body, "formHtml": "<form id='x'></form>", "page": {"pageTitle": "Top level"}},
        )

    assert implicit.status_code == 200
    assert explicit.status_code == 200
    assert "Page: From context" in backend.prompts[0]
    assert "Page: Top level" in backend.prompts[1]
    assert "From context" not in backend.prompts[1]


@pytest.mark.anyio
async def test_classify_without_backend_returns_pattern_results(monkeypatch: pytest.MonkeyPatch) -> None:
    async def no_backend(settings, **kwargs):
        return [], None

    monkeypatch.setattr(api_main, "detect_backend", no_backend)

    async with _client() as client:
        response = await client.post(
            "/v1/classify",
            json={"fields": [{"name": "contact", "detectedType": "email", "detectionConfidence": 0.3}]},
        )

    assert response.status_code == 200
    payload = response.json()
    assert payload["backend"] is None
    assert payload["suggestions"] == []
    assert payload["fields"][0]["detectedType"] == "email"


@pytest.mark.anyio
async def test_classify_rejects_invalid_fields() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/classify",
            json={"fields": [{"name": "contact", "detectionConfidence": 3}]},
        )

    assert response.status_code == 422
    assert response.json()["error_code"] == "INVALID_FIELDS"


@pytest.mark.anyio
async def test_merge_endpoint_applies_rules_and_preferences() -> None:
    body = {
        "fields": [
            {"index": 0, "name": "a", "detectedType": "email", "detectionConfidence": 0.6},
            {"index": 1, "name": "b", "detectedType": "email", "detectionConfidence": 0.6},
        ],
        "suggestions": [
            {"index": 0, "suggestedType": "phone", "confidence": 0.6},
            {"index": 1, "suggestedType": "phone", "confidence": 0.61},
        ],
        "preferences": {"a": True},
    }

    async with _client() as client:
        response = await client.post("/v1/merge", json=body)

    assert response.status_code == 200
    fields = response.json()["fields"]
    assert fields[0]["detectedType"] == "email"
    assert fields[0]["detectionConfidence"] == pytest.approx(0.9)
    assert fields[1]["detectedType"] == "phone"
    assert fields[1]["detectionConfidence"] == pytest.approx(0.9125)


@pytest.mark.anyio
async def test_transform_endpoint_uses_rules_without_backend() -> None:
    async with _client() as client:
        response = await client.post("/v1/transform", json={"value": "05/03/2024", "fieldType": "date"})

    assert response.status_code == 200
    assert response.json() == {"value": "2024-03-05", "fieldType": "date"}
