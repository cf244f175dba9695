"""Local inference backend discovery: ranked candidates, first healthy wins."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager

import httpx

from core.ai.models import BACKEND_KINDS, BackendKind, HealthResult, ProbeConfig, ProbeResult
from core.ai.probe import SleepFn, probe
from core.utils.logs import log_event

logger = logging.getLogger("fieldsense.discovery")

Candidate = tuple[str, int]
CandidateSets = Mapping[BackendKind, Sequence[Candidate]]

DEFAULT_HOST = "localhost"
DEFAULT_PORTS: dict[BackendKind, int] = {
    "ollama": 11434,
    "lmstudio": 8000,
}
# Local servers disagree on health conventions; order is probe order.
HEALTH_PATHS: dict[BackendKind, tuple[str, ...]] = {
    "ollama": ("/v1/models", "/v1/engines", "/v1/health", "/"),
    "lmstudio": ("/api/health", "/api/status", "/health", "/status", "/api/v1/health", "/"),
}


def localhost_candidates(kind: BackendKind, ports: Iterable[int] | None = None) -> list[Candidate]:
    """Scan list for ``kind`` on localhost, defaulting to its conventional port."""

    selected = list(ports) if ports else [DEFAULT_PORTS[kind]]
    return [(DEFAULT_HOST, port) for port in selected]


def default_candidate_sets() -> dict[BackendKind, list[Candidate]]:
    return {kind: localhost_candidates(kind) for kind in BACKEND_KINDS}


async def check_one(
    kind: BackendKind,
    host: str,
    port: int,
    config: ProbeConfig | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> HealthResult:
    """Probe the health paths of one ``host:port`` until one answers."""

    config = config or ProbeConfig()
    base_url = f"http://{host}:{port}"
    attempts: list[ProbeResult] = []

    async with _client_scope(client) as http:
        for path in HEALTH_PATHS[kind]:
            result = await probe(f"{base_url}{path}", config, client=http, sleep=sleep)
            attempts.append(result)
            if result.ok:
                return HealthResult(
                    kind=kind,
                    host=host,
                    port=port,
                    healthy=True,
                    endpoint=result.endpoint,
                    attempts=tuple(attempts),
                )

    return HealthResult(kind=kind, host=host, port=port, healthy=False, attempts=tuple(attempts))


async def discover(
    candidate_sets: CandidateSets | None = None,
    config: ProbeConfig | None = None,
    *,
    custom_host: str | None = None,
    custom_port: int | None = None,
    custom_kind: BackendKind = "lmstudio",
    client: httpx.AsyncClient | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> list[HealthResult]:
    """Scan candidates per kind and return every health result, in probe order.

    An explicit custom host is checked first and, when healthy, ends the scan.
    Within one kind the first healthy candidate stops further candidates.
    """

    config = config or ProbeConfig()
    sets = default_candidate_sets() if candidate_sets is None else candidate_sets
    results: list[HealthResult] = []

    async with _client_scope(client) as http:
        if custom_host:
            port = custom_port or DEFAULT_PORTS[custom_kind]
            result = await _checked(custom_kind, custom_host, port, config, http, sleep)
            results.append(result)
            if result.healthy:
                return results

        for kind, candidates in sets.items():
            for host, port in candidates:
                result = await _checked(kind, host, port, config, http, sleep)
                results.append(result)
                if result.healthy:
                    break

    return results


def select_active(results: Iterable[HealthResult]) -> HealthResult | None:
    """First healthy result, or ``None`` when nothing answered."""

    for result in results:
        if result.healthy:
            return result
    return None


async def _checked(
    kind: BackendKind,
    host: str,
    port: int,
    config: ProbeConfig,
    client: httpx.AsyncClient,
    sleep: SleepFn,
) -> HealthResult:
    try:
        result = await check_one(kind, host, port, config, client=client, sleep=sleep)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "candidate_error",
            kind=kind,
            host=host,
            port=port,
            error=f"{type(exc).__name__}: {exc}",
        )
        return HealthResult(
            kind=kind,
            host=host,
            port=port,
            healthy=False,
            attempts=(ProbeResult(ok=False, error=f"{type(exc).__name__}: {exc}"),),
        )

    log_event(
        logger,
        logging.INFO if config.verbose else logging.DEBUG,
        "candidate_checked",
        kind=kind,
        host=host,
        port=port,
        healthy=result.healthy,
        endpoint=result.endpoint,
        attempts=len(result.attempts),
    )
    return result


@asynccontextmanager
async def _client_scope(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient() as owned_client:
        yield owned_client
