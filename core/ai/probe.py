"""Bounded-timeout HTTP GET probe with exponential backoff between attempts."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

import httpx

from core.ai.models import ProbeConfig, ProbeResult
from core.utils.logs import log_event

logger = logging.getLogger("fieldsense.probe")

SleepFn = Callable[[float], Awaitable[None]]


def backoff_delay_ms(config: ProbeConfig, failed_attempt: int) -> float:
    """Delay after the ``failed_attempt``-th (1-based) failure, seeded at the timeout."""

    return config.timeout_ms * config.backoff_multiplier ** (failed_attempt - 1)


async def probe(
    url: str,
    config: ProbeConfig | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> ProbeResult:
    """GET ``url`` until it answers 2xx or ``config.retries`` attempts are spent.

    Never raises for remote faults or malformed URLs; both come back as
    ``ProbeResult(ok=False)``.
    """

    config = config or ProbeConfig()
    if client is None:
        async with httpx.AsyncClient() as owned_client:
            return await _probe_with_client(url, config, owned_client, sleep)
    return await _probe_with_client(url, config, client, sleep)


async def _probe_with_client(
    url: str,
    config: ProbeConfig,
    client: httpx.AsyncClient,
    sleep: SleepFn,
) -> ProbeResult:
    max_attempts = config.retries
    timeout_seconds = config.timeout_ms / 1000
    last_error: str | None = None
    last_status: int | None = None

    for attempt in range(1, max_attempts + 1):
        start = time.perf_counter()
        try:
            async with asyncio.timeout(timeout_seconds):
                response = await client.get(url, timeout=timeout_seconds)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            error = f"invalid url: {exc}"
            _log_attempt(config, url, attempt, ok=False, error=error)
            return ProbeResult(ok=False, error=error, endpoint=url)
        except (httpx.TimeoutException, TimeoutError):
            last_error = f"timeout after {config.timeout_ms}ms"
        except httpx.HTTPError as exc:
            last_error = f"{type(exc).__name__}: {exc}"
        else:
            latency_ms = _elapsed_ms(start)
            if response.is_success:
                _log_attempt(
                    config,
                    url,
                    attempt,
                    ok=True,
                    status=response.status_code,
                    latency_ms=latency_ms,
                )
                return ProbeResult(
                    ok=True,
                    status=response.status_code,
                    latency_ms=latency_ms,
                    endpoint=url,
                )
            last_status = response.status_code
            last_error = f"HTTP {response.status_code}"

        _log_attempt(config, url, attempt, ok=False, status=last_status, error=last_error)
        if attempt < max_attempts:
            await sleep(backoff_delay_ms(config, attempt) / 1000)

    return ProbeResult(ok=False, status=last_status, error=last_error, endpoint=url)


def _log_attempt(config: ProbeConfig, url: str, attempt: int, **fields: object) -> None:
    if not config.verbose:
        return
    level = logging.INFO if fields.get("ok") else logging.WARNING
    log_event(logger, level, "probe_attempt", url=url, attempt=attempt, **fields)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)
