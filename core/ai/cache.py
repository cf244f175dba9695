"""In-memory TTL cache of per-chunk suggestion sets."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from core.ai.models import Suggestion

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class CachedChunk:
    """Suggestions obtained for one chunk and the latency it cost."""

    suggestions: tuple[Suggestion, ...] = field(default_factory=tuple)
    latency_ms: int = 0


@dataclass(frozen=True)
class _Entry:
    value: CachedChunk
    stored_at: float


class SuggestionCache:
    """Fingerprint-keyed cache; stale entries read as misses and stay until overwritten."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def get(self, key: str) -> CachedChunk | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self._ttl_seconds:
            return None
        return entry.value

    def put(self, key: str, value: CachedChunk) -> None:
        self._entries[key] = _Entry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None
