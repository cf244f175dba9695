"""Chunk fingerprints used as suggestion cache keys."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Sequence

from core.ai.models import BackendKind, FormField

HTML_PREFIX_CHARS = 8192
_HTML_DIGEST_CHARS = 16


def html_digest(form_html: str) -> str:
    """Truncated SHA256 of the HTML prefix that a prompt would embed."""

    prefix = form_html[:HTML_PREFIX_CHARS]
    return hashlib.sha256(prefix.encode("utf-8")).hexdigest()[:_HTML_DIGEST_CHARS]


def chunk_fingerprint(
    kind: BackendKind,
    port: int,
    form_html: str,
    chunk: Sequence[FormField],
) -> str:
    """Compute a canonical SHA256 key for one classification chunk."""

    payload = {
        "kind": kind,
        "port": port,
        "html": html_digest(form_html),
        "fields": [[field.index, field.name] for field in chunk],
    }
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
