"""CLI I/O helpers for JSON inputs and atomic output writing."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any


def read_json_file(path: Path) -> Any:
    """Read a UTF-8 JSON file, raising ValueError on malformed content."""

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON: {exc.msg} (line {exc.lineno})") from exc


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Write JSON through a sibling temporary file + replace."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        delete=False,
        prefix=f"{path.name}.",
        suffix=".tmp",
    ) as tmp:
        tmp_path = Path(tmp.name)
        json.dump(payload, tmp, ensure_ascii=False, sort_keys=True, indent=2)

    tmp_path.replace(path)
