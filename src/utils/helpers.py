"""Shared utility functions used across the pipeline."""
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import orjson


# --- Text Utilities -----------------------------------------------------------

def normalize_for_key(text: str) -> str:
    """Lowercase, trim and collapse whitespace so near-identical text shares a key."""
    return re.sub(r"\s+", " ", text.lower().strip())


def content_hash(*parts: str) -> str:
    """SHA-256 over the concatenated parts - used as a cache key."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(part.encode("utf-8"))
    return digest.hexdigest()


def truncate_text(text: str, max_chars: int = 200) -> str:
    """Truncate text to max_chars, appending an ellipsis when anything was cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- File I/O -----------------------------------------------------------------

def save_json(data: Any, path: str | Path) -> None:
    """Serialise data to JSON using orjson (fast, handles datetime/UUID)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS))


def load_json(path: str | Path) -> Any:
    """Load JSON data from file."""
    with open(Path(path), "rb") as f:
        return orjson.loads(f.read())


def append_jsonl(record: Any, path: str | Path) -> None:
    """Append one record as a JSON line."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "ab") as f:
        f.write(orjson.dumps(record) + b"\n")


def read_jsonl(path: str | Path) -> list[Any]:
    """Read every record of a JSON-lines file (missing file -> empty list)."""
    path = Path(path)
    if not path.exists():
        return []
    with open(path, "rb") as f:
        return [orjson.loads(line) for line in f if line.strip()]

