from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterator, Tuple

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
CHUNK_SIZE = 64 * 1024


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Fixed-width UTC timestamp; textual order matches chronological order."""
    return dt.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


def iter_chunks(stream: BinaryIO, size: int = CHUNK_SIZE) -> Iterator[bytes]:
    while True:
        chunk = stream.read(size)
        if not chunk:
            return
        yield chunk


def copy_and_digest(src: BinaryIO, dst: BinaryIO) -> Tuple[str, int]:
    """Copy src into dst, returning the SHA-512 hex digest and byte length of what was copied."""
    digest = hashlib.sha512()
    length = 0
    for chunk in iter_chunks(src):
        digest.update(chunk)
        length += len(chunk)
        dst.write(chunk)
    return digest.hexdigest(), length


def atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)
