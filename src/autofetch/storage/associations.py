from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Iterable, Sequence
from urllib.parse import urlsplit

import aiosqlite

from autofetch.config.models import FieldBindings
from autofetch.host.interfaces import RecordStore
from autofetch.storage.logs import ErrorLog
from autofetch.storage.url_registry import UrlRegistry

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*$")


def is_valid_url(url: str) -> bool:
    if not url or any(ch.isspace() for ch in url):
        return False
    try:
        parts = urlsplit(url)
        # .port raises ValueError for a non-numeric or out-of-range port.
        port_ok = parts.port is None or parts.port > 0
    except ValueError:
        return False
    return port_ok and bool(_SCHEME_RE.match(parts.scheme)) and bool(parts.netloc) and bool(parts.hostname)


def url_extension(url: str) -> str:
    """Lower-case file extension of the URL path, without the leading dot."""
    try:
        path = urlsplit(url).path
    except ValueError:
        return ""
    return PurePosixPath(path).suffix.lower().lstrip(".")


def urls_for_record(primary: str, sources: str, extensions: Sequence[str]) -> list[str]:
    """
    URLs a record should be monitored for.

    The primary value counts only when its extension is allowed; every valid line of the
    sources value counts regardless of extension.
    """
    candidates: list[str] = [line.strip() for line in sources.splitlines()]
    primary = primary.strip()
    if primary and url_extension(primary) in extensions:
        candidates.append(primary)

    urls: list[str] = []
    for url in candidates:
        if not is_valid_url(url):
            if url:
                logger.debug("Skipping invalid URL. url=%s", url)
            continue
        if url not in urls:
            urls.append(url)
    return urls


@dataclass(frozen=True, slots=True)
class PruneStats:
    associations: int
    urls: int
    orphaned_errors: int
    expired_errors: int


class AssociationIndex:
    """Many-to-many mapping between owning records and monitored URLs."""

    def __init__(self, conn: aiosqlite.Connection, registry: UrlRegistry) -> None:
        self._conn = conn
        self._registry = registry

    async def rebuild(
        self,
        *,
        record_store: RecordStore,
        record_ids: Iterable[int],
        fields: FieldBindings,
        extensions: Sequence[str],
    ) -> int:
        """Make each record's associations match its current field values. Returns records scanned."""
        scanned = 0
        for record_id in record_ids:
            try:
                primary = await record_store.get_field(record_id, fields.url_field)
                sources = await record_store.get_field(record_id, fields.sources_field) if fields.sources_field else ""
            except KeyError:
                logger.warning("Record disappeared during association rebuild. record_id=%s", record_id)
                continue

            url_ids: list[int] = []
            for url in urls_for_record(primary, sources, extensions):
                monitored = await self._registry.lookup(url, create_if_missing=True)
                await self._conn.execute(
                    "INSERT INTO record_url_associations (url_id, record_id) VALUES (?, ?) "
                    "ON CONFLICT(url_id, record_id) DO NOTHING",
                    (monitored.id, record_id),
                )
                url_ids.append(monitored.id)

            await self._retain_only(record_id, url_ids)
            await self._conn.commit()
            scanned += 1
        return scanned

    async def _retain_only(self, record_id: int, url_ids: Sequence[int]) -> None:
        if not url_ids:
            await self._conn.execute("DELETE FROM record_url_associations WHERE record_id = ?", (record_id,))
            return
        placeholders = ", ".join("?" for _ in url_ids)
        await self._conn.execute(
            f"DELETE FROM record_url_associations WHERE record_id = ? AND url_id NOT IN ({placeholders})",
            (record_id, *url_ids),
        )

    async def prune(
        self,
        *,
        valid_record_ids: Iterable[int],
        errors: ErrorLog,
        error_lifetime_days: int,
        now: datetime,
    ) -> PruneStats:
        """Drop state for records outside valid_record_ids, unreferenced URLs and stale errors."""
        await self._conn.execute("CREATE TEMP TABLE IF NOT EXISTS valid_records (record_id INTEGER PRIMARY KEY)")
        await self._conn.execute("DELETE FROM valid_records")
        await self._conn.executemany(
            "INSERT OR IGNORE INTO valid_records (record_id) VALUES (?)",
            [(int(record_id),) for record_id in valid_record_ids],
        )
        cursor = await self._conn.execute(
            "DELETE FROM record_url_associations WHERE record_id NOT IN (SELECT record_id FROM valid_records)"
        )
        associations = cursor.rowcount
        urls = await self._registry.delete_unreferenced()
        orphaned_errors = await errors.delete_orphans()
        expired_errors = await errors.expire(lifetime_days=error_lifetime_days, now=now)
        await self._conn.commit()

        stats = PruneStats(
            associations=associations,
            urls=urls,
            orphaned_errors=orphaned_errors,
            expired_errors=expired_errors,
        )
        logger.debug("Pruned stale monitoring state. stats=%s", stats)
        return stats

    async def record_ids_for_url(self, url_id: int) -> list[int]:
        async with self._conn.execute(
            "SELECT record_id FROM record_url_associations WHERE url_id = ? ORDER BY record_id", (url_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [row["record_id"] for row in rows]

    async def url_ids_for_record(self, record_id: int) -> list[int]:
        async with self._conn.execute(
            "SELECT url_id FROM record_url_associations WHERE record_id = ? ORDER BY url_id", (record_id,)
        ) as cursor:
            rows = await cursor.fetchall()
        return [row["url_id"] for row in rows]
