from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

import aiosqlite

from autofetch.errors import UrlNotFoundError
from autofetch.models import MonitoredUrl, RecentCheckRow
from autofetch.utils import format_timestamp

logger = logging.getLogger(__name__)


def _row_to_url(row: aiosqlite.Row) -> MonitoredUrl:
    return MonitoredUrl(
        id=row["url_id"],
        url=row["url"],
        etag=row["etag"] or "",
        last_modified=row["last_modified"] or "",
        content_hash=row["content_hash"] or "",
        content_length=row["content_length"],
        last_check=row["last_check"],
    )


class UrlRegistry:
    """Every monitored URL with the validators and content identity from its last check."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def lookup(self, url: str, *, create_if_missing: bool = False) -> MonitoredUrl:
        if create_if_missing:
            # The unique constraint on url makes concurrent creation of the same URL collapse
            # into a single row.
            cursor = await self._conn.execute(
                "INSERT INTO monitored_urls (url) VALUES (?) ON CONFLICT(url) DO NOTHING",
                (url,),
            )
            if cursor.rowcount:
                logger.info("Started monitoring URL. url=%s", url)
            await self._conn.commit()

        async with self._conn.execute("SELECT * FROM monitored_urls WHERE url = ?", (url,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise UrlNotFoundError(url)
        return _row_to_url(row)

    async def get(self, url_id: int) -> Optional[MonitoredUrl]:
        async with self._conn.execute("SELECT * FROM monitored_urls WHERE url_id = ?", (url_id,)) as cursor:
            row = await cursor.fetchone()
        return _row_to_url(row) if row is not None else None

    async def update(
        self,
        url_id: int,
        *,
        now: datetime,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        content_hash: Optional[str] = None,
        content_length: Optional[int] = None,
    ) -> None:
        """Write only the values supplied; last_check always moves to now."""
        if (content_hash is None) != (content_length is None):
            raise ValueError("content_hash and content_length must be updated together")

        assignments: list[str] = []
        params: list[object] = []
        if etag is not None:
            assignments.append("etag = ?")
            params.append(etag)
        if last_modified is not None:
            assignments.append("last_modified = ?")
            params.append(last_modified)
        if content_hash is not None:
            assignments.append("content_hash = ?")
            params.append(content_hash)
            assignments.append("content_length = ?")
            params.append(content_length)
        assignments.append("last_check = ?")
        params.append(format_timestamp(now))
        params.append(url_id)

        await self._conn.execute(
            f"UPDATE monitored_urls SET {', '.join(assignments)} WHERE url_id = ?",
            params,
        )
        await self._conn.commit()

    async def stale_urls(self, *, frequency_days: int, now: datetime) -> list[str]:
        """URLs never checked, or last checked more than frequency_days ago."""
        cutoff = format_timestamp(now - timedelta(days=frequency_days))
        async with self._conn.execute(
            "SELECT url FROM monitored_urls WHERE last_check IS NULL OR last_check < ? ORDER BY url_id",
            (cutoff,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row["url"] for row in rows]

    async def count(self) -> int:
        async with self._conn.execute("SELECT COUNT(*) AS n FROM monitored_urls") as cursor:
            row = await cursor.fetchone()
        return int(row["n"]) if row is not None else 0

    async def delete_unreferenced(self) -> int:
        cursor = await self._conn.execute(
            "DELETE FROM monitored_urls WHERE url_id NOT IN (SELECT url_id FROM record_url_associations)"
        )
        return cursor.rowcount

    async def recently_checked(self, limit: int = 10) -> list[RecentCheckRow]:
        """Checked URLs without a pending error, newest check first, one row per owning record."""
        async with self._conn.execute(
            "SELECT u.url_id, a.record_id, u.url, u.last_check "
            "FROM monitored_urls u JOIN record_url_associations a ON u.url_id = a.url_id "
            "WHERE u.url_id NOT IN (SELECT url_id FROM error_log) AND u.last_check IS NOT NULL "
            "ORDER BY u.last_check DESC LIMIT ?",
            (int(limit),),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            RecentCheckRow(
                url_id=row["url_id"],
                record_id=row["record_id"],
                url=row["url"],
                last_check=row["last_check"],
            )
            for row in rows
        ]
