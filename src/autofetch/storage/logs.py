from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import aiosqlite

from autofetch.models import ErrorLogEntry, ErrorReportRow, FetchLogEntry
from autofetch.utils import format_timestamp


class FetchLog:
    """Append-only record of every downloaded artifact."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def append(self, *, url: str, artifact_id: int, now: datetime) -> FetchLogEntry:
        entry = FetchLogEntry(url=url, artifact_id=artifact_id, fetch_date=format_timestamp(now))
        await self._conn.execute(
            "INSERT INTO fetch_log (url, artifact_id, fetch_date) VALUES (?, ?, ?)",
            (entry.url, entry.artifact_id, entry.fetch_date),
        )
        await self._conn.commit()
        return entry

    async def delete_for_artifact(self, artifact_id: int) -> int:
        cursor = await self._conn.execute("DELETE FROM fetch_log WHERE artifact_id = ?", (artifact_id,))
        await self._conn.commit()
        return cursor.rowcount

    async def entries(self) -> list[FetchLogEntry]:
        async with self._conn.execute(
            "SELECT url, artifact_id, fetch_date FROM fetch_log ORDER BY fetch_date DESC, entry_id DESC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [FetchLogEntry(url=row["url"], artifact_id=row["artifact_id"], fetch_date=row["fetch_date"]) for row in rows]


class ErrorLog:
    """The most recent failure for each URL; a new error replaces the previous one."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def record(self, *, url_id: int, message: str, now: datetime) -> ErrorLogEntry:
        entry = ErrorLogEntry(url_id=url_id, message=message, error_date=format_timestamp(now))
        await self._conn.execute(
            "INSERT INTO error_log (url_id, message, error_date) VALUES (?, ?, ?) "
            "ON CONFLICT(url_id) DO UPDATE SET message = excluded.message, error_date = excluded.error_date",
            (entry.url_id, entry.message, entry.error_date),
        )
        await self._conn.commit()
        return entry

    async def get(self, url_id: int) -> Optional[ErrorLogEntry]:
        async with self._conn.execute(
            "SELECT url_id, message, error_date FROM error_log WHERE url_id = ?", (url_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return ErrorLogEntry(url_id=row["url_id"], message=row["message"], error_date=row["error_date"])

    async def count(self) -> int:
        async with self._conn.execute("SELECT COUNT(*) AS n FROM error_log") as cursor:
            row = await cursor.fetchone()
        return int(row["n"]) if row is not None else 0

    async def delete_orphans(self) -> int:
        cursor = await self._conn.execute(
            "DELETE FROM error_log WHERE url_id NOT IN (SELECT url_id FROM monitored_urls)"
        )
        return cursor.rowcount

    async def expire(self, *, lifetime_days: int, now: datetime) -> int:
        cutoff = format_timestamp(now - timedelta(days=lifetime_days))
        cursor = await self._conn.execute("DELETE FROM error_log WHERE error_date < ?", (cutoff,))
        return cursor.rowcount

    async def report(self) -> list[ErrorReportRow]:
        """Errors joined with every record that references the failing URL."""
        async with self._conn.execute(
            "SELECT u.url_id, a.record_id, u.url, e.message, e.error_date "
            "FROM monitored_urls u "
            "JOIN error_log e ON u.url_id = e.url_id "
            "JOIN record_url_associations a ON u.url_id = a.url_id "
            "ORDER BY e.error_date DESC, a.record_id"
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            ErrorReportRow(
                url_id=row["url_id"],
                record_id=row["record_id"],
                url=row["url"],
                message=row["message"],
                error_date=row["error_date"],
            )
            for row in rows
        ]
