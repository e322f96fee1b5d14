from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from autofetch.storage.associations import AssociationIndex
from autofetch.storage.logs import ErrorLog, FetchLog
from autofetch.storage.url_registry import UrlRegistry

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 30.0

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS monitored_urls (
    url_id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    etag TEXT NOT NULL DEFAULT '',
    last_modified TEXT NOT NULL DEFAULT '',
    content_hash TEXT NOT NULL DEFAULT '',
    content_length INTEGER,
    last_check TEXT
);

CREATE INDEX IF NOT EXISTS idx_monitored_urls_last_check
ON monitored_urls(last_check);

CREATE TABLE IF NOT EXISTS record_url_associations (
    url_id INTEGER NOT NULL,
    record_id INTEGER NOT NULL,
    UNIQUE (url_id, record_id)
);

CREATE INDEX IF NOT EXISTS idx_record_url_associations_record
ON record_url_associations(record_id);

CREATE TABLE IF NOT EXISTS fetch_log (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL,
    artifact_id INTEGER NOT NULL,
    fetch_date TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_fetch_log_artifact
ON fetch_log(artifact_id);

CREATE TABLE IF NOT EXISTS error_log (
    url_id INTEGER PRIMARY KEY,
    message TEXT NOT NULL,
    error_date TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_error_log_date
ON error_log(error_date);
"""


@dataclass(slots=True)
class Store:
    """Storage handle scoped to one scan or one check."""

    conn: aiosqlite.Connection
    urls: UrlRegistry
    associations: AssociationIndex
    fetch_log: FetchLog
    errors: ErrorLog


@asynccontextmanager
async def open_store(path: Path) -> AsyncIterator[Store]:
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS) as conn:
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.executescript(SCHEMA_SQL)
        await conn.commit()

        urls = UrlRegistry(conn)
        yield Store(
            conn=conn,
            urls=urls,
            associations=AssociationIndex(conn, urls),
            fetch_log=FetchLog(conn),
            errors=ErrorLog(conn),
        )
