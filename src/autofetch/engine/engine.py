from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from autofetch.config.models import AppConfig, allowed_extensions
from autofetch.engine.ingest import Ingestor
from autofetch.errors import UrlNotFoundError
from autofetch.fetch.detector import detect_change
from autofetch.fetch.fetcher import ConditionalFetcher
from autofetch.host.interfaces import ArtifactStore, RecordStore, TaskRunner
from autofetch.models import CheckOutcome, ErrorReportRow, FetchLogEntry, RecentCheckRow
from autofetch.storage.database import open_store
from autofetch.utils import utc_now

logger = logging.getLogger(__name__)

CHECK_TASK_NAME = "autofetch.check_url"
CHECK_TASK_DESCRIPTION = "Check file URL, downloading a copy of the file if it has changed since the last download."


class AutoFetchEngine:
    """
    Watches URLs referenced by records and attaches new copies of their files when they change.

    Each scan and each check opens its own storage handle; nothing is held between calls.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        record_store: RecordStore,
        artifact_store: ArtifactStore,
        task_runner: TaskRunner,
        fetcher: Optional[ConditionalFetcher] = None,
    ) -> None:
        self._config = config
        self._settings = config.autofetch
        self._records = record_store
        self._task_runner = task_runner
        self._db_path = Path(config.storage.database_path)
        self._temp_dir = Path(config.storage.temp_dir)
        self._extensions = allowed_extensions(self._settings.file_extensions)
        self._fetcher = fetcher or ConditionalFetcher(config=self._settings, temp_dir=self._temp_dir)
        self._ingestor = Ingestor(
            fields=self._settings.fields,
            record_store=record_store,
            artifact_store=artifact_store,
        )
        self._runtime_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def enabled(self) -> bool:
        return self._config.app.enable_fetching

    async def run_scan(self) -> int:
        """Refresh associations, prune stale state and queue a check for every stale URL."""
        if not self.enabled:
            return 0

        # Never overlap with checks queued by an earlier scan.
        outstanding = self._task_runner.pending_count(CHECK_TASK_NAME)
        if outstanding:
            logger.info("Skipping scan, URL checks still outstanding. pending=%d", outstanding)
            return 0

        record_ids = list(await self._records.list_record_ids(self._settings.record_filter))
        now = utc_now()
        async with open_store(self._db_path) as store:
            await store.associations.rebuild(
                record_store=self._records,
                record_ids=record_ids,
                fields=self._settings.fields,
                extensions=self._extensions,
            )
            await store.associations.prune(
                valid_record_ids=record_ids,
                errors=store.errors,
                error_lifetime_days=self._settings.error_log_lifetime_days,
                now=now,
            )
            stale_urls = await store.urls.stale_urls(frequency_days=self._settings.check_frequency_days, now=now)

        queued = 0
        for url in stale_urls:
            if self._task_runner.queue_unique(CHECK_TASK_NAME, self.check_url, url, description=CHECK_TASK_DESCRIPTION):
                queued += 1

        logger.info("Scan completed. records=%d stale_urls=%d queued=%d", len(record_ids), len(stale_urls), queued)
        return queued

    async def check_url(self, url: str) -> Optional[CheckOutcome]:
        """
        Check one monitored URL, ingesting new content or recording an error.

        Returns None when fetching is disabled or the URL is not monitored (anymore).
        """
        if not self.enabled:
            return None

        async with open_store(self._db_path) as store:
            try:
                monitored = await store.urls.lookup(url)
            except UrlNotFoundError:
                logger.info("URL is no longer monitored, skipping check. url=%s", url)
                return None

            result = await self._fetcher.fetch(monitored)
            outcome = detect_change(monitored, result, temp_dir=self._temp_dir)
            now = utc_now()

            if outcome.status == "Changed":
                await self._ingestor.ingest_changed(store, outcome, now)
            elif outcome.status in ("HTTP-Error", "Failed"):
                await self._ingestor.record_error(store, outcome, now)
            else:
                logger.debug("URL unchanged. url=%s", url)

            await store.urls.update(
                monitored.id,
                now=now,
                etag=outcome.etag,
                last_modified=outcome.last_modified,
                content_hash=outcome.content_hash,
                content_length=outcome.content_length,
            )
        return outcome

    async def on_artifact_deleted(self, artifact_id: int) -> int:
        async with open_store(self._db_path) as store:
            removed = await store.fetch_log.delete_for_artifact(artifact_id)
        if removed:
            logger.info("Cleared fetch log for deleted artifact. artifact_id=%s entries=%d", artifact_id, removed)
        return removed

    async def url_count(self) -> int:
        async with open_store(self._db_path) as store:
            return await store.urls.count()

    async def error_list(self) -> list[ErrorReportRow]:
        async with open_store(self._db_path) as store:
            return await store.errors.report()

    async def fetch_list(self) -> list[FetchLogEntry]:
        async with open_store(self._db_path) as store:
            return await store.fetch_log.entries()

    async def recently_checked(self, limit: int = 10) -> list[RecentCheckRow]:
        async with open_store(self._db_path) as store:
            return await store.urls.recently_checked(limit)

    def start_periodic(self) -> None:
        if self._runtime_task and not self._runtime_task.done():
            return
        self._stop_event.clear()
        self._runtime_task = asyncio.create_task(self._runtime_loop())

    async def stop_periodic(self) -> None:
        if not self._runtime_task:
            return
        self._stop_event.set()
        await self._runtime_task
        self._runtime_task = None

    async def _runtime_loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                await self.run_scan()
            except Exception:
                logger.exception("Periodic URL scan failed.")
            elapsed = time.monotonic() - started
            sleep_seconds = max(0.0, self._settings.scan_interval_seconds - elapsed)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_seconds)
            except asyncio.TimeoutError:
                continue
