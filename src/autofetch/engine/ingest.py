from __future__ import annotations

import logging
from datetime import datetime

from autofetch.config.models import FieldBindings
from autofetch.fetch.headers import derive_filename
from autofetch.host.interfaces import ArtifactStore, RecordStore
from autofetch.models import CheckOutcome, ErrorLogEntry
from autofetch.storage.database import Store

logger = logging.getLogger(__name__)


def retrieval_comment(now: datetime) -> str:
    return f"Retrieved by AutoFetch on {now.strftime('%Y-%m-%d')}"


class Ingestor:
    def __init__(
        self,
        *,
        fields: FieldBindings,
        record_store: RecordStore,
        artifact_store: ArtifactStore,
    ) -> None:
        self._fields = fields
        self._records = record_store
        self._artifacts = artifact_store

    async def ingest_changed(self, store: Store, outcome: CheckOutcome, now: datetime) -> list[int]:
        """
        Attach the new content to every record that references the URL.

        Each record gets its own artifact, its notification flag raised and a fetch log entry.
        The temporary body file is removed afterwards, whether or not ingestion succeeded.
        Failures propagate before the URL's stored hash is updated, so records already served
        in a failed run receive a second artifact when the next check retries.
        """
        if outcome.status != "Changed" or outcome.body_path is None:
            raise ValueError(f"Only changed outcomes with a body can be ingested. status={outcome.status}")

        artifact_ids: list[int] = []
        try:
            filename = derive_filename(outcome.headers, outcome.url)
            record_ids = await store.associations.record_ids_for_url(outcome.url_id)
            if not record_ids:
                logger.warning("Changed URL has no owning records. url=%s", outcome.url)

            for record_id in record_ids:
                artifact_id = await self._artifacts.create(
                    source_path=outcome.body_path,
                    filename=filename,
                    record_id=record_id,
                    field=self._fields.destination_field,
                    comment=retrieval_comment(now),
                )
                await self._records.set_flag(record_id, self._fields.notification_field, True)
                await store.fetch_log.append(url=outcome.url, artifact_id=artifact_id, now=now)
                artifact_ids.append(artifact_id)
        finally:
            outcome.body_path.unlink(missing_ok=True)

        logger.info(
            "Fetched changed file. url=%s filename=%s records=%d length=%s",
            outcome.url,
            filename,
            len(artifact_ids),
            outcome.content_length,
        )
        return artifact_ids

    async def record_error(self, store: Store, outcome: CheckOutcome, now: datetime) -> ErrorLogEntry:
        message = outcome.describe_error()
        logger.warning("URL check failed. url=%s status=%s error=%s", outcome.url, outcome.status, message)
        return await store.errors.record(url_id=outcome.url_id, message=message, now=now)
