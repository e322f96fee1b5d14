from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence


class RecordStore:
    """The host system's owning records and their field values."""

    async def list_record_ids(self, record_filter: Mapping[str, str]) -> Sequence[int]:
        """Return the ids of records to scan. An empty filter selects every record."""
        raise NotImplementedError

    async def get_field(self, record_id: int, field: str) -> str:
        """
        Return a field value as text, or "" when the record has no value for it.

        Raises KeyError when the record does not exist.
        """
        raise NotImplementedError

    async def set_flag(self, record_id: int, field: str, value: bool) -> None:
        raise NotImplementedError


class ArtifactStore:
    """Durable storage for downloaded files attached to records."""

    async def create(
        self,
        *,
        source_path: Path,
        filename: str,
        record_id: int,
        field: str,
        comment: str,
    ) -> int:
        """
        Copy source_path into a new artifact linked to record_id/field and return its id.

        The source file is left in place; the caller owns it.
        """
        raise NotImplementedError

    async def delete(self, artifact_id: int) -> bool:
        raise NotImplementedError


class TaskRunner:
    """Queue of background work items, deduplicated by name and arguments."""

    def pending_count(self, name: str) -> int:
        """Number of queued or running tasks with this name."""
        raise NotImplementedError

    def queue_unique(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        description: str = "",
    ) -> bool:
        """Queue func(*args) unless an identical task is already pending. Returns True if queued."""
        raise NotImplementedError
