from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence

from autofetch.host.interfaces import RecordStore
from autofetch.utils import atomic_write_json

logger = logging.getLogger(__name__)


def _field_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (list, tuple)):
        return "\n".join(_field_text(item) for item in value)
    return str(value)


class JsonRecordStore(RecordStore):
    """
    Records kept in a JSON file shaped as {"records": {"<id>": {"<field>": value}}}.

    List values are joined with newlines, so a multi-line sources field may be written either
    as one string or as a list of URLs.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self._path.exists():
            return {}
        payload = json.loads(self._path.read_text(encoding="utf-8"))
        records = payload.get("records", {})
        if not isinstance(records, dict):
            raise ValueError(f"Records file must hold a 'records' mapping. path={self._path}")
        return records

    def _save(self, records: Dict[str, Dict[str, Any]]) -> None:
        atomic_write_json(self._path, {"records": records})

    async def list_record_ids(self, record_filter: Mapping[str, str]) -> Sequence[int]:
        records = self._load()
        ids: list[int] = []
        for raw_id, fields in records.items():
            if all(
                text.lower() in _field_text(fields.get(field)).lower()
                for field, text in record_filter.items()
            ):
                ids.append(int(raw_id))
        return sorted(ids)

    async def get_field(self, record_id: int, field: str) -> str:
        records = self._load()
        fields = records.get(str(record_id))
        if fields is None:
            raise KeyError(record_id)
        return _field_text(fields.get(field))

    async def set_flag(self, record_id: int, field: str, value: bool) -> None:
        async with self._lock:
            records = self._load()
            fields = records.get(str(record_id))
            if fields is None:
                raise KeyError(record_id)
            fields[field] = bool(value)
            self._save(records)
        logger.debug("Record flag set. record_id=%s field=%s value=%s", record_id, field, value)
