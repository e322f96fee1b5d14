from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from autofetch.config.models import AppConfig

URL_FIELD = "url"
SOURCES_FIELD = "additional_sources"
DESTINATION_FIELD = "files"
NOTIFICATION_FIELD = "new_file_fetched"


def make_config(root: Path, *, enable_fetching: bool = True, **autofetch: Any) -> AppConfig:
    settings: Dict[str, Any] = {
        "fields": {
            "url_field": URL_FIELD,
            "sources_field": SOURCES_FIELD,
            "destination_field": DESTINATION_FIELD,
            "notification_field": NOTIFICATION_FIELD,
        },
        "file_extensions": "pdf zip",
        "check_frequency_days": 7,
        "error_log_lifetime_days": 180,
        "check_concurrency": 2,
    }
    settings.update(autofetch)
    return AppConfig.model_validate(
        {
            "app": {"enable_fetching": enable_fetching},
            "autofetch": settings,
            "storage": {
                "database_path": str(root / "autofetch.sqlite3"),
                "temp_dir": str(root / "tmp"),
                "records_path": str(root / "records.json"),
                "artifacts_dir": str(root / "artifacts"),
            },
        }
    )


def write_records(path: Path, records: Dict[int, Dict[str, Any]]) -> None:
    payload = {"records": {str(record_id): fields for record_id, fields in records.items()}}
    path.write_text(json.dumps(payload), encoding="utf-8")


def read_records(path: Path) -> Dict[str, Dict[str, Any]]:
    return json.loads(path.read_text(encoding="utf-8"))["records"]
