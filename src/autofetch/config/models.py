from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AppSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enable_fetching: bool = True


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int = 14


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    rotation: FileRotationSettings = FileRotationSettings()


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    file: FileLoggingSettings = FileLoggingSettings()


class FieldBindings(BaseModel):
    """
    Record field keys for each role the engine reads or writes.

    url_field holds a single link to a file; sources_field holds additional links, one per line.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    url_field: str = Field(min_length=1)
    sources_field: Optional[str] = None
    destination_field: str = Field(min_length=1)
    notification_field: str = Field(min_length=1)


class AutoFetchSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    fields: FieldBindings

    # Space separated, case-insensitive, leading dot optional
    file_extensions: str = "zip pdf doc docx ppt pptx"

    check_frequency_days: int = Field(default=7, ge=0)
    error_log_lifetime_days: int = Field(default=180, ge=0)

    # Field key -> text the field must contain. Empty means every record is scanned.
    record_filter: Dict[str, str] = Field(default_factory=dict)

    scan_interval_seconds: float = 3600.0
    check_concurrency: int = 4

    max_redirects: int = 5
    fetch_timeout_seconds: Optional[float] = None
    user_agent: str = "autofetch/0.1"


class StorageSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    database_path: str = "data/autofetch.sqlite3"
    temp_dir: str = "data/tmp"
    records_path: str = "data/records.json"
    artifacts_dir: str = "data/artifacts"


class AppConfig(BaseModel):
    """Effective runtime configuration after applying all precedence rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    app: AppSettings = AppSettings()
    logging: LoggingSettings = LoggingSettings()
    autofetch: AutoFetchSettings
    storage: StorageSettings = StorageSettings()


def allowed_extensions(text: str) -> list[str]:
    """Split a configured extension list into lower-case extensions without leading dots."""
    exts: list[str] = []
    for raw in text.split():
        ext = raw.strip().lower()
        if ext.startswith("."):
            ext = ext[1:]
        if ext and ext not in exts:
            exts.append(ext)
    return exts


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """Where configuration is read from."""

    yaml_path: str = "data/config/config.yaml"
    env_prefix: str = "AUTOFETCH__"
    dotenv_path: Optional[str] = "data/.env"
