from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional

from autofetch.config.models import FileLoggingSettings, LoggingSettings

LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# aiosqlite logs every statement at DEBUG.
_QUIET_LOGGERS = ("aiosqlite", "asyncio")


def resolve_level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.strip().upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {name}")
    return level


def _rotating_file_handler(settings: FileLoggingSettings) -> Optional[logging.Handler]:
    """Daily rotating handler for settings.path, or None when file logging is off or unusable."""
    raw_path = settings.path.strip()
    if not raw_path:
        return None

    path = Path(raw_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = TimedRotatingFileHandler(
            filename=str(path),
            when="midnight",
            backupCount=settings.rotation.backup_count,
            encoding="utf-8",
        )
    except OSError:
        logging.getLogger(__name__).error("Log file could not be opened. path=%s", path, exc_info=True)
        return None
    handler.suffix = "%Y-%m-%d"
    return handler


def init_logging(settings: LoggingSettings, *, level_override: Optional[str] = None) -> None:
    """Replace the root logger's handlers with a console handler and, if configured, a log file."""
    level = resolve_level(level_override or settings.level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_handler = _rotating_file_handler(settings.file)
    if file_handler is not None:
        handlers.append(file_handler)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))


__all__ = ["init_logging", "resolve_level"]
