from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Literal, Optional

if TYPE_CHECKING:
    from autofetch.fetch.headers import ResponseHeaders

CheckStatus = Literal["Unchanged", "Changed", "HTTP-Error", "Failed"]


@dataclass(slots=True)
class MonitoredUrl:
    id: int
    url: str
    etag: str = ""
    last_modified: str = ""
    content_hash: str = ""
    content_length: Optional[int] = None
    # None means the URL was never checked.
    last_check: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RecordUrlAssociation:
    url_id: int
    record_id: int


@dataclass(frozen=True, slots=True)
class FetchLogEntry:
    url: str
    artifact_id: int
    fetch_date: str


@dataclass(frozen=True, slots=True)
class ErrorLogEntry:
    url_id: int
    message: str
    error_date: str


@dataclass(slots=True)
class RawResponse:
    headers: ResponseHeaders
    # Rewound binary stream holding the response body. Owned by the receiver.
    body: BinaryIO

    @property
    def status_code(self) -> int:
        return self.headers.status_line.status_code

    def close(self) -> None:
        self.body.close()


@dataclass(frozen=True, slots=True)
class FetchFailure:
    code: str
    message: str


@dataclass(slots=True)
class CheckOutcome:
    """Result of one fetch-and-compare attempt for a single monitored URL."""

    url_id: int
    url: str
    status: CheckStatus
    headers: Optional[ResponseHeaders] = None
    body_path: Optional[Path] = None
    content_hash: Optional[str] = None
    content_length: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def etag(self) -> Optional[str]:
        return self.headers.get("ETag") if self.headers else None

    @property
    def last_modified(self) -> Optional[str]:
        return self.headers.get("Last-Modified") if self.headers else None

    def describe_error(self) -> str:
        if self.status == "HTTP-Error":
            return f"{self.error_code}: {self.error_message}"
        if self.status == "Failed":
            return f"Transport Error: {self.error_code}: {self.error_message}"
        return ""


@dataclass(frozen=True, slots=True)
class ErrorReportRow:
    url_id: int
    record_id: int
    url: str
    message: str
    error_date: str


@dataclass(frozen=True, slots=True)
class RecentCheckRow:
    url_id: int
    record_id: int
    url: str
    last_check: Optional[str]
