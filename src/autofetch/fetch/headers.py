"""
Response header parsing and filename recovery.

Header names keep the case the server sent; lookups ignore case and the last occurrence of a
name wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from typing import Dict, Iterable, Iterator, Optional, Tuple
from urllib.parse import unquote, urlsplit

from autofetch.errors import MalformedResponseError

DEFAULT_FILENAME = "download"

# RFC 5987 ext-value: charset'language'percent-encoded-text
_EXT_VALUE_RE = re.compile(r"^([A-Za-z0-9!#$%&+^_`{}~-]+)'([A-Za-z0-9-]*)'(.*)$")


@dataclass(frozen=True, slots=True)
class StatusLine:
    protocol: str
    status_code: int
    reason_phrase: str


class ResponseHeaders:
    def __init__(self, status_line: StatusLine) -> None:
        self.status_line = status_line
        self._values: Dict[str, str] = {}
        self._by_lower: Dict[str, str] = {}

    @classmethod
    def from_pairs(cls, status_line: StatusLine, pairs: Iterable[Tuple[str, str]]) -> ResponseHeaders:
        headers = cls(status_line)
        for name, value in pairs:
            headers.add(name, value)
        return headers

    def add(self, name: str, value: str) -> None:
        name = name.strip()
        value = value.strip()
        self._values[name] = value
        self._by_lower[name.lower()] = value

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self._by_lower.get(name.lower(), default)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._by_lower

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def items(self) -> Iterable[Tuple[str, str]]:
        return self._values.items()

    def __repr__(self) -> str:
        return f"ResponseHeaders(status_line={self.status_line!r}, headers={self._values!r})"


def parse_status_line(line: str) -> StatusLine:
    parts = line.strip().split(" ", 2)
    if len(parts) < 2 or not parts[0].upper().startswith("HTTP/"):
        raise MalformedResponseError(f"Invalid HTTP status line: {line!r}")
    try:
        status_code = int(parts[1])
    except ValueError as e:
        raise MalformedResponseError(f"Invalid HTTP status code in status line: {line!r}") from e
    reason = parts[2].strip() if len(parts) > 2 else ""
    return StatusLine(protocol=parts[0], status_code=status_code, reason_phrase=reason)


def parse_header_block(text: str) -> ResponseHeaders:
    """
    Parse a raw response header block.

    When the block holds several responses (a redirect chain), each status line starts a new
    response and only the final one is returned.
    """
    status_line: Optional[StatusLine] = None
    pairs: list[Tuple[str, str]] = []
    for line in text.replace("\r\n", "\n").split("\n"):
        if not line.strip():
            continue
        if line.upper().startswith("HTTP/"):
            status_line = parse_status_line(line)
            pairs = []
            continue
        if ":" not in line:
            raise MalformedResponseError(f"Invalid header line: {line!r}")
        name, value = line.split(":", 1)
        pairs.append((name, value))

    if status_line is None:
        raise MalformedResponseError("Header block has no status line.")
    return ResponseHeaders.from_pairs(status_line, pairs)


def _basename(name: str) -> str:
    base = name.replace("\\", "/").rsplit("/", 1)[-1].strip()
    if base in (".", ".."):
        return ""
    return base


def _unquote_param(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace('\\"', '"')
    return value


def _decode_extended(value: str) -> Optional[str]:
    match = _EXT_VALUE_RE.match(value)
    if match:
        try:
            return unquote(match.group(3), encoding=match.group(1), errors="strict")
        except (LookupError, UnicodeDecodeError):
            return None
    if "=?" in value:
        try:
            return str(make_header(decode_header(value)))
        except (HeaderParseError, LookupError, UnicodeDecodeError):
            return None
    return value


def filename_from_content_disposition(value: str) -> Optional[str]:
    """
    Recover a filename from a Content-Disposition header value.

    A usable filename*= always wins; among plain filename= parameters the last one wins.
    """
    filename: Optional[str] = None
    for segment in value.split(";"):
        key, sep, raw = segment.strip().partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        if key == "filename":
            candidate = _basename(_unquote_param(raw))
            if candidate:
                filename = candidate
        elif key == "filename*":
            decoded = _decode_extended(_unquote_param(raw))
            candidate = _basename(decoded) if decoded else ""
            if candidate:
                return candidate
    return filename


def filename_from_url(url: str) -> str:
    path = urlsplit(url).path
    return _basename(unquote(path)) or DEFAULT_FILENAME


def derive_filename(headers: Optional[ResponseHeaders], url: str) -> str:
    if headers is not None:
        disposition = headers.get("Content-Disposition")
        if disposition:
            filename = filename_from_content_disposition(disposition)
            if filename:
                return filename
    return filename_from_url(url)
