from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import BinaryIO, Dict, Union

import aiohttp

from autofetch.config.models import AutoFetchSettings
from autofetch.errors import MalformedResponseError
from autofetch.fetch.headers import ResponseHeaders, parse_header_block
from autofetch.models import FetchFailure, MonitoredUrl, RawResponse
from autofetch.utils import CHUNK_SIZE

logger = logging.getLogger(__name__)

FetchResult = Union[RawResponse, FetchFailure]


def _decode_header_bytes(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def _header_block(response: aiohttp.ClientResponse) -> str:
    """Render one response's status line and raw headers as a CRLF header block."""
    version = response.version
    protocol = f"HTTP/{version.major}.{version.minor}" if version else "HTTP/1.1"
    lines = [f"{protocol} {response.status} {response.reason or ''}".rstrip()]
    for name, value in response.raw_headers:
        lines.append(f"{_decode_header_bytes(name)}: {_decode_header_bytes(value)}")
    return "\r\n".join(lines) + "\r\n\r\n"


def conditional_headers(monitored: MonitoredUrl) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    if monitored.etag:
        headers["If-None-Match"] = monitored.etag
    if monitored.last_modified:
        headers["If-Modified-Since"] = monitored.last_modified
    return headers


class ConditionalFetcher:
    """
    Issues one conditional GET per call.

    Every call gets its own session and cookie jar so cookies set along a redirect chain are
    replayed within that chain only. Transport failures are returned, never raised, and are
    not retried here.
    """

    def __init__(self, *, config: AutoFetchSettings, temp_dir: Path) -> None:
        self._config = config
        self._temp_dir = temp_dir

    async def fetch(self, monitored: MonitoredUrl) -> FetchResult:
        request_headers = {"User-Agent": self._config.user_agent}
        request_headers.update(conditional_headers(monitored))

        # unsafe=True keeps cookies for IP-address hosts as well
        session_kwargs: dict = {"cookie_jar": aiohttp.CookieJar(unsafe=True)}
        if self._config.fetch_timeout_seconds is not None:
            session_kwargs["timeout"] = aiohttp.ClientTimeout(total=self._config.fetch_timeout_seconds)

        logger.debug("Fetching monitored URL. url=%s conditional=%s", monitored.url, sorted(request_headers))
        try:
            async with aiohttp.ClientSession(**session_kwargs) as session:
                async with session.get(
                    monitored.url,
                    headers=request_headers,
                    allow_redirects=True,
                    max_redirects=self._config.max_redirects,
                ) as response:
                    headers = self._read_headers(response)
                    body = await self._buffer_body(response)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("URL fetch failed. url=%s error=%r", monitored.url, e)
            return FetchFailure(code=type(e).__name__, message=str(e) or type(e).__name__)

        logger.debug("Fetched monitored URL. url=%s status=%s", monitored.url, headers.status_line.status_code)
        return RawResponse(headers=headers, body=body)

    def _read_headers(self, response: aiohttp.ClientResponse) -> ResponseHeaders:
        # Redirect hops come first so the parser keeps only the final response's headers.
        block = "".join(_header_block(hop) for hop in (*response.history, response))
        return parse_header_block(block)

    async def _buffer_body(self, response: aiohttp.ClientResponse) -> BinaryIO:
        try:
            self._temp_dir.mkdir(parents=True, exist_ok=True)
            body = tempfile.TemporaryFile(dir=self._temp_dir)
        except OSError as e:
            raise MalformedResponseError(f"Error creating temp file in {self._temp_dir}") from e

        try:
            async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                try:
                    body.write(chunk)
                except OSError as e:
                    raise MalformedResponseError("Unable to write response body to temp file.") from e
            body.seek(0)
        except BaseException:
            body.close()
            raise
        return body
