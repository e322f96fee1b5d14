from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import BinaryIO, Tuple

from autofetch.errors import MalformedResponseError
from autofetch.fetch.fetcher import FetchResult
from autofetch.models import CheckOutcome, FetchFailure, MonitoredUrl, RawResponse
from autofetch.utils import copy_and_digest

logger = logging.getLogger(__name__)

BODY_FILE_PREFIX = "autofetch-"


def detect_change(monitored: MonitoredUrl, result: FetchResult, *, temp_dir: Path) -> CheckOutcome:
    """
    Classify one fetch attempt.

    304 is Unchanged. 200 is Unchanged when the body hash and length both match the stored
    values, otherwise Changed with the body materialized to a file under temp_dir that the
    caller must delete. Any other status is an HTTP-Error and a missing response is Failed.
    """
    if isinstance(result, FetchFailure):
        return CheckOutcome(
            url_id=monitored.id,
            url=monitored.url,
            status="Failed",
            error_code=result.code,
            error_message=result.message,
        )

    try:
        return _classify_response(monitored, result, temp_dir=temp_dir)
    finally:
        result.close()


def _classify_response(monitored: MonitoredUrl, response: RawResponse, *, temp_dir: Path) -> CheckOutcome:
    status_line = response.headers.status_line

    if status_line.status_code == 304:
        return CheckOutcome(url_id=monitored.id, url=monitored.url, status="Unchanged", headers=response.headers)

    if status_line.status_code != 200:
        return CheckOutcome(
            url_id=monitored.id,
            url=monitored.url,
            status="HTTP-Error",
            headers=response.headers,
            error_code=str(status_line.status_code),
            error_message=status_line.reason_phrase,
        )

    body_path, content_hash, content_length = _materialize_body(response.body, temp_dir)
    if content_hash == monitored.content_hash and content_length == monitored.content_length:
        body_path.unlink(missing_ok=True)
        logger.debug("Content hash unchanged. url=%s length=%d", monitored.url, content_length)
        return CheckOutcome(url_id=monitored.id, url=monitored.url, status="Unchanged", headers=response.headers)

    return CheckOutcome(
        url_id=monitored.id,
        url=monitored.url,
        status="Changed",
        headers=response.headers,
        body_path=body_path,
        content_hash=content_hash,
        content_length=content_length,
    )


def _materialize_body(body: BinaryIO, temp_dir: Path) -> Tuple[Path, str, int]:
    try:
        temp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=temp_dir, prefix=BODY_FILE_PREFIX, delete=False) as dst:
            body_path = Path(dst.name)
            try:
                content_hash, content_length = copy_and_digest(body, dst)
            except OSError:
                dst.close()
                body_path.unlink(missing_ok=True)
                raise
    except OSError as e:
        raise MalformedResponseError(f"Unable to buffer response body in {temp_dir}") from e
    return body_path, content_hash, content_length
