from __future__ import annotations


class UrlNotFoundError(LookupError):
    """No registry entry exists for the requested URL."""

    def __init__(self, url: str) -> None:
        super().__init__(f"No information stored for url: {url}")
        self.url = url


class MalformedResponseError(RuntimeError):
    """A response could not be read or buffered locally; fatal for the current check."""
