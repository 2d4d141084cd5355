"""HTTP transport for remote image sources (requests-based).

Both calls block; callers run them on the worker pool.
"""

from __future__ import annotations

import requests

from async_image.logger import get_logger

_logger = get_logger("transport")


class HttpTransport:
    def __init__(self, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self._timeout = float(timeout)
        self._session = session or requests.Session()

    def head(self, url: str) -> int:
        """Status code of a HEAD request (redirects followed)."""
        resp = self._session.head(url, timeout=self._timeout, allow_redirects=True)
        _logger.debug("HEAD %s -> %s", url, resp.status_code)
        return int(resp.status_code)

    def get(self, url: str) -> bytes:
        resp = self._session.get(url, timeout=self._timeout)
        resp.raise_for_status()
        _logger.debug("GET %s -> %d bytes", url, len(resp.content))
        return resp.content

    def close(self) -> None:
        self._session.close()
