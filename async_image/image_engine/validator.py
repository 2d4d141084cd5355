"""Existence checks for image sources, separate from decoding.

A request is validated at most once: local paths with a synchronous
`os.path.isfile`, remote URLs with a HEAD request on the worker pool (2xx is
valid; other statuses and transport errors are not), buffers are always
valid. The validation callback is delivered on the owning thread.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from concurrent.futures import Future
from typing import Protocol

import requests

from async_image.logger import get_logger

from .dispatcher import MainThreadDispatcher
from .errors import InvalidRequest
from .metrics import metrics
from .pool import WorkerPool
from .request import UNSET, ImageRequest, SourceKind, Validation

_logger = get_logger("validator")


class Transport(Protocol):
    def head(self, url: str) -> int: ...

    def get(self, url: str) -> bytes: ...


def _is_success(status: int) -> bool:
    return 200 <= status < 300


class PathValidator:
    def __init__(self, pool: WorkerPool, dispatcher: MainThreadDispatcher, transport: Transport) -> None:
        self._pool = pool
        self._dispatcher = dispatcher
        self._transport = transport

    def validate(self, request: ImageRequest, on_validated: Callable[[bool], None] | None = UNSET) -> Future:
        """Validate `request` and resolve the returned future with the result.

        Local and buffer sources complete synchronously; remote sources are
        probed on the worker pool.
        """
        source = request.source
        if source is None:
            raise InvalidRequest("no path, url or buffer set on the request")
        request._apply_callback_arg("validated", on_validated)

        if source.kind is SourceKind.REMOTE and request.path_validated is Validation.UNKNOWN:
            return self._pool.submit(self.check, request)

        fut: Future = Future()
        fut.set_result(self.check(request))
        return fut

    def check(self, request: ImageRequest) -> bool:
        """Blocking validation. Already-validated requests are not probed again."""
        current = request.path_validated
        if current is not Validation.UNKNOWN:
            self._deliver(request, current is Validation.VALID)
            return current is Validation.VALID

        source = request.source
        if source is None:
            raise InvalidRequest("no path, url or buffer set on the request")
        metrics.inc("validator.checks")
        if source.kind is SourceKind.LOCAL:
            valid = os.path.isfile(str(source.value))
        elif source.kind is SourceKind.REMOTE:
            valid = self._probe(str(source.value))
        else:
            valid = True

        if not request._set_validated(valid):
            # another validation pass won the race; report what it stored
            valid = request.path_validated is Validation.VALID
        _logger.debug("validated %s -> %s", source.describe(), valid)
        self._deliver(request, valid)
        return valid

    def _probe(self, url: str) -> bool:
        try:
            status = self._transport.head(url)
        except requests.RequestException as e:
            _logger.debug("HEAD %s failed: %s", url, e)
            return False
        return _is_success(status)

    def _deliver(self, request: ImageRequest, valid: bool) -> None:
        callback = request._take_callback("validated")
        if callback is not None:
            self._dispatcher.execute(lambda: callback(valid))
