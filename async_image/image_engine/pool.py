"""Process-scoped worker pool shared by every request."""

from __future__ import annotations

import os
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from async_image.logger import get_logger

_logger = get_logger("pool")


class WorkerPool:
    """Thread pool sized once, on first use.

    Decode, queued-operation replay and post-load transforms all run here.
    """

    def __init__(self, max_workers: int | None = None) -> None:
        self._max_workers = max_workers if max_workers and max_workers > 0 else (os.cpu_count() or 1)
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._closed:
                raise RuntimeError("worker pool has been shut down")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="async-image"
                )
                _logger.debug("worker pool started: workers=%d", self._max_workers)
            return self._executor

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        return self._ensure_executor().submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)
            _logger.debug("worker pool shut down (wait=%s)", wait)
