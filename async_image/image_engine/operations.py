"""Deferred transform operations and the per-request operation queue.

Transforms requested before a request's bitmap exists are captured as tagged
values (ResizeBy, ResizeTo, Crop, DrawText) instead of opaque closures, so the
queue can be inspected in tests and replayed through a single dispatch point
(`transforms.apply_operation`).
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from async_image.logger import get_logger

from .metrics import metrics

_logger = get_logger("operations")


class ResizeQuality(Enum):
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class TextAlign(Enum):
    LEFT = 0
    CENTER = 1
    RIGHT = 2


@dataclass(frozen=True)
class TextStyle:
    color: tuple[int, int, int, int] = (255, 255, 255, 255)
    size: float = 16.0
    align: TextAlign = TextAlign.LEFT
    font_family: str | None = None


@dataclass(frozen=True)
class ResizeBy:
    factor: int
    quality: ResizeQuality = ResizeQuality.MEDIUM


@dataclass(frozen=True)
class ResizeTo:
    width: int
    height: int
    quality: ResizeQuality = ResizeQuality.MEDIUM


@dataclass(frozen=True)
class Crop:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class DrawText:
    text: str
    x: float
    y: float
    style: TextStyle


Operation = Union[ResizeBy, ResizeTo, Crop, DrawText]


@dataclass
class Deferred:
    """A queued operation plus the future handed back to the caller."""

    op: Operation
    future: Future = field(default_factory=Future)
    error: Exception | None = None

    def settle(self) -> None:
        if self.future.done():
            return
        if self.error is not None:
            self.future.set_exception(self.error)
        else:
            self.future.set_result(None)


class OperationQueue:
    """FIFO of operations deferred until a bitmap exists.

    `drain` swaps the queue out before running it, so operations deferred while
    a drain is in progress stay queued for the next drain.
    """

    def __init__(self) -> None:
        self._items: list[Deferred] = []
        self._lock = threading.Lock()
        self._draining = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    @property
    def pending(self) -> tuple[Operation, ...]:
        with self._lock:
            return tuple(item.op for item in self._items)

    @property
    def is_draining(self) -> bool:
        return self._draining

    def defer(self, op: Operation) -> Future:
        item = Deferred(op)
        with self._lock:
            self._items.append(item)
            depth = len(self._items)
        metrics.inc("operations.deferred")
        _logger.debug("deferred %s (queue depth=%d)", type(op).__name__, depth)
        return item.future

    def take(self) -> list[Deferred]:
        """Remove and return every queued item without running it."""
        with self._lock:
            items, self._items = self._items, []
        return items

    def drain(self, apply: Callable[[Operation], None], *, stop_on_error: bool = False) -> list[Deferred]:
        """Run every currently queued operation in order.

        Errors are recorded on each item rather than raised. With
        `stop_on_error`, items after the first failure are not run and are
        returned with `error` set to None and their futures cancelled.
        Futures of executed items are left pending; callers settle them once
        the result is visible.
        """
        with self._lock:
            if self._draining:
                _logger.debug("drain skipped: already draining")
                return []
            self._draining = True
            items, self._items = self._items, []

        try:
            for index, item in enumerate(items):
                try:
                    apply(item.op)
                except Exception as exc:
                    item.error = exc
                    metrics.inc("operations.failed")
                    if stop_on_error:
                        for rest in items[index + 1 :]:
                            rest.future.cancel()
                        return items[: index + 1]
                else:
                    metrics.inc("operations.replayed")
            return items
        finally:
            with self._lock:
                self._draining = False
