"""Owning-thread work queues.

The owning thread is the Qt GUI thread: the only thread allowed to create or
touch textures (QPixmap) and the thread user callbacks are delivered on.
Worker threads hand work over with `MainThreadDispatcher.execute`; a QTimer on
the owning thread drains it once per tick.

`FrameQueue` is the frame-paced variant used for texture builds: it runs at
most one queued action per tick so that many images finishing together do
not stall a single frame with uploads.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable

from PySide6.QtCore import QObject, QTimer

from async_image.logger import get_logger

from .metrics import metrics

_logger = get_logger("dispatcher")

Action = Callable[[], None]


class _TickingQueue(QObject):
    """Shared lifecycle: a QTimer owned by the thread that called start()."""

    _metric_key = "dispatcher.actions_run"

    def __init__(self, interval_ms: int = 16, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._interval_ms = max(0, int(interval_ms))
        self._lock = threading.Lock()
        self._timer: QTimer | None = None
        self._closed = False
        self._owner = threading.get_ident()

    # ---- lifecycle -------------------------------------------------
    def start(self) -> None:
        """Start ticking. The calling thread becomes the owning thread."""
        if self._closed:
            raise RuntimeError(f"{type(self).__name__} has been shut down")
        if self._timer is not None:
            return
        self._owner = threading.get_ident()
        self._timer = QTimer(self)
        self._timer.setInterval(self._interval_ms)
        self._timer.timeout.connect(self.tick)
        self._timer.start()
        _logger.debug("%s started (interval=%dms)", type(self).__name__, self._interval_ms)

    def shutdown(self) -> None:
        if self._timer is not None:
            self._timer.stop()
            self._timer.deleteLater()
            self._timer = None
        with self._lock:
            self._closed = True
            dropped = self._clear_locked()
        if dropped:
            _logger.debug("%s shut down; dropped %d pending actions", type(self).__name__, dropped)

    @property
    def is_running(self) -> bool:
        return self._timer is not None

    def is_owning_thread(self) -> bool:
        return threading.get_ident() == self._owner

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"{type(self).__name__} has been shut down")

    def _run(self, action: Action) -> None:
        try:
            action()
        except Exception:
            _logger.exception("owning-thread action failed: %r", action)
        finally:
            metrics.inc(self._metric_key)

    # subclass hooks
    def _clear_locked(self) -> int:
        raise NotImplementedError

    def tick(self) -> int:
        raise NotImplementedError


class MainThreadDispatcher(_TickingQueue):
    """Single-consumer queue drained completely on every tick."""

    def __init__(self, interval_ms: int = 16, parent: QObject | None = None) -> None:
        super().__init__(interval_ms, parent)
        self._pending: list[Action] = []
        self._has_work = False

    def execute(self, action: Action) -> None:
        """Queue `action` to run on the owning thread. Safe from any thread."""
        with self._lock:
            self._check_open()
            self._pending.append(action)
            self._has_work = True

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def tick(self) -> int:
        """Run everything queued so far, in submission order.

        The pending list is swapped out under the lock and run outside it, so
        actions that queue further work land in the next tick.
        """
        if not self._has_work:
            return 0
        with self._lock:
            batch, self._pending = self._pending, []
            self._has_work = False
        for action in batch:
            self._run(action)
        return len(batch)

    def _clear_locked(self) -> int:
        dropped = len(self._pending)
        self._pending = []
        self._has_work = False
        return dropped


class FrameQueue(_TickingQueue):
    """Runs at most one queued action per tick."""

    _metric_key = "frame_queue.actions_run"

    def __init__(self, interval_ms: int = 16, parent: QObject | None = None) -> None:
        super().__init__(interval_ms, parent)
        self._queue: deque[Action] = deque()

    def queue(self, action: Action) -> None:
        with self._lock:
            self._check_open()
            self._queue.append(action)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def tick(self) -> int:
        with self._lock:
            if not self._queue:
                return 0
            action = self._queue.popleft()
        self._run(action)
        return 1

    def _clear_locked(self) -> int:
        dropped = len(self._queue)
        self._queue.clear()
        return dropped
