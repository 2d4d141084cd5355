"""Image Engine - single entry point wiring the pipeline services.

The engine owns the process-scoped services (worker pool, owning-thread
dispatcher, frame-paced texture queue, validator, loader) and their
lifecycle. Construct and start it on the owning (GUI) thread.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

from PySide6.QtCore import QObject

from async_image.logger import get_logger
from async_image.settings_manager import SettingsManager

from .codec import VipsCodec
from .dispatcher import FrameQueue, MainThreadDispatcher
from .loader import ImageLoader, PipelineCodec, QueuedOperationPolicy, TextureSink
from .pool import WorkerPool
from .request import UNSET, ImageRequest
from .texture import QtTextureSink
from .transport import HttpTransport
from .validator import PathValidator, Transport

_logger = get_logger("engine")


class ImageEngine(QObject):
    """Pipeline services with an explicit `start()` / `shutdown()` lifecycle.

    Usage:
        engine = ImageEngine(SettingsManager(path))
        engine.start()
        req = engine.new_request(path="photo.jpg")
        req.resize(2)
        engine.load(req, on_load=lambda: show(req.texture))
        ...
        engine.shutdown()
    """

    def __init__(
        self,
        settings: SettingsManager | None = None,
        *,
        codec: PipelineCodec | None = None,
        transport: Transport | None = None,
        texture_sink: TextureSink | None = None,
        pool: WorkerPool | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._settings = settings or SettingsManager()
        self._owns_transport = transport is None

        self.pool = pool or WorkerPool(self._settings.worker_count)
        self.dispatcher = MainThreadDispatcher(self._settings.tick_interval_ms, self)
        self.frame_queue = FrameQueue(self._settings.frame_interval_ms, self)
        self.transport = transport or HttpTransport(self._settings.http_timeout)
        self.validator = PathValidator(self.pool, self.dispatcher, self.transport)
        self.loader = ImageLoader(
            self.pool,
            self.dispatcher,
            self.frame_queue,
            codec or VipsCodec(),
            texture_sink or QtTextureSink(),
            self.validator,
            self.transport,
            policy=QueuedOperationPolicy(self._settings.queued_operation_policy),
            default_font=self._settings.default_font_family,
        )
        self._started = False
        self._closed = False
        _logger.debug("ImageEngine initialized")

    @property
    def settings(self) -> SettingsManager:
        return self._settings

    @property
    def is_running(self) -> bool:
        return self._started and not self._closed

    # ---- lifecycle -------------------------------------------------
    def start(self) -> None:
        """Start the owning-thread timers. Call from the owning thread."""
        if self._closed:
            raise RuntimeError("ImageEngine has been shut down")
        if self._started:
            return
        self.dispatcher.start()
        self.frame_queue.start()
        self._started = True
        _logger.debug("ImageEngine started")

    def shutdown(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        # Stop workers first so nothing queues owning-thread work after the queues close.
        self.pool.shutdown(wait=wait)
        self.dispatcher.shutdown()
        self.frame_queue.shutdown()
        if self._owns_transport and isinstance(self.transport, HttpTransport):
            self.transport.close()
        _logger.debug("ImageEngine shut down")

    def __enter__(self) -> ImageEngine:
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    # ---- requests --------------------------------------------------
    def new_request(
        self,
        path: str | None = None,
        url: str | None = None,
        buffer: bytes | None = None,
        **kwargs: Any,
    ) -> ImageRequest:
        """Create a request using the configured texture defaults."""
        kwargs.setdefault("generate_texture", self._settings.generate_texture)
        kwargs.setdefault("queue_texture_process", self._settings.queue_texture_process)
        return ImageRequest(path=path, url=url, buffer=buffer, **kwargs)

    def load(self, request: ImageRequest, on_load: Callable[[], None] | None = UNSET) -> Future:
        return self.loader.load(request, on_load)

    def validate(self, request: ImageRequest, on_validated: Callable[[bool], None] | None = UNSET) -> Future:
        return self.validator.validate(request, on_validated)
