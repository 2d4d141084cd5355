"""Image loader: runs a request's pipeline on the worker pool.

Per request, on a single worker task:
    validate -> fetch/decode -> orientation fix -> replay deferred operations
    -> flip-normalize -> publish bitmap
then, on the owning thread (via the dispatcher or the frame queue):
    build texture -> on_load callback

Post-load transforms go through `submit_transform`, serialized per request by
the request's pipeline lock.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future
from enum import Enum
from typing import Any, Protocol

import numpy as np
import requests

from async_image.logger import get_logger

from .bitmap import apply_orientation, flip_vertical, freeze, size_of
from .dispatcher import FrameQueue, MainThreadDispatcher
from .errors import AsyncImageError, DecodeFailure, InvalidRequest, TransformFailure, ValidationFailure
from .metrics import metrics
from .operations import Deferred, Operation
from .pool import WorkerPool
from .request import UNSET, ImageRequest, LoadState, SourceKind
from .texture import PIXEL_FORMAT_RGBA32
from .transforms import DEFAULT_FONT_FAMILY, Codec, apply_operation, validate_operation
from .validator import PathValidator, Transport

_logger = get_logger("loader")


class QueuedOperationPolicy(Enum):
    """What a failing deferred operation does to the load that replays it."""

    BEST_EFFORT = "best_effort"  # log, record on the request, keep going
    ABORT = "abort"  # stop replaying and fail the load with TransformFailure


class PipelineCodec(Codec, Protocol):
    def decode(self, data: bytes) -> np.ndarray: ...

    def decode_file(self, path: str) -> np.ndarray: ...

    def read_orientation(self, path: str) -> int: ...

    def read_info(self, path: str) -> Any: ...

    def encode(self, bitmap: np.ndarray, fmt: str = "png", quality: int = 90) -> bytes: ...


class TextureSink(Protocol):
    def create_texture(self, width: int, height: int, pixel_format: str = PIXEL_FORMAT_RGBA32) -> Any: ...

    def upload(self, texture: Any, bitmap: np.ndarray) -> None: ...


def _chain(source: Future, target: Future) -> None:
    def _copy(done: Future) -> None:
        if done.cancelled():
            target.cancel()
        elif done.exception() is not None:
            target.set_exception(done.exception())
        else:
            target.set_result(done.result())

    source.add_done_callback(_copy)


class ImageLoader:
    def __init__(
        self,
        pool: WorkerPool,
        dispatcher: MainThreadDispatcher,
        frame_queue: FrameQueue,
        codec: PipelineCodec,
        texture_sink: TextureSink,
        validator: PathValidator,
        transport: Transport,
        *,
        policy: QueuedOperationPolicy = QueuedOperationPolicy.BEST_EFFORT,
        default_font: str = DEFAULT_FONT_FAMILY,
    ) -> None:
        self._pool = pool
        self._dispatcher = dispatcher
        self._frame_queue = frame_queue
        self._codec = codec
        self._sink = texture_sink
        self._validator = validator
        self._transport = transport
        self._policy = policy
        self._default_font = default_font
        _logger.debug("ImageLoader init: policy=%s workers=%s", policy.value, pool.max_workers)

    @property
    def codec(self) -> PipelineCodec:
        return self._codec

    @property
    def policy(self) -> QueuedOperationPolicy:
        return self._policy

    # ---- load --------------------------------------------------------
    def load(self, request: ImageRequest, on_load: Callable[[], None] | None = UNSET) -> Future:
        """Start loading `request`; returns a future resolving to the request.

        `on_load` replaces the request's load callback when given (None clears
        it). The callback runs on the owning thread, only if the load succeeds.
        """
        request._apply_callback_arg("load", on_load)
        request._begin_load(self)
        metrics.inc("loader.load_started")
        _logger.debug("load queued: %r", request)
        return self._pool.submit(self._run_load, request)

    def _run_load(self, request: ImageRequest) -> ImageRequest:
        try:
            with request._pipeline_lock:
                bitmap = self._fetch_and_decode(request)
                self._process_bitmap(request, bitmap)
        except Exception as e:
            self._fail(request, e)
            raise
        metrics.inc("loader.load_succeeded")
        return request

    def _fail(self, request: ImageRequest, error: Exception) -> None:
        if request.state is LoadState.LOADING:
            request._advance(LoadState.FAILED)
        metrics.inc("loader.load_failed")
        # operations that never got a bitmap fail with the load
        for item in request._queue.take():
            item.error = error
            item.settle()
        if isinstance(error, ValidationFailure):
            _logger.debug("load aborted for %r: %s", request, error)
        else:
            _logger.warning("load failed for %r: %s", request, error)

    def _fetch_and_decode(self, request: ImageRequest) -> np.ndarray:
        source = request.source
        if source is None:
            raise InvalidRequest("no path, url or buffer set on the request")
        if not self._validator.check(request):
            raise ValidationFailure(f"{source.describe()} does not exist or is unreachable")

        try:
            with metrics.timed("loader.decode"):
                if source.kind is SourceKind.LOCAL:
                    path = str(source.value)
                    orientation = self._codec.read_orientation(path)
                    bitmap = apply_orientation(self._codec.decode_file(path), orientation)
                elif source.kind is SourceKind.REMOTE:
                    bitmap = self._codec.decode(self._download(str(source.value)))
                else:
                    # buffers carry no file metadata, so no orientation lookup
                    bitmap = self._codec.decode(bytes(source.value))
        except AsyncImageError:
            raise
        except Exception as e:
            raise DecodeFailure(f"could not decode {source.describe()}: {e}") from e

        request._decoded_size = size_of(bitmap)
        _logger.debug("decoded %s: %dx%d", source.describe(), *request._decoded_size)
        return bitmap

    def _download(self, url: str) -> bytes:
        try:
            return self._transport.get(url)
        except requests.RequestException as e:
            raise ValidationFailure(f"download of {url} failed: {e}") from e

    def _process_bitmap(self, request: ImageRequest, bitmap: np.ndarray) -> None:
        # Until _publish below, `bitmap` is referenced by this worker only.
        def apply(op: Operation) -> None:
            nonlocal bitmap
            bitmap = apply_operation(op, bitmap, self._codec, default_font=self._default_font)

        request._executing_queued = True
        try:
            replayed = request._queue.drain(apply, stop_on_error=self._policy is QueuedOperationPolicy.ABORT)
        finally:
            request._executing_queued = False

        failures = [item for item in replayed if item.error is not None]
        for item in failures:
            request._record_failure(item.op, item.error)
            _logger.warning("queued %s failed for %r: %s", type(item.op).__name__, request, item.error)
        if failures and self._policy is QueuedOperationPolicy.ABORT:
            first = failures[0]
            error = TransformFailure(f"queued {type(first.op).__name__} failed: {first.error}")
            # earlier ops ran on a bitmap that is never published
            for item in replayed:
                if item.error is None:
                    item.error = error
                item.settle()
            raise error from first.error

        normalized = freeze(flip_vertical(bitmap))
        with request._lock:
            request._publish(normalized)
            request._advance(LoadState.LOADED)
            # deferred while the drain was running; they run as post-load transforms
            leftovers = request._queue.take()
        for item in replayed:
            item.settle()
        _logger.debug("loaded %r (%d queued ops replayed)", request, len(replayed))

        if request.should_generate_texture:
            self.schedule_texture(request)
        self._dispatcher.execute(lambda: self._fire(request, "load"))
        self._resubmit(request, leftovers)

    def _resubmit(self, request: ImageRequest, items: list[Deferred]) -> None:
        for item in items:
            try:
                _chain(self.submit_transform(request, item.op), item.future)
            except (AsyncImageError, RuntimeError) as e:
                # pool shut down after publish
                _logger.warning("could not resubmit %s for %r: %s", type(item.op).__name__, request, e)
                item.error = e
                item.settle()

    # ---- post-load transforms ----------------------------------------
    def submit_transform(self, request: ImageRequest, op: Operation) -> Future:
        validate_operation(op)
        return self._pool.submit(self._run_transform, request, op)

    def _run_transform(self, request: ImageRequest, op: Operation) -> None:
        with request._pipeline_lock:
            current = request.bitmap
            if current is None:
                raise InvalidRequest(f"{request!r} has no bitmap to transform")
            # published bitmaps are bottom-left origin; operation coordinates are top-left
            working = flip_vertical(current)
            try:
                result = apply_operation(op, working, self._codec, default_font=self._default_font)
            except AsyncImageError as e:
                _logger.warning("%s failed for %r: %s", type(op).__name__, request, e)
                raise
            request._publish(freeze(flip_vertical(result)))
        _logger.debug("applied %s to %r", type(op).__name__, request)
        if not request.is_executing_queued_process and (
            request.should_generate_texture or request.texture is not None
        ):
            self.schedule_texture(request)

    # ---- owning-thread work ------------------------------------------
    def schedule_texture(self, request: ImageRequest) -> None:
        def build() -> None:
            self._build_texture(request)

        if request.queue_texture_process:
            self._frame_queue.queue(build)
        else:
            self._dispatcher.execute(build)

    def _build_texture(self, request: ImageRequest) -> None:
        if not self._dispatcher.is_owning_thread():
            raise RuntimeError("textures can only be built on the owning thread")
        bitmap = request.bitmap
        if bitmap is None:
            return
        width, height = size_of(bitmap)
        texture = self._sink.create_texture(width, height, PIXEL_FORMAT_RGBA32)
        self._sink.upload(texture, bitmap)
        request._set_texture(texture)
        metrics.inc("texture.built")
        self._fire(request, "texture")

    @staticmethod
    def _fire(request: ImageRequest, event: str, *args: Any) -> None:
        callback = request._take_callback(event)
        if callback is not None:
            callback(*args)

    # ---- save ---------------------------------------------------------
    def save(self, request: ImageRequest, path: str, fmt: str = "png", quality: int = 90) -> Future:
        return self._pool.submit(self._run_save, request, path, fmt, quality)

    def _run_save(self, request: ImageRequest, path: str, fmt: str, quality: int) -> bool:
        ok = False
        try:
            with request._pipeline_lock:
                bitmap = request.bitmap
                if bitmap is None:
                    raise InvalidRequest(f"{request!r} has no bitmap to save")
                data = self._codec.encode(flip_vertical(bitmap), fmt, quality)
            with open(path, "wb") as f:
                f.write(data)
            ok = True
            _logger.debug("saved %r -> %s (%d bytes)", request, path, len(data))
        except (AsyncImageError, OSError) as e:
            _logger.error("save failed for %r -> %s: %s", request, path, e)
        self._dispatcher.execute(lambda: self._fire(request, "save", ok))
        return ok
