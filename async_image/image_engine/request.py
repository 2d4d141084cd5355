"""ImageRequest: one image moving through the load pipeline.

A request is created from exactly one source (local path, remote URL or raw
bytes), handed to `ImageLoader.load`, and from then on owned by the pipeline:
its bitmap is written only by the worker running the request's pipeline and
its texture only on the owning thread.

Transforms called before the bitmap exists are deferred on the request's
OperationQueue and replayed by the loader right after decode.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np

from async_image.logger import get_logger

from .bitmap import size_of
from .codec import ImageInfo, VipsCodec
from .errors import InvalidRequest
from .operations import Crop, DrawText, Operation, OperationQueue, ResizeBy, ResizeQuality, ResizeTo, TextStyle
from .transforms import validate_operation

if TYPE_CHECKING:
    from PySide6.QtGui import QPixmap

    from .loader import ImageLoader

_logger = get_logger("request")


class SourceKind(Enum):
    LOCAL = "local"
    REMOTE = "remote"
    BUFFER = "buffer"


@dataclass(frozen=True)
class ImageSource:
    kind: SourceKind
    value: str | bytes

    def describe(self) -> str:
        if self.kind is SourceKind.BUFFER:
            return f"<buffer {len(self.value)} bytes>"
        return str(self.value)


class LoadState(Enum):
    UNLOADED = 0
    LOADING = 1
    LOADED = 2
    FAILED = 3


_TRANSITIONS = {
    LoadState.UNLOADED: (LoadState.LOADING,),
    LoadState.LOADING: (LoadState.LOADED, LoadState.FAILED),
    LoadState.LOADED: (),
    LoadState.FAILED: (),
}


class Validation(Enum):
    UNKNOWN = "unknown"
    VALID = "valid"
    INVALID = "invalid"


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Default for optional callback arguments: keep whatever is already set.
# Passing None clears the callback instead.
UNSET: Any = _Unset()

_EVENTS = ("load", "texture", "save", "validated")


class ImageRequest:
    def __init__(
        self,
        path: str | None = None,
        url: str | None = None,
        buffer: bytes | None = None,
        *,
        generate_texture: bool = True,
        queue_texture_process: bool = False,
    ) -> None:
        given = [
            ImageSource(kind, value)
            for kind, value in (
                (SourceKind.LOCAL, path),
                (SourceKind.REMOTE, url),
                (SourceKind.BUFFER, buffer),
            )
            if value is not None
        ]
        if len(given) > 1:
            raise InvalidRequest("an image request takes exactly one of path, url or buffer")
        if given and given[0].kind is SourceKind.BUFFER:
            given[0] = ImageSource(SourceKind.BUFFER, bytes(given[0].value))
        self._source: ImageSource | None = given[0] if given else None

        self.should_generate_texture = bool(generate_texture)
        self.queue_texture_process = bool(queue_texture_process)

        self._lock = threading.RLock()
        # held by the worker running this request's pipeline or a post-load transform
        self._pipeline_lock = threading.Lock()
        self._state = LoadState.UNLOADED
        self._bitmap: np.ndarray | None = None
        self._texture: QPixmap | None = None
        self._width = 0
        self._height = 0
        self._decoded_size: tuple[int, int] | None = None
        self._queue = OperationQueue()
        self._failed_operations: list[tuple[Operation, Exception]] = []
        self._validated = Validation.UNKNOWN
        self._callbacks: dict[str, Callable[..., None] | None] = dict.fromkeys(_EVENTS)
        self._loader: ImageLoader | None = None
        self._executing_queued = False

    @classmethod
    def from_path(cls, path: str, **kwargs: Any) -> ImageRequest:
        return cls(path=str(path), **kwargs)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> ImageRequest:
        return cls(url=url, **kwargs)

    @classmethod
    def from_buffer(cls, buffer: bytes, **kwargs: Any) -> ImageRequest:
        return cls(buffer=buffer, **kwargs)

    def __repr__(self) -> str:
        src = self._source.describe() if self._source else "<no source>"
        return f"ImageRequest({src}, state={self._state.name})"

    # ---- read access -------------------------------------------------
    @property
    def source(self) -> ImageSource | None:
        return self._source

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state is LoadState.LOADED

    @property
    def bitmap(self) -> np.ndarray | None:
        """Flip-normalized, read-only bitmap; None until loaded."""
        with self._lock:
            return self._bitmap

    @property
    def texture(self) -> QPixmap | None:
        return self._texture

    @property
    def width(self) -> int:
        with self._lock:
            return size_of(self._bitmap)[0] if self._bitmap is not None else self._width

    @property
    def height(self) -> int:
        with self._lock:
            return size_of(self._bitmap)[1] if self._bitmap is not None else self._height

    @property
    def decoded_size(self) -> tuple[int, int] | None:
        """(width, height) straight out of the codec, after orientation."""
        return self._decoded_size

    @property
    def path_validated(self) -> Validation:
        return self._validated

    @property
    def pending_operations(self) -> tuple[Operation, ...]:
        return self._queue.pending

    @property
    def failed_operations(self) -> list[tuple[Operation, Exception]]:
        with self._lock:
            return list(self._failed_operations)

    @property
    def is_executing_queued_process(self) -> bool:
        return self._executing_queued

    # ---- callbacks ---------------------------------------------------
    def set_on_load(self, callback: Callable[[], None] | None) -> None:
        self._set_callback("load", callback)

    def set_on_texture_ready(self, callback: Callable[[], None] | None) -> None:
        self._set_callback("texture", callback)

    def set_on_save(self, callback: Callable[[bool], None] | None) -> None:
        self._set_callback("save", callback)

    def set_on_validated(self, callback: Callable[[bool], None] | None) -> None:
        self._set_callback("validated", callback)

    def _set_callback(self, event: str, callback: Callable[..., None] | None) -> None:
        if callback is not None and not callable(callback):
            raise TypeError(f"{event} callback must be callable or None")
        with self._lock:
            self._callbacks[event] = callback

    def _apply_callback_arg(self, event: str, callback: Any) -> None:
        if callback is not UNSET:
            self._set_callback(event, callback)

    def _take_callback(self, event: str) -> Callable[..., None] | None:
        """Read-and-clear, so a callback is delivered at most once."""
        with self._lock:
            callback = self._callbacks[event]
            self._callbacks[event] = None
        return callback

    # ---- transforms --------------------------------------------------
    def resize(self, factor: int, quality: ResizeQuality = ResizeQuality.MEDIUM) -> Future:
        """Shrink to (width // factor, height // factor)."""
        return self._submit(ResizeBy(factor, quality))

    def resize_to(self, width: int, height: int, quality: ResizeQuality = ResizeQuality.MEDIUM) -> Future:
        return self._submit(ResizeTo(width, height, quality))

    def crop(self, origin: tuple[int, int], size: tuple[int, int]) -> Future:
        """Keep the rectangle at `origin` (top-left, decoded image space) of `size`."""
        x, y = origin
        w, h = size
        return self._submit(Crop(int(x), int(y), int(w), int(h)))

    def draw_text(self, text: str, position: tuple[float, float], style: TextStyle) -> Future:
        x, y = position
        return self._submit(DrawText(text, float(x), float(y), style))

    def _submit(self, op: Operation) -> Future:
        validate_operation(op)
        with self._lock:
            if self._bitmap is None:
                if self._state is LoadState.FAILED:
                    raise InvalidRequest(f"{self!r}: load failed, nothing to transform")
                return self._queue.defer(op)
            loader = self._loader
        if loader is None:
            raise InvalidRequest(f"{self!r} is not bound to a loader")
        return loader.submit_transform(self, op)

    def generate_texture(self, on_texture_ready: Callable[[], None] | None = UNSET) -> None:
        """Build the texture now if loaded, otherwise as part of the pending load."""
        self._apply_callback_arg("texture", on_texture_ready)
        with self._lock:
            if self._bitmap is None:
                self.should_generate_texture = True
                return
            loader = self._loader
        if loader is not None:
            loader.schedule_texture(self)

    # ---- supplementary operations -----------------------------------
    def info(self) -> ImageInfo:
        """Dimensions/bands of the loaded bitmap, or of a local file's header."""
        with self._lock:
            bitmap = self._bitmap
            loader = self._loader
        if bitmap is not None:
            w, h = size_of(bitmap)
            return ImageInfo(w, h, int(bitmap.shape[2]), "rgba")
        if self._source is not None and self._source.kind is SourceKind.LOCAL:
            codec = loader.codec if loader is not None else VipsCodec()
            return codec.read_info(str(self._source.value))
        raise InvalidRequest(f"{self!r}: image info needs a loaded bitmap or a local path")

    def save(
        self,
        path: str,
        fmt: str = "png",
        quality: int = 90,
        on_save: Callable[[bool], None] | None = UNSET,
    ) -> Future:
        """Encode the current bitmap and write it to `path` off the owning thread."""
        self._apply_callback_arg("save", on_save)
        with self._lock:
            if self._bitmap is None or self._loader is None:
                raise InvalidRequest(f"{self!r} has not loaded yet; call load() first")
            loader = self._loader
        return loader.save(self, path, fmt, quality)

    # ---- pipeline hooks (used by ImageLoader / PathValidator) -------
    def _advance(self, new_state: LoadState) -> None:
        with self._lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise RuntimeError(f"invalid state transition {self._state.name} -> {new_state.name}")
            _logger.debug("%r -> %s", self, new_state.name)
            self._state = new_state

    def _begin_load(self, loader: ImageLoader) -> None:
        with self._lock:
            if self._source is None:
                raise InvalidRequest("no path, url or buffer set on the request")
            if self._state is not LoadState.UNLOADED:
                raise InvalidRequest(f"{self!r} was already loaded; reloading is not supported")
            self._loader = loader
            self._advance(LoadState.LOADING)

    def _set_validated(self, valid: bool) -> bool:
        """Record a validation result once. Returns False if one was already set."""
        with self._lock:
            if self._validated is not Validation.UNKNOWN:
                return False
            self._validated = Validation.VALID if valid else Validation.INVALID
            return True

    def _publish(self, bitmap: np.ndarray) -> None:
        with self._lock:
            self._bitmap = bitmap
            self._width, self._height = size_of(bitmap)

    def _record_failure(self, op: Operation, error: Exception) -> None:
        with self._lock:
            self._failed_operations.append((op, error))

    def _set_texture(self, texture: QPixmap) -> None:
        self._texture = texture
