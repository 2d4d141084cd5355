"""Pytest configuration.

Dispatcher/texture code uses PySide6, so a single `QApplication` is created
for the whole session as early as possible (offscreen unless a platform is
forced) and shut down at the end.

Pipeline tests run against small fakes instead of libvips and the network:
`FakeCodec` understands a tiny raw format (b"FAKE" + width + height + RGBA
bytes), `FakeTextureSink` records which thread uploaded what, and
`FakeTransport` serves canned HEAD/GET answers.
"""

from __future__ import annotations

import os
import struct
import threading
import time
from typing import Any

import numpy as np
import pytest
import requests

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

from async_image.image_engine.bitmap import ensure_writable, size_of  # noqa: E402
from async_image.image_engine.codec import ImageInfo  # noqa: E402
from async_image.image_engine.errors import DecodeFailure, TransformFailure  # noqa: E402

_APP: Any | None = None


def pytest_configure(config) -> None:  # noqa: ARG001
    """Ensure a QApplication exists before collecting/running tests."""

    # Import lazily so non-Qt environments can still import this conftest.
    try:
        from PySide6.QtWidgets import QApplication
    except ImportError:
        return

    global _APP

    app = QApplication.instance()
    if app is None:
        # Keep a strong ref so it isn't GC'd mid-session.
        _APP = QApplication([])
    else:
        _APP = app


def pytest_sessionfinish(session, exitstatus) -> None:  # noqa: ARG001
    """Attempt a clean Qt shutdown to avoid lingering threads at interpreter exit."""

    try:
        from PySide6.QtWidgets import QApplication
    except ImportError:
        return

    app = QApplication.instance()
    if app is None:
        return

    app.quit()
    app.processEvents()


# ---- fakes -----------------------------------------------------------------

_MAGIC = b"FAKE"


def make_bitmap(width: int, height: int) -> np.ndarray:
    """Deterministic RGBA gradient: pixel (y, x) = (x, y, x + y, 255) mod 256."""
    ys, xs = np.mgrid[0:height, 0:width]
    arr = np.empty((height, width, 4), dtype=np.uint8)
    arr[:, :, 0] = xs % 256
    arr[:, :, 1] = ys % 256
    arr[:, :, 2] = (xs + ys) % 256
    arr[:, :, 3] = 255
    return arr


def encode_fake(bitmap: np.ndarray) -> bytes:
    w, h = size_of(bitmap)
    return _MAGIC + struct.pack("<II", w, h) + np.ascontiguousarray(bitmap).tobytes()


def fake_image_bytes(width: int, height: int) -> bytes:
    return encode_fake(make_bitmap(width, height))


class FakeCodec:
    def __init__(self, orientation: int = 1) -> None:
        self.orientation = orientation
        self.decode_calls = 0
        self.fonts: list[str] = []
        self.threads: set[int] = set()
        self._lock = threading.Lock()

    def _note(self) -> None:
        with self._lock:
            self.threads.add(threading.get_ident())

    def decode(self, data: bytes) -> np.ndarray:
        self._note()
        with self._lock:
            self.decode_calls += 1
        if not data.startswith(_MAGIC) or len(data) < 12:
            raise DecodeFailure("not a FAKE image")
        w, h = struct.unpack("<II", data[4:12])
        body = data[12:]
        if len(body) != w * h * 4:
            raise DecodeFailure("truncated FAKE image")
        return np.frombuffer(body, dtype=np.uint8).reshape(h, w, 4).copy()

    def decode_file(self, path: str) -> np.ndarray:
        with open(path, "rb") as f:
            return self.decode(f.read())

    def read_orientation(self, path: str) -> int:
        return self.orientation

    def read_info(self, path: str) -> ImageInfo:
        with open(path, "rb") as f:
            head = f.read(12)
        w, h = struct.unpack("<II", head[4:12])
        return ImageInfo(w, h, 4, "fake")

    def resize(self, bitmap: np.ndarray, width: int, height: int, quality: Any) -> np.ndarray:
        self._note()
        src_w, src_h = size_of(bitmap)
        ys = np.arange(height) * src_h // height
        xs = np.arange(width) * src_w // width
        return bitmap[ys][:, xs].copy()

    def extract_subset(self, bitmap: np.ndarray, x: int, y: int, width: int, height: int) -> np.ndarray:
        self._note()
        bw, bh = size_of(bitmap)
        if x < 0 or y < 0 or x + width > bw or y + height > bh:
            raise TransformFailure(f"crop {(x, y, width, height)} outside {bw}x{bh}")
        return bitmap[y : y + height, x : x + width].copy()

    def draw_text(self, bitmap: np.ndarray, text: str, x: float, y: float, style: Any, font_family: str) -> np.ndarray:
        self._note()
        bitmap = ensure_writable(bitmap)
        self.fonts.append(font_family)
        bitmap[int(y), int(x)] = style.color
        return bitmap

    def encode(self, bitmap: np.ndarray, fmt: str = "png", quality: int = 90) -> bytes:
        return encode_fake(bitmap)


class FakeTexture:
    def __init__(self, width: int, height: int, pixel_format: str) -> None:
        self.size = (width, height)
        self.pixel_format = pixel_format
        self.pixels: np.ndarray | None = None
        self.thread: int | None = None


class FakeTextureSink:
    def __init__(self) -> None:
        self.created: list[FakeTexture] = []
        self.threads: list[int] = []

    def create_texture(self, width: int, height: int, pixel_format: str = "RGBA32") -> FakeTexture:
        tex = FakeTexture(width, height, pixel_format)
        self.created.append(tex)
        return tex

    def upload(self, texture: FakeTexture, bitmap: np.ndarray) -> None:
        texture.pixels = np.array(bitmap, copy=True)
        texture.thread = threading.get_ident()
        self.threads.append(texture.thread)


class FakeTransport:
    def __init__(self, statuses: dict[str, int] | None = None, bodies: dict[str, bytes] | None = None) -> None:
        self.statuses = statuses or {}
        self.bodies = bodies or {}
        self.head_calls: list[str] = []
        self.get_calls: list[str] = []

    def head(self, url: str) -> int:
        self.head_calls.append(url)
        if url not in self.statuses:
            raise requests.ConnectionError(f"unreachable: {url}")
        return self.statuses[url]

    def get(self, url: str) -> bytes:
        self.get_calls.append(url)
        if url not in self.bodies:
            raise requests.HTTPError(f"404 for {url}")
        return self.bodies[url]


def pump(engine, timeout: float = 5.0, idle_rounds: int = 3) -> int:
    """Tick the owning-thread queues until they stay empty for a few rounds."""
    ran = 0
    idle = 0
    deadline = time.monotonic() + timeout
    while idle < idle_rounds and time.monotonic() < deadline:
        n = engine.dispatcher.tick() + engine.frame_queue.tick()
        ran += n
        idle = idle + 1 if n == 0 else 0
        time.sleep(0.01)
    return ran


# ---- fixtures --------------------------------------------------------------


@pytest.fixture
def fake_codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def fake_sink() -> FakeTextureSink:
    return FakeTextureSink()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings():
    from async_image.settings_manager import SettingsManager

    sm = SettingsManager()
    sm.data["worker_count"] = 2
    return sm


@pytest.fixture
def engine(settings, fake_codec, fake_sink, fake_transport):
    from async_image.image_engine.engine import ImageEngine

    eng = ImageEngine(settings, codec=fake_codec, transport=fake_transport, texture_sink=fake_sink)
    yield eng
    eng.shutdown()
