"""Texture sink: turns bitmaps into QPixmaps on the owning thread.

Bitmaps arrive flip-normalized (bottom-left origin, first row is the bottom
of the image). Qt images are top-left origin, so rows are mirrored while
copying into the QImage.
"""

from typing import Any

import numpy as np
from PySide6.QtGui import QImage, QPixmap

from .bitmap import RGBA_CHANNELS

_RGBA_DIMS = 3
PIXEL_FORMAT_RGBA32 = "RGBA32"

_QT_FORMATS = {PIXEL_FORMAT_RGBA32: QImage.Format.Format_RGBA8888}


class QtTextureSink:
    def create_texture(self, width: int, height: int, pixel_format: str = PIXEL_FORMAT_RGBA32) -> QPixmap:
        if pixel_format not in _QT_FORMATS:
            raise ValueError(f"unsupported pixel format: {pixel_format}")
        return QPixmap(int(width), int(height))

    def upload(self, texture: QPixmap, bitmap: Any) -> None:
        """Copy `bitmap` into `texture`. The bitmap is not referenced afterwards."""
        arr = np.ascontiguousarray(np.asarray(bitmap)[::-1])
        if arr.ndim != _RGBA_DIMS or arr.shape[2] != RGBA_CHANNELS:
            raise ValueError(f"unexpected bitmap shape {arr.shape}")
        height, width = arr.shape[0], arr.shape[1]
        bytes_per_line = RGBA_CHANNELS * width
        # .copy() detaches the QImage from the numpy buffer
        qimg = QImage(arr.data, width, height, bytes_per_line, QImage.Format.Format_RGBA8888).copy()
        if not texture.convertFromImage(qimg):
            raise RuntimeError(f"texture upload failed for {width}x{height} bitmap")
