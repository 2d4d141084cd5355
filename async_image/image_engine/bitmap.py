"""Numpy helpers for RGBA bitmaps.

A bitmap is a C-contiguous ``(height, width, 4)`` uint8 array. Once a bitmap
is published on a request it is frozen (read-only); any later mutation works
on a private copy so no two threads ever hold a writable reference.
"""

from __future__ import annotations

import numpy as np

RGBA_CHANNELS = 4
_RGBA_DIMS = 3

# EXIF orientation tags handled by the loader. Everything else is a no-op.
ORIENTATION_TOP_LEFT = 1
ORIENTATION_BOTTOM_RIGHT = 3
ORIENTATION_RIGHT_TOP = 6
ORIENTATION_LEFT_BOTTOM = 8


def to_rgba(array: np.ndarray) -> np.ndarray:
    """Coerce a grey/RGB/RGBA uint8 array to a contiguous RGBA bitmap."""
    arr = np.asarray(array)
    if arr.dtype != np.uint8:
        raise ValueError(f"bitmap must be uint8, got {arr.dtype}")
    if arr.ndim == 2:
        arr = arr[:, :, np.newaxis]
    if arr.ndim != _RGBA_DIMS:
        raise ValueError(f"unexpected bitmap shape {arr.shape}")
    bands = arr.shape[2]
    if bands == 1:
        arr = np.concatenate([arr, arr, arr], axis=2)
        bands = 3
    if bands == 2:
        # grey + alpha
        grey, alpha = arr[:, :, :1], arr[:, :, 1:]
        arr = np.concatenate([grey, grey, grey, alpha], axis=2)
    elif bands == 3:
        alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
        arr = np.concatenate([arr, alpha], axis=2)
    elif bands > RGBA_CHANNELS:
        arr = arr[:, :, :RGBA_CHANNELS]
    return np.ascontiguousarray(arr)


def flip_vertical(bitmap: np.ndarray) -> np.ndarray:
    """Mirror rows (top-left origin <-> bottom-left origin). Returns a new array."""
    return np.ascontiguousarray(bitmap[::-1])


def apply_orientation(bitmap: np.ndarray, orientation: int) -> np.ndarray:
    if orientation == ORIENTATION_BOTTOM_RIGHT:
        return np.ascontiguousarray(np.rot90(bitmap, 2))
    if orientation == ORIENTATION_RIGHT_TOP:
        # 90 degrees clockwise
        return np.ascontiguousarray(np.rot90(bitmap, -1))
    if orientation == ORIENTATION_LEFT_BOTTOM:
        # 270 degrees clockwise
        return np.ascontiguousarray(np.rot90(bitmap, 1))
    return bitmap


def freeze(bitmap: np.ndarray) -> np.ndarray:
    bitmap.flags.writeable = False
    return bitmap


def ensure_writable(bitmap: np.ndarray) -> np.ndarray:
    """Return `bitmap` if this caller may write to it, else a private copy."""
    if bitmap.flags.writeable and bitmap.flags.c_contiguous:
        return bitmap
    return np.array(bitmap, copy=True, order="C")


def size_of(bitmap: np.ndarray) -> tuple[int, int]:
    """(width, height) of a bitmap."""
    return int(bitmap.shape[1]), int(bitmap.shape[0])
