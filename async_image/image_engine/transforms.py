"""Transform executor: applies one tagged operation to a bitmap."""

from __future__ import annotations

from typing import Protocol

import numpy as np

from .bitmap import size_of
from .errors import AsyncImageError, InvalidArgument, TransformFailure
from .operations import Crop, DrawText, Operation, ResizeBy, ResizeQuality, ResizeTo, TextStyle

DEFAULT_FONT_FAMILY = "Arial"


class Codec(Protocol):
    def resize(self, bitmap: np.ndarray, width: int, height: int, quality: ResizeQuality) -> np.ndarray: ...

    def extract_subset(self, bitmap: np.ndarray, x: int, y: int, width: int, height: int) -> np.ndarray: ...

    def draw_text(
        self, bitmap: np.ndarray, text: str, x: float, y: float, style: TextStyle, font_family: str
    ) -> np.ndarray: ...


def validate_operation(op: Operation) -> None:
    """Raise InvalidArgument for arguments no bitmap could satisfy."""
    if isinstance(op, ResizeBy):
        if op.factor <= 0:
            raise InvalidArgument(f"resize factor must be positive, got {op.factor}")
    elif isinstance(op, ResizeTo):
        if op.width <= 0 or op.height <= 0:
            raise InvalidArgument(f"target dimensions must be positive, got {op.width}x{op.height}")
    elif isinstance(op, Crop):
        if op.width <= 0 or op.height <= 0:
            raise InvalidArgument(f"crop size must be positive, got {op.width}x{op.height}")
    elif isinstance(op, DrawText):
        if op.style is None:
            raise InvalidArgument("text style can not be None")
        if not isinstance(op.text, str):
            raise InvalidArgument(f"text must be a string, got {type(op.text).__name__}")
        color = op.style.color
        if (
            not isinstance(color, (tuple, list))
            or len(color) != 4
            or not all(isinstance(c, int) and 0 <= c <= 255 for c in color)
        ):
            raise InvalidArgument(f"text color must be four ints in 0..255 (RGBA), got {color!r}")
    else:
        raise InvalidArgument(f"unknown operation {op!r}")
    if not isinstance(getattr(op, "quality", ResizeQuality.MEDIUM), ResizeQuality):
        raise InvalidArgument(f"quality must be a ResizeQuality, got {op.quality!r}")  # type: ignore[union-attr]


def apply_operation(
    op: Operation,
    bitmap: np.ndarray,
    codec: Codec,
    *,
    default_font: str = DEFAULT_FONT_FAMILY,
) -> np.ndarray:
    """Apply `op` to `bitmap` and return the resulting bitmap.

    Resize and crop always return a new array. DrawText writes into `bitmap`
    when the caller owns it writably, otherwise into a copy. Codec errors
    surface as TransformFailure.
    """
    validate_operation(op)
    try:
        if isinstance(op, ResizeBy):
            width, height = size_of(bitmap)
            target = (width // op.factor, height // op.factor)
            if target[0] <= 0 or target[1] <= 0:
                raise TransformFailure(f"resize by {op.factor} collapses {width}x{height} to {target[0]}x{target[1]}")
            return codec.resize(bitmap, target[0], target[1], op.quality)
        if isinstance(op, ResizeTo):
            return codec.resize(bitmap, op.width, op.height, op.quality)
        if isinstance(op, Crop):
            return codec.extract_subset(bitmap, op.x, op.y, op.width, op.height)
        family = op.style.font_family or default_font
        return codec.draw_text(bitmap, op.text, op.x, op.y, op.style, family)
    except AsyncImageError:
        raise
    except Exception as e:
        raise TransformFailure(f"{type(op).__name__} failed: {e}") from e
