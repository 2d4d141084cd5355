"""Pixel codec backed by pyvips.

Decodes file/buffer bytes into RGBA numpy bitmaps and implements the pixel
primitives the transform executor needs (resize, subset extraction, text
drawing, encoding). No Qt objects are created here.
"""

from __future__ import annotations

import contextlib
import html
from dataclasses import dataclass
from typing import Any

import numpy as np

from async_image.logger import get_logger

from .bitmap import ORIENTATION_TOP_LEFT, RGBA_CHANNELS, ensure_writable, size_of, to_rgba
from .errors import DecodeFailure, TransformFailure
from .operations import ResizeQuality, TextAlign, TextStyle

_logger = get_logger("codec")

_KERNELS = {
    ResizeQuality.NONE: "nearest",
    ResizeQuality.LOW: "linear",
    ResizeQuality.MEDIUM: "cubic",
    ResizeQuality.HIGH: "lanczos3",
}
_QUALITY_FORMATS = ("jpg", "jpeg", "webp", "heif", "avif")

_pyvips: Any | None = None


def _get_pyvips_module() -> Any:
    global _pyvips
    if _pyvips is None:
        import pyvips  # type: ignore

        # Configure pyvips caches to avoid memory growth
        with contextlib.suppress(Exception):
            pyvips.cache_set_max(0)
            pyvips.cache_set_max_mem(0)
            pyvips.cache_set_max_files(0)
        _pyvips = pyvips
    return _pyvips


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    bands: int
    format: str


class VipsCodec:
    """Codec used by the loader. Every method is safe to call from worker threads."""

    # ---- decode ----------------------------------------------------
    def decode(self, data: bytes) -> np.ndarray:
        pyvips = _get_pyvips_module()
        if not data:
            raise DecodeFailure("empty image buffer")
        try:
            image = pyvips.Image.new_from_buffer(data, "", access="sequential")
            return self._image_to_bitmap(image)
        except (pyvips.Error, ValueError) as e:
            raise DecodeFailure(f"could not decode buffer ({len(data)} bytes): {e}") from e

    def decode_file(self, path: str) -> np.ndarray:
        pyvips = _get_pyvips_module()
        try:
            image = pyvips.Image.new_from_file(path, access="sequential")
            return self._image_to_bitmap(image)
        except (pyvips.Error, ValueError) as e:
            raise DecodeFailure(f"could not decode {path}: {e}") from e

    def read_orientation(self, path: str) -> int:
        """EXIF orientation tag of a file, 1 when absent."""
        pyvips = _get_pyvips_module()
        try:
            image = pyvips.Image.new_from_file(path)
        except pyvips.Error as e:
            raise DecodeFailure(f"could not read header of {path}: {e}") from e
        if image.get_typeof("orientation") == 0:
            return ORIENTATION_TOP_LEFT
        try:
            return int(image.get("orientation"))
        except (pyvips.Error, TypeError, ValueError):
            _logger.debug("unreadable orientation tag in %s", path)
            return ORIENTATION_TOP_LEFT

    def read_info(self, path: str) -> ImageInfo:
        pyvips = _get_pyvips_module()
        try:
            image = pyvips.Image.new_from_file(path)
        except pyvips.Error as e:
            raise DecodeFailure(f"could not read header of {path}: {e}") from e
        loader = image.get("vips-loader") if image.get_typeof("vips-loader") != 0 else ""
        return ImageInfo(image.width, image.height, image.bands, str(loader).replace("load", ""))

    # ---- transforms -------------------------------------------------
    def resize(self, bitmap: np.ndarray, width: int, height: int, quality: ResizeQuality) -> np.ndarray:
        pyvips = _get_pyvips_module()
        try:
            image = self._bitmap_to_image(bitmap)
            hscale = width / image.width
            vscale = height / image.height
            out = (
                image.premultiply()
                .resize(hscale, vscale=vscale, kernel=_KERNELS[quality])
                .unpremultiply()
                .cast("uchar")
            )
            if (out.width, out.height) != (width, height):
                # vips rounds the scaled size; pin it to the exact target
                out = out.gravity("north-west", width, height, extend="copy")
            return self._image_to_array(out)
        except pyvips.Error as e:
            raise TransformFailure(f"resize to {width}x{height} failed: {e}") from e

    def extract_subset(self, bitmap: np.ndarray, x: int, y: int, width: int, height: int) -> np.ndarray:
        pyvips = _get_pyvips_module()
        try:
            image = self._bitmap_to_image(bitmap)
            return self._image_to_array(image.crop(x, y, width, height))
        except pyvips.Error as e:
            w, h = size_of(bitmap)
            raise TransformFailure(f"crop {(x, y, width, height)} invalid for image size {w}x{h}: {e}") from e

    def draw_text(
        self,
        bitmap: np.ndarray,
        text: str,
        x: float,
        y: float,
        style: TextStyle,
        font_family: str,
    ) -> np.ndarray:
        """Blend `text` onto `bitmap` in place and return it.

        (x, y) is the top of the text box; x is its left edge, centre or right
        edge depending on `style.align`.
        """
        pyvips = _get_pyvips_module()
        bitmap = ensure_writable(bitmap)
        if not text:
            return bitmap
        try:
            mask_img = pyvips.Image.text(
                html.escape(text, quote=False),
                font=f"{font_family} {style.size:g}",
                dpi=72,
            )
        except pyvips.Error as e:
            raise TransformFailure(f"text rendering failed: {e}") from e
        mask = np.frombuffer(mask_img.write_to_memory(), dtype=np.uint8).reshape(mask_img.height, mask_img.width)

        left = int(round(x))
        if style.align is TextAlign.CENTER:
            left -= mask.shape[1] // 2
        elif style.align is TextAlign.RIGHT:
            left -= mask.shape[1]
        top = int(round(y))

        bw, bh = size_of(bitmap)
        x0, y0 = max(left, 0), max(top, 0)
        x1, y1 = min(left + mask.shape[1], bw), min(top + mask.shape[0], bh)
        if x0 >= x1 or y0 >= y1:
            _logger.debug("text %r at (%s, %s) lies outside %dx%d", text, x, y, bw, bh)
            return bitmap

        coverage = mask[y0 - top : y1 - top, x0 - left : x1 - left].astype(np.float32) / 255.0
        alpha = (coverage * (style.color[3] / 255.0))[:, :, np.newaxis]
        region = bitmap[y0:y1, x0:x1]
        color = np.asarray(style.color[:3], dtype=np.float32)
        blended = region[:, :, :3].astype(np.float32) * (1.0 - alpha) + color * alpha
        region[:, :, :3] = np.clip(np.rint(blended), 0, 255).astype(np.uint8)
        region[:, :, 3] = np.maximum(region[:, :, 3], np.rint(alpha[:, :, 0] * 255).astype(np.uint8))
        return bitmap

    # ---- encode -----------------------------------------------------
    def encode(self, bitmap: np.ndarray, fmt: str = "png", quality: int = 90) -> bytes:
        pyvips = _get_pyvips_module()
        fmt = fmt.lower().lstrip(".")
        try:
            image = self._bitmap_to_image(bitmap)
            if fmt in ("jpg", "jpeg"):
                image = image.flatten(background=[0, 0, 0]).cast("uchar")
            options = f"[Q={int(quality)}]" if fmt in _QUALITY_FORMATS else ""
            return bytes(image.write_to_buffer(f".{fmt}{options}"))
        except pyvips.Error as e:
            raise TransformFailure(f"encode to {fmt} failed: {e}") from e

    # ---- conversions ------------------------------------------------
    @staticmethod
    def _bitmap_to_image(bitmap: np.ndarray) -> Any:
        pyvips = _get_pyvips_module()
        arr = np.ascontiguousarray(bitmap)
        h, w, bands = arr.shape
        image = pyvips.Image.new_from_memory(arr.tobytes(), w, h, bands, "uchar")
        return image.copy(interpretation="srgb")

    @staticmethod
    def _image_to_array(image: Any) -> np.ndarray:
        mem = image.write_to_memory()
        return np.frombuffer(mem, dtype=np.uint8).reshape(image.height, image.width, image.bands).copy()

    def _image_to_bitmap(self, image: Any) -> np.ndarray:
        pyvips = _get_pyvips_module()
        with contextlib.suppress(pyvips.Error):
            image = image.colourspace("srgb")
        if image.format != "uchar":
            image = image.cast("uchar")
        if not image.hasalpha():
            image = image.bandjoin(255)
        elif image.bands > RGBA_CHANNELS:
            image = image.extract_band(0, n=RGBA_CHANNELS)
        return to_rgba(self._image_to_array(image))
