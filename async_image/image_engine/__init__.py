"""Image Engine - asynchronous image loading pipeline.

This package provides:
- Requests that can be transformed before their data exists (request, operations)
- Worker-side decode, replay and flip-normalization (loader, codec, transforms)
- Owning-thread marshalling of textures and callbacks (dispatcher, texture)
- Source existence checks (validator, transport)

Usage:
    from async_image.image_engine import ImageEngine

    engine = ImageEngine()
    engine.start()
    req = engine.new_request(path="/path/to/image.png")
    req.resize(2)
    engine.load(req, on_load=lambda: print(req.texture))
"""

from .errors import (
    AsyncImageError,
    DecodeFailure,
    InvalidArgument,
    InvalidRequest,
    TransformFailure,
    ValidationFailure,
)
from .engine import ImageEngine
from .loader import QueuedOperationPolicy
from .operations import ResizeQuality, TextAlign, TextStyle
from .request import ImageRequest, LoadState, SourceKind, Validation

__all__ = [
    "AsyncImageError",
    "DecodeFailure",
    "ImageEngine",
    "ImageRequest",
    "InvalidArgument",
    "InvalidRequest",
    "LoadState",
    "QueuedOperationPolicy",
    "ResizeQuality",
    "SourceKind",
    "TextAlign",
    "TextStyle",
    "TransformFailure",
    "Validation",
    "ValidationFailure",
]
