"""Error kinds raised by the image pipeline."""


class AsyncImageError(Exception):
    """Base class for pipeline errors."""


class InvalidRequest(AsyncImageError):
    """The request has no source, more than one source, or is in the wrong state."""


class InvalidArgument(AsyncImageError, ValueError):
    """A transform argument is out of range (non-positive factor, zero size, missing style)."""


class DecodeFailure(AsyncImageError):
    """The codec rejected the image bytes."""


class ValidationFailure(AsyncImageError):
    """The path or URL does not exist or is unreachable."""


class TransformFailure(AsyncImageError):
    """A codec-level failure while applying a transform (e.g. crop outside bounds)."""
