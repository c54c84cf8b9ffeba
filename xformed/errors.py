from __future__ import annotations


class XformedError(Exception):
    """Base error for the xformed library."""


class InvalidConfigError(XformedError):
    """Raised when analysis or render settings cannot be used."""


class EmptySignalError(XformedError):
    """Raised when a sample buffer has no samples or a zero sample rate."""


class EmptyTimelineError(XformedError):
    """Raised when a timeline handed to the renderer has no notes."""


class UnsupportedSampleFormatError(XformedError):
    """Raised when the decoder cannot interpret an audio container."""
