"""
Error taxonomy for the background-removal pipeline.

Every stage raises one of these rather than a generic exception so callers
can decide between showing the original image, retrying, or surfacing an
error message. ``kind`` is the stable tag that crosses the host boundary.
"""

from __future__ import annotations


class BackgroundRemovalError(RuntimeError):
    """Base class for all pipeline failures."""

    kind = "unknown"
    retryable = False

    def __init__(self, message: str, stage: str | None = None) -> None:
        self.message = message
        self.stage = stage
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class InvalidInputError(BackgroundRemovalError):
    """Raised for empty, undecodable or unsupported images and bad options."""

    kind = "invalidInput"


class ModelLoadError(BackgroundRemovalError):
    """Raised when the weight file is missing, empty or corrupt."""

    kind = "modelLoad"


class InferenceError(BackgroundRemovalError):
    """Raised when the forward pass faults or exceeds its timeout."""

    kind = "inference"
    retryable = True


class DimensionMismatchError(BackgroundRemovalError):
    """Raised when shape bookkeeping between stages disagrees."""

    kind = "dimensionMismatch"


class PipelineCancelledError(BackgroundRemovalError):
    """Raised when a request was cancelled before its output was produced."""

    kind = "cancelled"
    retryable = True


class OutputWriteError(BackgroundRemovalError):
    """Raised when a finished output cannot be written where the host asked."""

    kind = "outputWrite"
