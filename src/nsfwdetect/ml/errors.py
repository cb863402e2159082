"""Error taxonomy for NSFW detection.

Every failure of a check is reported as one of three ``DetectionError`` kinds.
``ModelLoadError`` is deliberately outside that hierarchy: it is a startup
fault, never a per-request outcome.
"""

from __future__ import annotations


class DetectionError(Exception):
    """Base class for errors delivered through a detection outcome."""

    message: str = "detection failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class UnsupportedImageFormat(DetectionError):
    """The input could not be turned into a bitmap or a pixel buffer."""

    message = "neither a decodable bitmap nor a pixel buffer could be derived from the input"


class NoMatchingLabel(DetectionError):
    """The model result set did not contain the designated label."""

    message = "the model did not return the expected designated label"


class ExecutionFailed(DetectionError):
    """The inference backend failed while running the request."""

    message = "inference execution failed"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"{self.message}: {cause}")
        self.cause = cause
        self.__cause__ = cause


class ModelLoadError(RuntimeError):
    """The bundled model artifact could not be loaded."""
