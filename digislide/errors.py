"""
Error types raised by the slide access and TMA detection layers.

Every error carries enough context (operation, offending parameter, level,
bounds) to diagnose a failure without inspecting internals. Errors are always
raised to the caller of the failing operation; nothing in the package turns
an error into a default value.
"""

from typing import Any, Optional


class SlideError(Exception):
    """Base class for all digislide errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        parameter: Optional[str] = None,
        level: Optional[int] = None,
        bounds: Optional[Any] = None,
    ):
        self.operation = operation
        self.parameter = parameter
        self.level = level
        self.bounds = bounds
        self.detail = message
        super().__init__(self._format(message))

    def _format(self, message: str) -> str:
        context = []
        if self.operation is not None:
            context.append(f"operation={self.operation}")
        if self.parameter is not None:
            context.append(f"parameter={self.parameter}")
        if self.level is not None:
            context.append(f"level={self.level}")
        if self.bounds is not None:
            context.append(f"bounds={self.bounds}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class InvalidParameter(SlideError, ValueError):
    """Bad or missing argument. A caller bug, never retried."""


class InvalidLevel(InvalidParameter):
    """Pyramid level outside [0, level_count - 1]."""


class InvalidInput(SlideError, ValueError):
    """Image data with the wrong dimensionality or dtype."""


class UnsupportedOperation(SlideError, NotImplementedError):
    """The backend or slide format cannot satisfy the request."""


class MalformedResponse(SlideError):
    """The backend returned data of the wrong shape or size."""


class NotDetected(SlideError, RuntimeError):
    """Core registry queried before any detection run."""


class BackendFailure(SlideError):
    """Network or library error from a backend collaborator.

    The original exception is attached as ``__cause__``.
    """
