"""Error taxonomy shared by every layer of the pattern engine.

Structural failures (``InvalidExpression``, ``CapabilityUnavailable``,
``ResourceExhausted``) abort a job and never hand back partial buffers.
``NumericDegenerate`` is absorbed per coordinate: the sample falls back to
curve index 0 and the job continues.
"""

from __future__ import annotations


class PatternEngineError(Exception):
    """Base exception for all pattern engine errors."""

    pass


class InvalidExpression(PatternEngineError, ValueError):
    """A noise expression failed sandbox validation or parsing.

    Raised at compile time, before any coordinate is evaluated.
    """

    def __init__(self, message: str, source: str | None = None, position: int | None = None):
        super().__init__(message)
        self.source = source
        self.position = position


class CapabilityUnavailable(PatternEngineError, RuntimeError):
    """No usable GPU device, or the device stopped responding."""

    pass


class NumericDegenerate(PatternEngineError, ArithmeticError):
    """A single coordinate produced a non-finite intermediate."""

    pass


class ResourceExhausted(PatternEngineError, MemoryError):
    """A device buffer could not be allocated within the device limits."""

    def __init__(self, message: str, requested_bytes: int | None = None, limit_bytes: int | None = None):
        super().__init__(message)
        self.requested_bytes = requested_bytes
        self.limit_bytes = limit_bytes


__all__ = [
    "PatternEngineError",
    "InvalidExpression",
    "CapabilityUnavailable",
    "NumericDegenerate",
    "ResourceExhausted",
]
