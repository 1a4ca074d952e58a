"""Failure taxonomy for the mirror engine.

Every failure is scoped to the single artifact that triggered it. The worker
pool catches :class:`MirrorError` subclasses and turns them into completion
records; ``kind`` is what ends up in the final report and ``retryable`` is
what the retry state machine looks at.
"""

from __future__ import annotations

__all__ = [
    "MirrorError",
    "NotFound",
    "CorruptMetadata",
    "TransientError",
    "IntegrityMismatch",
    "IOFailure",
    "ConfigError",
    "InvalidIdentifier",
    "CANCELLED",
    "INTERNAL_ERROR",
]

CANCELLED = "Cancelled"
INTERNAL_ERROR = "InternalError"


class MirrorError(RuntimeError):
    """Base class for per-artifact failures."""

    kind = "MirrorError"
    retryable = False


class NotFound(MirrorError):
    """The remote cache has no record for the requested path."""

    kind = "NotFound"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class CorruptMetadata(MirrorError):
    """A narinfo record is unparseable or lacks a required field."""

    kind = "CorruptMetadata"


class TransientError(MirrorError):
    """Network failure or retryable server status."""

    kind = "TransientError"
    retryable = True

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class IntegrityMismatch(MirrorError):
    """Downloaded bytes do not match the declared hash or size."""

    kind = "IntegrityMismatch"


class IOFailure(MirrorError):
    """Local disk error while staging or committing a file."""

    kind = "IOFailure"


class ConfigError(ValueError):
    """Raised when configuration input is invalid."""


class InvalidIdentifier(ValueError):
    """Raised when a token is not a valid store path hash."""
