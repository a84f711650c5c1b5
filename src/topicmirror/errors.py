"""Exception types raised by the mirror engine."""

from __future__ import annotations

__all__ = ["EmptyPayloadError", "MirrorError", "NetworkError", "PersistenceError"]


class MirrorError(Exception):
    """Base class for every failure raised by :mod:`topicmirror`."""


class NetworkError(MirrorError):
    """A request still failed after the retry budget was spent."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.attempts = attempts


class EmptyPayloadError(MirrorError):
    """The remote answered successfully but without the expected record."""


class PersistenceError(MirrorError):
    """A document could not be written to the durable store."""
