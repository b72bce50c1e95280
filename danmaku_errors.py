"""Error types shared by the fetch pool, scheduler and track encoder."""

from __future__ import annotations


class TransportError(RuntimeError):
    """Non-2xx response or network failure while fetching a resource."""

    def __init__(self, message: str, status: int | None = None, retry_after_ms: int | None = None):
        super().__init__(message)
        self.status = status
        self.retry_after_ms = retry_after_ms


class DecodeError(TransportError):
    """Remote payload arrived but is not what we expected (empty, not an image...)."""


class ConfigurationError(ValueError):
    """Options that make the run impossible, e.g. a lane count below 1."""


class EncodingError(RuntimeError):
    """The subtitle track could not be serialized or written."""
