"""Error types raised along the request and stream path."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for completionbridge errors."""


class ValidationError(BridgeError):
    """Raised when an inbound chat request cannot be translated.

    Detected before the response commits to streaming, so it is reported as a
    regular status-coded JSON error.
    """


class TransportError(BridgeError):
    """Raised when the upstream is unreachable, resets, or exceeds the deadline."""


class UpstreamProtocolError(BridgeError):
    """Raised when the upstream reports a failure after streaming has begun."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
