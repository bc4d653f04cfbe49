"""Exception types raised across the chat core.

Only transport-level failures propagate to the stream orchestrator;
vendor adapters never raise.
"""

from __future__ import annotations


class PolychatError(Exception):
    """Base class for all polychat errors."""


class TransportError(PolychatError):
    """HTTP stream could not be opened or broke mid-flight."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ConfigurationError(PolychatError):
    """A send precondition failed before any network call."""


class EmbeddingError(PolychatError):
    """Embedding endpoint failed or returned an unusable payload."""
