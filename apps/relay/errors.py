"""Error taxonomy for the relay.

Upstream errors subclass the builtin ``ConnectionError`` so callers awaiting
``SonioxClient.connect()`` can catch them as plain connection failures.  The
``fatal`` flag tells the orchestrator whether the session can keep streaming.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class UpstreamError(RelayError, ConnectionError):
    kind = "upstream"

    def __init__(self, message: str, *, fatal: bool = False) -> None:
        super().__init__(message)
        self.fatal = fatal

    def __str__(self) -> str:
        return self.args[0] if self.args else self.kind


class ConfigurationError(UpstreamError):
    """Missing or malformed credential, or an insecure/invalid URL.  No retry."""
    kind = "configuration"

    def __init__(self, message: str) -> None:
        super().__init__(message, fatal=True)


class HandshakeTimeout(UpstreamError):
    kind = "handshake_timeout"

    def __init__(self, message: str) -> None:
        super().__init__(message, fatal=True)


class TransportError(UpstreamError):
    """Socket-level failure.  Retried until the reconnect budget is spent."""
    kind = "transport"


class ParseError(UpstreamError):
    """An upstream message that could not be decoded.  Skipped."""
    kind = "parse"


class UpstreamServiceError(UpstreamError):
    """An ``{error_code, error_message}`` message reported by the STT service."""
    kind = "service"

    def __init__(self, code: object, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code


class OversizedFrame(RelayError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Audio chunk too large ({size} > {limit} bytes)")
        self.size = size
        self.limit = limit


class AnalysisFailure(RelayError):
    """The language model call failed, timed out, or returned unusable data."""


class ValidationFailure(RelayError):
    """Transcript rejected at end of session (empty or above the length ceiling)."""


class PersistenceError(RelayError):
    """The external store rejected or could not receive a finalized session."""
