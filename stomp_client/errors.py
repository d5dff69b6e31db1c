# =============================================================================
# STOMP Client -- Error Types
# =============================================================================


class StompError(Exception):
    """Base exception for all STOMP client errors."""


class StompConnectionError(StompError):
    """Connection-related errors (failed to connect, lost connection)."""


class StompNotConnectedError(StompConnectionError):
    """A frame was written while no transport is open."""


class StompTimeoutError(StompError):
    """Operation timed out."""


class StompProtocolError(StompError):
    """Wire protocol errors (malformed frames, bad terminators)."""


class StompHeaderDecodeError(StompProtocolError):
    """A header name or value carries an escape sequence STOMP 1.2 does not define."""

    def __init__(self, text: str, sequence: str) -> None:
        self.text = text
        self.sequence = sequence
        super().__init__(f"Invalid escape sequence {sequence!r} in header {text!r}")
