# =============================================================================
# STOMP Client -- Frame Codec
# =============================================================================
#
# Outgoing:
#   COMMAND LF (name:value LF)* LF [BODY] NUL
#
# Incoming, parsed incrementally in three stages per frame:
#   1. command line      up to the first LF (a bare LF is a heartbeat)
#   2. header block      up to the first blank line ([CR]LF [CR]LF)
#   3. body              content-length bytes when given, else up to NUL
# =============================================================================

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from ._logging import logger
from .constants import CR, EOL, HEADER_CONTENT_LENGTH, NULL
from .errors import StompHeaderDecodeError, StompProtocolError
from .headers import decode_headers, encode_headers, headers_to_string, string_to_headers
from .types import SERVER_COMMANDS, Command, Frame, Headers

# Commands whose headers travel unescaped (negotiation happens before
# escaping is agreed on).
_UNESCAPED_COMMANDS = frozenset({Command.CONNECT, Command.CONNECTED})

# End of the header block. ``\A`` covers frames with no headers at all,
# where the blank line follows the command line directly.
_HEADER_END_RE = re.compile(rb"(?:\A|\r?\n)\r?\n")


def encode_frame(
    command: Command | str,
    headers: Mapping[str, Any] | None = None,
    body: bytes | str | None = None,
) -> bytes:
    """Encode a frame into its exact wire bytes.

    Headers are escaped except on CONNECT. Only SEND frames carry a body;
    it is dropped for every other command.
    """
    command = Command(command)
    headers = headers or {}
    if command not in _UNESCAPED_COMMANDS:
        headers = encode_headers(headers)

    parts = [command.value.encode("utf-8"), EOL]
    if headers:
        parts.append(headers_to_string(headers).encode("utf-8"))
        parts.append(EOL)
    parts.append(EOL)
    if command is Command.SEND and body:
        parts.append(body.encode("utf-8") if isinstance(body, str) else bytes(body))
    parts.append(NULL)
    return b"".join(parts)


class _Stage(Enum):
    COMMAND = "command"
    HEADERS = "headers"
    BODY = "body"
    SKIP = "skip"


class FrameParser:
    """Incremental STOMP frame decoder.

    Bytes are fed in arbitrarily sized chunks; each complete frame is handed
    to ``on_frame`` in stream order. A frame whose headers carry an invalid
    escape sequence is dropped (its body is still consumed) and reported via
    ``on_error``.

    Args:
        on_frame: Called with each decoded :class:`Frame`.
        on_heartbeat: Called for each bare EOL between frames.
        on_error: Called with the :class:`StompProtocolError` of a dropped frame.
        commands: Commands to accept; anything else is discarded whole.
    """

    def __init__(
        self,
        on_frame: Callable[[Frame], Any],
        on_heartbeat: Callable[[], Any] | None = None,
        on_error: Callable[[StompProtocolError], Any] | None = None,
        commands: Iterable[Command] = SERVER_COMMANDS,
    ) -> None:
        self._on_frame = on_frame
        self._on_heartbeat = on_heartbeat
        self._on_error = on_error
        self._commands = {c.value: c for c in commands}

        self._buffer = bytearray()
        self._stage = _Stage.COMMAND
        self._command: Command | None = None
        self._headers: Headers = {}
        self._content_length: int | None = None
        self._decode_error: StompProtocolError | None = None

    @property
    def buffered(self) -> int:
        """Bytes received but not yet consumed by a complete stage."""
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        """Append *data* and dispatch every frame it completes."""
        self._buffer.extend(data)
        while self._step():
            pass

    def reset(self) -> None:
        self._buffer.clear()
        self._reset_frame()

    # -- Stages ---------------------------------------------------------------

    def _step(self) -> bool:
        """Run the current stage; return False when more bytes are needed."""
        if self._stage is _Stage.COMMAND:
            return self._read_command()
        if self._stage is _Stage.HEADERS:
            return self._read_headers()
        if self._stage is _Stage.BODY:
            return self._read_body()
        return self._skip_frame()

    def _read_command(self) -> bool:
        end = self._buffer.find(EOL)
        if end < 0:
            return False
        line = bytes(self._buffer[:end])
        del self._buffer[: end + 1]
        if line.endswith(CR):
            line = line[:-1]

        if not line:
            if self._on_heartbeat:
                self._on_heartbeat()
            return True

        command = self._commands.get(line.decode("utf-8", errors="replace"))
        if command is None:
            logger.warning("Discarding frame with unsupported command %r", line[:32])
            self._stage = _Stage.SKIP
            return True

        self._command = command
        self._stage = _Stage.HEADERS
        return True

    def _read_headers(self) -> bool:
        match = _HEADER_END_RE.search(self._buffer)
        if match is None:
            return False
        block = bytes(self._buffer[: match.start()]).decode("utf-8", errors="replace")
        del self._buffer[: match.end()]

        raw = string_to_headers(block)
        if self._command in _UNESCAPED_COMMANDS:
            self._headers = raw
        else:
            try:
                self._headers = decode_headers(raw)
            except StompHeaderDecodeError as exc:
                self._decode_error = exc
                self._headers = raw

        self._content_length = _content_length(self._headers)
        self._stage = _Stage.BODY
        return True

    def _read_body(self) -> bool:
        if self._content_length is not None:
            # Body plus its NUL terminator.
            if len(self._buffer) <= self._content_length:
                return False
            body = bytes(self._buffer[: self._content_length])
            consumed = self._content_length
            if self._buffer[consumed] == 0:
                consumed += 1
            else:
                logger.debug("content-length body not followed by NUL")
            del self._buffer[:consumed]
        else:
            end = self._buffer.find(NULL)
            if end < 0:
                return False
            body = bytes(self._buffer[:end])
            del self._buffer[: end + 1]

        self._finish_frame(body)
        return True

    def _skip_frame(self) -> bool:
        end = self._buffer.find(NULL)
        if end < 0:
            self._buffer.clear()
            return False
        del self._buffer[: end + 1]
        self._reset_frame()
        return True

    def _finish_frame(self, body: bytes) -> None:
        command, headers, error = self._command, self._headers, self._decode_error
        self._reset_frame()
        assert command is not None

        if error is not None:
            logger.error("Dropping %s frame: %s", command.value, error)
            if self._on_error:
                self._on_error(error)
            return
        self._on_frame(Frame(command, headers, body))

    def _reset_frame(self) -> None:
        self._stage = _Stage.COMMAND
        self._command = None
        self._headers = {}
        self._content_length = None
        self._decode_error = None


def _content_length(headers: Headers) -> int | None:
    value = headers.get(HEADER_CONTENT_LENGTH)
    if value is None:
        return None
    # 1*DIGIT only: no sign, whitespace or underscores.
    if not (value.isascii() and value.isdigit()):
        logger.warning("Ignoring malformed content-length %r", value)
        return None
    return int(value)
