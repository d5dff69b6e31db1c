# =============================================================================
# STOMP Client -- Header Codec
# =============================================================================
#
# Escaping (STOMP 1.2, all frames except CONNECT / CONNECTED):
#   backslash -> \\    CR -> \r    LF -> \n    colon -> \c
# Any other backslash sequence is a protocol violation.
# =============================================================================

from __future__ import annotations

import re
from typing import Any, Mapping

from .errors import StompHeaderDecodeError
from .types import Headers

_ESCAPE_TABLE = str.maketrans(
    {
        "\\": "\\\\",
        "\r": "\\r",
        "\n": "\\n",
        ":": "\\c",
    }
)

_UNESCAPE_MAP = {
    "\\": "\\",
    "r": "\r",
    "n": "\n",
    "c": ":",
}

# A backslash followed by any single character, or dangling at the end.
_ESCAPE_RE = re.compile(r"\\(.|$)", re.DOTALL)


def escape(text: str) -> str:
    """Escape the reserved characters of a header name or value.

    ``str.translate`` rewrites each literal character once, so an existing
    backslash sequence is escaped rather than passed through.
    """
    return text.translate(_ESCAPE_TABLE)


def unescape(text: str) -> str:
    """Reverse :func:`escape`.

    Raises:
        StompHeaderDecodeError: On an escape sequence STOMP 1.2 does not define.
    """
    if "\\" not in text:
        return text

    def _replace(match: re.Match[str]) -> str:
        try:
            return _UNESCAPE_MAP[match.group(1)]
        except KeyError:
            raise StompHeaderDecodeError(text, match.group(0)) from None

    return _ESCAPE_RE.sub(_replace, text)


def encode_headers(headers: Mapping[str, Any]) -> Headers:
    """Escape every header name and value, preserving order."""
    return {escape(str(name)): escape(str(value)) for name, value in headers.items()}


def decode_headers(headers: Mapping[str, str]) -> Headers:
    """Unescape every header name and value.

    If two escaped names collapse onto the same name, the first one wins.
    """
    result: Headers = {}
    for name, value in headers.items():
        result.setdefault(unescape(name), unescape(value))
    return result


def headers_to_string(headers: Mapping[str, Any]) -> str:
    """Serialize a mapping into ``name:value`` lines joined by LF."""
    return "\n".join(f"{name}:{value}" for name, value in headers.items())


def string_to_headers(block: str) -> Headers:
    """Parse a ``name:value`` line block.

    Lines may end in LF or CRLF. The first value of a repeated name wins;
    lines without a colon or with an empty name are skipped.
    """
    result: Headers = {}
    for line in block.split("\n"):
        if line.endswith("\r"):
            line = line[:-1]
        name, sep, value = line.partition(":")
        if not sep or not name:
            continue
        result.setdefault(name, value)
    return result
