"""Content-Length framing for the language server base protocol.

Each message on the wire is a header block followed by a JSON body:

    Content-Length: <bytes>\r\n
    [Content-Type: ...]\r\n
    \r\n
    {"jsonrpc": "2.0", ...}

Header names are matched case-insensitively. Content-Length counts bytes of
the UTF-8 encoded body.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from codeagent.errors import LspProtocolError

CRLF = b"\r\n"
HEADER_ENCODING = "ascii"
BODY_ENCODING = "utf-8"
DEFAULT_MAX_MESSAGE_SIZE = 10 * 1024 * 1024


class FramingError(LspProtocolError):
    """The byte stream does not follow the base protocol framing."""


def parse_header(header_bytes: bytes) -> dict[str, str]:
    """Parse a header block (without the blank separator line).

    Returns a mapping of lowercased header names to values. Raises
    FramingError unless a non-negative integer Content-Length is present.
    """
    if not header_bytes:
        raise FramingError("Empty header block")
    try:
        text = header_bytes.decode(HEADER_ENCODING)
    except UnicodeDecodeError as e:
        raise FramingError(f"Header contains non-ASCII characters: {e}") from e

    headers: dict[str, str] = {}
    for line in text.split("\r\n"):
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise FramingError(f"Malformed header line (no colon): {line!r}")
        name = name.strip()
        if not name:
            raise FramingError(f"Empty header name in line: {line!r}")
        headers[name.lower()] = value.strip()

    raw_length = headers.get("content-length")
    if raw_length is None:
        raise FramingError("Missing required Content-Length header")
    try:
        length = int(raw_length)
    except ValueError as e:
        raise FramingError(f"Invalid Content-Length value: {raw_length!r}") from e
    if length < 0:
        raise FramingError(f"Negative Content-Length: {length}")
    return headers


def content_length(headers: dict[str, str]) -> int:
    return int(headers["content-length"])


def encode_message(msg: dict[str, Any]) -> bytes:
    """Serialize a JSON-RPC message with its header block."""
    try:
        body = json.dumps(msg, separators=(",", ":")).encode(BODY_ENCODING)
    except (TypeError, ValueError) as e:
        raise FramingError(f"Message cannot be serialized to JSON: {e}") from e
    return f"Content-Length: {len(body)}\r\n\r\n".encode(HEADER_ENCODING) + body


def decode_body(body: bytes) -> dict[str, Any]:
    try:
        message = json.loads(body.decode(BODY_ENCODING))
    except UnicodeDecodeError as e:
        raise FramingError(f"Invalid UTF-8 in message body: {e}") from e
    except json.JSONDecodeError as e:
        raise FramingError(f"Invalid JSON in message body: {e}") from e
    if not isinstance(message, dict):
        raise FramingError(f"JSON-RPC message must be an object, got {type(message).__name__}")
    return message


async def _read_header_block(reader: asyncio.StreamReader) -> bytes | None:
    block = b""
    while True:
        try:
            line = await reader.readuntil(CRLF)
        except asyncio.IncompleteReadError as e:
            if not block and not e.partial:
                return None
            raise FramingError("Unexpected EOF while reading headers") from e
        except asyncio.LimitOverrunError as e:
            raise FramingError(f"Header line too long: {e}") from e
        if line == CRLF:
            if not block:
                raise FramingError("Empty header block")
            return block[:-2]
        block += line


async def read_message(
    reader: asyncio.StreamReader,
    *,
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
) -> dict[str, Any] | None:
    """Read one framed message.

    Returns None on a clean EOF at a message boundary. Any other truncation
    or malformed content raises FramingError.
    """
    block = await _read_header_block(reader)
    if block is None:
        return None

    length = content_length(parse_header(block))
    if length > max_message_size:
        raise FramingError(f"Message size {length} exceeds maximum {max_message_size}")

    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise FramingError(
            f"Incomplete message body: expected {length} bytes, got {len(e.partial)}"
        ) from e
    return decode_body(body)


async def write_message(
    writer: asyncio.StreamWriter,
    msg: dict[str, Any],
    *,
    drain: bool = True,
) -> None:
    """Write one framed message; header and body go out in a single write."""
    writer.write(encode_message(msg))
    if drain:
        await writer.drain()
