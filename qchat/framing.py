"""
framing.py — length-prefixed JSON frames over asyncio streams.

Protocol:
- Each frame = 4-byte little-endian unsigned length (N) + N bytes of UTF-8 JSON.
- The JSON must be an object; every relay message is `{"type": ..., ...}`.
- Hard cap at 4 MiB so a buggy peer can't make us allocate silly amounts.

A bad body raises ProtocolError *after* the whole frame has been consumed,
so the stream stays in sync and the caller can carry on with the next one.
EOF (clean or mid-frame) surfaces as asyncio.IncompleteReadError.
"""

import asyncio
import json
import struct
from typing import Any, Dict

from .errors import ProtocolError

MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MiB hard limit
LENGTH_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit length


def encode_frame(obj: Dict[str, Any]) -> bytes:
    """Compact JSON with its length prefix, ready for writer.write()."""
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError("Frame exceeds maximum size")
    return LENGTH_STRUCT.pack(len(payload)) + payload


def decode_body(payload: bytes) -> Dict[str, Any]:
    """Parse one frame body; ProtocolError unless it's a JSON object."""
    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # Keep the message short; no payload echo.
        raise ProtocolError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(obj, dict):
        raise ProtocolError("Frame must be a JSON object")
    return obj


async def read_frame(reader: asyncio.StreamReader) -> Dict[str, Any]:
    """
    Read one framed message and return it as a dict.

    Raises:
        asyncio.IncompleteReadError: peer closed the stream.
        ProtocolError: oversize frame or body that isn't a JSON object.
            For oversize frames the body is drained first.
    """
    (length,) = LENGTH_STRUCT.unpack(await reader.readexactly(LENGTH_STRUCT.size))

    if length > MAX_FRAME_SIZE:
        # Skip it in chunks rather than allocating the whole thing.
        remaining = length
        while remaining:
            chunk = await reader.readexactly(min(remaining, 64 * 1024))
            remaining -= len(chunk)
        raise ProtocolError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")

    return decode_body(await reader.readexactly(length))


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    """Serialize and write one frame, then let the transport drain."""
    writer.write(encode_frame(obj))
    await writer.drain()  # important under backpressure
