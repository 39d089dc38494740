import asyncio
import json
import struct
from typing import Any, Dict, Optional

"""
framing.py — tiny length-prefixed JSON framing for asyncio streams.

Protocol (simple on purpose):
- Each message = 4-byte little-endian unsigned length (N) + N bytes of UTF-8 JSON.
- Hard cap at 4 MiB so a buggy peer can’t make us allocate silly amounts of memory.
- JSON is compact (no extra spaces); binary payloads travel as Base64url strings.
"""

MAX_FRAME_SIZE = 4 * 1024 * 1024  # 4 MiB hard limit
LENGTH_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit length


def encode_frame(obj: Dict[str, Any]) -> bytes:
    """Length prefix + compact JSON, as one bytes object."""
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError("Frame exceeds maximum size")
    return LENGTH_STRUCT.pack(len(payload)) + payload


async def read_frame(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """
    Read one framed JSON message and return it as a dict.

    Returns:
        dict parsed from JSON, or None if the stream ended cleanly between frames.

    Raises:
        ValueError: if the frame is too big or the JSON is invalid.
        asyncio.IncompleteReadError: if the stream ended mid-frame.
    """
    try:
        len_bytes = await reader.readexactly(LENGTH_STRUCT.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise
    (length,) = LENGTH_STRUCT.unpack(len_bytes)

    # Quick sanity check before allocating/reading the body.
    if length > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")

    payload = await reader.readexactly(length)

    try:
        obj = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # Keep the message short; no payload echo to avoid leaking big data.
        raise ValueError(f"Invalid JSON frame: {exc}") from exc
    if not isinstance(obj, dict):
        raise ValueError("Frame is not a JSON object")
    return obj


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    """Serialize a dict and write it as a framed message."""
    writer.write(encode_frame(obj))
    await writer.drain()  # Let the transport flush; important under backpressure.
