"""Native messaging framing: 4-byte little-endian length + UTF-8 JSON body."""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass

from bridgectl.core.errors import ParseError, SizeExceeded
from bridgectl.core.model import Frame

MAX_MESSAGE_SIZE = 1024 * 1024
LENGTH_PREFIX_SIZE = 4

_PREFIX = struct.Struct("<I")


@dataclass(frozen=True)
class DecodeResult:
    message: Frame
    remaining: bytes


def encode(frame: Frame) -> bytes:
    body = json.dumps(frame.to_dict(), ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    if len(body) > MAX_MESSAGE_SIZE:
        raise SizeExceeded(f"Message size {len(body)} exceeds maximum {MAX_MESSAGE_SIZE}")
    return _PREFIX.pack(len(body)) + body


def decode(buffer: bytes) -> DecodeResult | None:
    """Decode the frame at the head of ``buffer``.

    Returns ``None`` while the prefix or body is still incomplete; that is a
    normal streaming state, not an error.
    """
    if len(buffer) < LENGTH_PREFIX_SIZE:
        return None

    (length,) = _PREFIX.unpack_from(buffer, 0)
    if length > MAX_MESSAGE_SIZE:
        raise SizeExceeded(f"Message size {length} exceeds maximum {MAX_MESSAGE_SIZE}")

    end = LENGTH_PREFIX_SIZE + length
    if len(buffer) < end:
        return None

    raw = bytes(buffer[LENGTH_PREFIX_SIZE:end])
    try:
        doc = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ParseError(f"Failed to parse JSON: {exc}") from exc

    return DecodeResult(message=Frame.from_dict(doc), remaining=bytes(buffer[end:]))


def decode_all(buffer: bytes) -> tuple[list[Frame], bytes]:
    messages: list[Frame] = []
    current = bytes(buffer)
    while True:
        result = decode(current)
        if result is None:
            break
        messages.append(result.message)
        current = result.remaining
    return messages, current


def frame_length(buffer: bytes) -> int | None:
    """Total size, prefix included, that the head frame declares; ``None`` until the prefix is complete."""
    if len(buffer) < LENGTH_PREFIX_SIZE:
        return None
    (length,) = _PREFIX.unpack_from(buffer, 0)
    return LENGTH_PREFIX_SIZE + length


def skip_frame(buffer: bytes) -> bytes:
    """Drop the complete frame at the head of ``buffer`` without parsing it."""
    end = frame_length(buffer)
    if end is None or len(buffer) < end:
        return bytes(buffer)
    return bytes(buffer[end:])
