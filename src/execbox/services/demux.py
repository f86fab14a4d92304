"""Demultiplexer for the container engine's stdout/stderr framing.

Each frame is an 8-byte header followed by the payload::

    [stream type: 1 byte][reserved: 3 bytes][payload length: uint32 big-endian][payload]

Stream type 1 is stdout, 2 is stderr. Reads from the socket do not line up
with frame boundaries, so the decoder keeps whatever is left over and only
emits a frame once all of its bytes have arrived.
"""
from __future__ import annotations

import codecs
import struct
from typing import Dict, List, Tuple

from ..core.errors import StreamError
from ..core.models import EventType

HEADER = struct.Struct(">BxxxI")
HEADER_SIZE = HEADER.size  # 8

STREAM_TYPES: Dict[int, EventType] = {1: EventType.STDOUT, 2: EventType.STDERR}
_CODES = {v: k for k, v in STREAM_TYPES.items()}


def encode_frame(channel: EventType, payload: bytes) -> bytes:
    return HEADER.pack(_CODES[channel], len(payload)) + payload


class FrameDecoder:
    def __init__(self) -> None:
        self._buf = bytearray()
        self.dropped = 0

    @property
    def pending(self) -> int:
        return len(self._buf)

    def feed(self, chunk: bytes) -> List[Tuple[EventType, bytes]]:
        self._buf.extend(chunk)
        frames: List[Tuple[EventType, bytes]] = []
        offset = 0
        while len(self._buf) - offset >= HEADER_SIZE:
            kind, size = HEADER.unpack_from(self._buf, offset)
            end = offset + HEADER_SIZE + size
            if len(self._buf) < end:
                break
            channel = STREAM_TYPES.get(kind)
            if channel is None:
                self.dropped += 1
            elif size:
                frames.append((channel, bytes(self._buf[offset + HEADER_SIZE:end])))
            offset = end
        if offset:
            del self._buf[:offset]
        return frames

    def close(self) -> None:
        if self._buf:
            n = len(self._buf)
            self._buf.clear()
            raise StreamError(f"stream ended inside a frame ({n} stray bytes)")


class TextDemuxer:
    """FrameDecoder plus per-channel incremental UTF-8 decoding."""

    def __init__(self) -> None:
        self.frames = FrameDecoder()
        self._text = {
            EventType.STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            EventType.STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

    def feed(self, chunk: bytes) -> List[Tuple[EventType, str]]:
        out: List[Tuple[EventType, str]] = []
        for channel, payload in self.frames.feed(chunk):
            text = self._text[channel].decode(payload)
            if text:
                out.append((channel, text))
        return out

    def flush(self) -> List[Tuple[EventType, str]]:
        out: List[Tuple[EventType, str]] = []
        for channel, dec in self._text.items():
            tail = dec.decode(b"", final=True)
            if tail:
                out.append((channel, tail))
        self.frames.close()
        return out
