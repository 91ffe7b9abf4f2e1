"""
Decoder for Docker's multiplexed attach stream.

When a container runs without a TTY, stdout and stderr share one connection.
Each frame is an 8-byte header followed by the payload:

    [channel: 1 byte][0, 0, 0][size: 4 bytes, big-endian][payload: size bytes]

Channel 1 is stdout, 2 is stderr (0 is stdin and never carries output).
"""

import struct
from dataclasses import dataclass
from typing import Iterator, Tuple

STDIN = 0
STDOUT = 1
STDERR = 2

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxL")


@dataclass(frozen=True)
class Frame:
    channel: int
    payload: bytes


def iter_frames(buffer: bytes) -> Iterator[Frame]:
    """
    Yield frames in order.

    Stops quietly at a short header or a truncated payload, which happens
    when the container is killed mid-write.
    """
    offset = 0
    total = len(buffer)

    while offset + HEADER_SIZE <= total:
        channel, size = _HEADER.unpack_from(buffer, offset)
        start = offset + HEADER_SIZE
        end = start + size
        if end > total:
            return
        yield Frame(channel, bytes(buffer[start:end]))
        offset = end


def demux(buffer: bytes) -> Tuple[bytes, bytes]:
    """Split a multiplexed buffer into (stdout, stderr)."""
    stdout = bytearray()
    stderr = bytearray()

    for frame in iter_frames(buffer):
        if frame.channel == STDOUT:
            stdout += frame.payload
        elif frame.channel == STDERR:
            stderr += frame.payload

    return bytes(stdout), bytes(stderr)


def encode_frame(channel: int, payload: bytes) -> bytes:
    """Build one frame; the inverse of a single iter_frames step."""
    return _HEADER.pack(channel, len(payload)) + payload
