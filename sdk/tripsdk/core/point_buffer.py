"""Fixed-width binary codec for 3-axis sensor samples.

Each record is 32 bytes, big-endian, no padding:
[8-byte signed timestamp ms][8-byte double x][8-byte double y][8-byte double z]

There is no record count prefix. The count is derived from the buffer
length (or from sidecar metadata) by the caller.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable, Iterator

from tripsdk.core.errors import CorruptBufferError
from tripsdk.core.models import VectorSample

_RECORD = struct.Struct(">qddd")

RECORD_SIZE = _RECORD.size  # 32


def encode(samples: Iterable[VectorSample]) -> bytes:
    return b"".join(_RECORD.pack(s.timestamp_ms, s.x, s.y, s.z) for s in samples)


def record_count(buffer_length: int) -> int:
    """Number of records in a buffer of ``buffer_length`` bytes."""
    count, remainder = divmod(buffer_length, RECORD_SIZE)
    if remainder:
        raise CorruptBufferError(
            f"buffer of {buffer_length} bytes is not a multiple of {RECORD_SIZE}"
        )
    return count


def decode(buffer: bytes, count: int) -> list[VectorSample]:
    """Decode exactly ``count`` records from ``buffer``."""
    expected = count * RECORD_SIZE
    if len(buffer) != expected:
        raise CorruptBufferError(
            f"expected {count} records ({expected} bytes), got {len(buffer)} bytes"
        )
    return list(iter_decode(buffer))


def iter_decode(buffer: bytes) -> Iterator[VectorSample]:
    record_count(len(buffer))
    for timestamp, x, y, z in _RECORD.iter_unpack(buffer):
        yield VectorSample(timestamp_ms=timestamp, x=x, y=y, z=z)
