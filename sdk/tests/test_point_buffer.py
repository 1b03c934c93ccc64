"""Tests for the fixed-width sensor sample codec."""

from __future__ import annotations

import math
import struct

import pytest

from tripsdk.core import point_buffer
from tripsdk.core.errors import CorruptBufferError
from tripsdk.core.models import VectorSample


SAMPLES = [
    VectorSample(timestamp_ms=1_600_000_000_000, x=0.1, y=-9.81, z=3.0e-12),
    VectorSample(timestamp_ms=1_600_000_000_010, x=-0.0, y=1e300, z=-1e-300),
    VectorSample(timestamp_ms=-5, x=math.pi, y=math.e, z=0.0),
]


def test_record_layout_is_big_endian():
    data = point_buffer.encode([VectorSample(timestamp_ms=1, x=1.0, y=2.0, z=3.0)])
    assert len(data) == 32
    assert data[:8] == b"\x00\x00\x00\x00\x00\x00\x00\x01"
    assert data[8:16] == struct.pack(">d", 1.0)
    assert data[24:32] == struct.pack(">d", 3.0)


def test_round_trip_bit_exact():
    decoded = point_buffer.decode(point_buffer.encode(SAMPLES), len(SAMPLES))
    assert decoded == SAMPLES
    # -0.0 == 0.0, so compare the sign bit explicitly.
    assert math.copysign(1.0, decoded[1].x) == -1.0


def test_nan_survives():
    data = point_buffer.encode([VectorSample(timestamp_ms=0, x=math.nan, y=0.0, z=0.0)])
    (sample,) = point_buffer.decode(data, 1)
    assert math.isnan(sample.x)


def test_empty():
    assert point_buffer.encode([]) == b""
    assert point_buffer.decode(b"", 0) == []


def test_no_count_prefix():
    assert len(point_buffer.encode(SAMPLES)) == len(SAMPLES) * point_buffer.RECORD_SIZE


def test_decode_rejects_wrong_count():
    data = point_buffer.encode(SAMPLES)
    with pytest.raises(CorruptBufferError):
        point_buffer.decode(data, len(SAMPLES) + 1)


def test_decode_rejects_truncated_buffer():
    data = point_buffer.encode(SAMPLES)[:-1]
    with pytest.raises(CorruptBufferError):
        point_buffer.decode(data, len(SAMPLES))


def test_record_count():
    assert point_buffer.record_count(96) == 3
    with pytest.raises(CorruptBufferError):
        point_buffer.record_count(33)


def test_iter_decode_streams():
    it = point_buffer.iter_decode(point_buffer.encode(SAMPLES))
    assert next(it) == SAMPLES[0]
    assert list(it) == SAMPLES[1:]
