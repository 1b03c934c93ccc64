"""Offset (delta) encoding for numeric streams.

The first value seen is kept absolute, every following value is replaced
by its difference to the previous one, e.g. timestamps
``1000, 1500, 1800`` become ``1000, 500, 300``. Small deltas compress far
better than repeated large absolute values.

Use one ``OffsetEncoder`` per stream. Reusing an instance across two
unrelated streams turns the second stream's first value into a bogus delta.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from tripsdk.core.models import GeoLocation


class OffsetEncoder:
    """Stateful encoder for one stream of absolute values."""

    def __init__(self) -> None:
        self._previous: int | None = None

    def offset(self, value: int) -> int:
        if self._previous is None:
            self._previous = value
            return value
        diff = value - self._previous
        self._previous = value
        return diff

    def encode(self, values: Iterable[int]) -> list[int]:
        return [self.offset(v) for v in values]


class OffsetDecoder:
    """Inverse of ``OffsetEncoder``: a running sum."""

    def __init__(self) -> None:
        self._previous: int | None = None

    def absolute(self, value: int) -> int:
        if self._previous is None:
            self._previous = value
        else:
            self._previous += value
        return self._previous

    def decode(self, values: Iterable[int]) -> list[int]:
        return [self.absolute(v) for v in values]


def encode(values: Iterable[int]) -> list[int]:
    return OffsetEncoder().encode(values)


def decode(values: Iterable[int]) -> list[int]:
    return OffsetDecoder().decode(values)


# -- Fixed-point formatting for locations ----------------------------------

def coordinate_to_fixed(degrees: float) -> int:
    """51.012345 -> 51_012345 (micro-degrees)."""
    return round(degrees * 1_000_000)


def speed_to_fixed(meters_per_second: float) -> int:
    """11.0 m/s -> 1_100 cm/s."""
    return round(meters_per_second * 100)


def fixed_to_coordinate(value: int) -> float:
    return value / 1_000_000


def fixed_to_speed(value: int) -> float:
    return value / 100


@dataclass(frozen=True)
class FormattedLocation:
    """A location in the integer units carried by the transfer file."""
    timestamp: int
    latitude: int
    longitude: int
    accuracy: int
    speed: int

    @classmethod
    def from_location(cls, location: GeoLocation) -> FormattedLocation:
        # Accuracy is stored in cm already; a missing value is sent as 0.
        accuracy = location.accuracy_cm if location.accuracy_cm is not None else 0.0
        return cls(
            timestamp=location.timestamp_ms,
            latitude=coordinate_to_fixed(location.latitude),
            longitude=coordinate_to_fixed(location.longitude),
            accuracy=round(accuracy),
            speed=speed_to_fixed(location.speed_mps),
        )

    def to_location(self) -> GeoLocation:
        return GeoLocation(
            timestamp_ms=self.timestamp,
            latitude=fixed_to_coordinate(self.latitude),
            longitude=fixed_to_coordinate(self.longitude),
            speed_mps=fixed_to_speed(self.speed),
            accuracy_cm=float(self.accuracy),
        )


class LocationOffsetter:
    """Five independent offset streams, one per location attribute."""

    def __init__(self) -> None:
        self._timestamp = OffsetEncoder()
        self._latitude = OffsetEncoder()
        self._longitude = OffsetEncoder()
        self._accuracy = OffsetEncoder()
        self._speed = OffsetEncoder()

    def offset(self, location: FormattedLocation) -> FormattedLocation:
        return FormattedLocation(
            timestamp=self._timestamp.offset(location.timestamp),
            latitude=self._latitude.offset(location.latitude),
            longitude=self._longitude.offset(location.longitude),
            accuracy=self._accuracy.offset(location.accuracy),
            speed=self._speed.offset(location.speed),
        )


class LocationRecords:
    """Column-oriented, offset-encoded location streams of one measurement.

    Feed locations in timestamp order with ``add`` (possibly across several
    pages loaded from the store); ``as_dict`` returns the five streams.
    """

    def __init__(self) -> None:
        self._offsetter = LocationOffsetter()
        self.timestamp: list[int] = []
        self.latitude: list[int] = []
        self.longitude: list[int] = []
        self.accuracy: list[int] = []
        self.speed: list[int] = []

    def add(self, location: GeoLocation) -> None:
        offsets = self._offsetter.offset(FormattedLocation.from_location(location))
        self.timestamp.append(offsets.timestamp)
        self.latitude.append(offsets.latitude)
        self.longitude.append(offsets.longitude)
        self.accuracy.append(offsets.accuracy)
        self.speed.append(offsets.speed)

    def extend(self, locations: Iterable[GeoLocation]) -> None:
        for location in locations:
            self.add(location)

    def __len__(self) -> int:
        return len(self.timestamp)

    def as_dict(self) -> dict[str, list[int]]:
        return {
            "timestamp": self.timestamp,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "speed": self.speed,
        }


def decode_location_records(records: dict[str, list[int]]) -> list[GeoLocation]:
    """Turn the five offset streams back into absolute locations."""
    columns = [
        decode(records.get(name, []))
        for name in ("timestamp", "latitude", "longitude", "accuracy", "speed")
    ]
    lengths = {len(c) for c in columns}
    if len(lengths) > 1:
        raise ValueError(f"location streams differ in length: {sorted(lengths)}")
    return [
        FormattedLocation(ts, lat, lon, acc, spe).to_location()
        for ts, lat, lon, acc, spe in zip(*columns)
    ]
