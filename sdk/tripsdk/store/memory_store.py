"""In-process implementation of MeasurementStore."""

from __future__ import annotations

import io
from bisect import insort
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from tripsdk.core import point_buffer
from tripsdk.core.errors import NoSuchAttachmentError, NoSuchMeasurementError
from tripsdk.core.models import (
    Attachment,
    AttachmentStatus,
    AttachmentType,
    Event,
    EventType,
    GeoLocation,
    Measurement,
    MeasurementStatus,
    Modality,
    SensorChannel,
    VectorSample,
)
from tripsdk.store.base import SampleBlob


class InMemoryMeasurementStore:
    """MeasurementStore backed by dicts. Zero dependencies, lost on exit."""

    def __init__(self) -> None:
        self._measurements: dict[int, Measurement] = {}
        self._events: dict[int, list[Event]] = {}
        self._locations: dict[int, list[GeoLocation]] = {}
        self._blobs: dict[tuple[int, SensorChannel], bytearray] = {}
        self._blob_versions: dict[tuple[int, SensorChannel], int] = {}
        self._attachments: dict[int, Attachment] = {}
        self._next_measurement_id = 1
        self._next_attachment_id = 1

    def _require(self, measurement_id: int) -> Measurement:
        measurement = self._measurements.get(measurement_id)
        if measurement is None:
            raise NoSuchMeasurementError(f"unknown measurement {measurement_id}")
        return measurement

    async def create_measurement(self, modality: Modality, file_format_version: int,
                                 timestamp_ms: int) -> Measurement:
        measurement = Measurement(
            id=self._next_measurement_id,
            status=MeasurementStatus.OPEN,
            modality=modality,
            file_format_version=file_format_version,
            timestamp_ms=timestamp_ms,
        )
        self._next_measurement_id += 1
        self._measurements[measurement.id] = measurement
        return _copy(measurement)

    def insert_measurement(self, measurement: Measurement) -> None:
        """Put a measurement in as-is, e.g. to seed a store left by an older version."""
        self._measurements[measurement.id] = _copy(measurement)
        self._next_measurement_id = max(self._next_measurement_id, measurement.id + 1)

    async def load_measurement(self, measurement_id: int) -> Measurement | None:
        measurement = self._measurements.get(measurement_id)
        return _copy(measurement) if measurement is not None else None

    async def load_measurements(self, status: MeasurementStatus | None = None) -> list[Measurement]:
        return [
            _copy(m) for _, m in sorted(self._measurements.items())
            if status is None or m.status == status
        ]

    async def has_measurement(self, status: MeasurementStatus) -> bool:
        return any(m.status == status for m in self._measurements.values())

    async def set_status(self, measurement_id: int, status: MeasurementStatus) -> None:
        self._require(measurement_id).status = status

    async def update_modality(self, measurement_id: int, modality: Modality) -> None:
        self._require(measurement_id).modality = modality

    async def update_distance(self, measurement_id: int, distance: float) -> None:
        self._require(measurement_id).distance = distance

    async def append_event(self, event: Event) -> None:
        self._events.setdefault(event.measurement_id, []).append(event)

    async def load_events(self, measurement_id: int, event_type: EventType | None = None,
                          offset: int = 0, limit: int | None = None) -> list[Event]:
        events = [
            e for e in self._events.get(measurement_id, [])
            if event_type is None or e.type == event_type
        ]
        end = None if limit is None else offset + limit
        return events[offset:end]

    async def count_events(self, measurement_id: int) -> int:
        return len(self._events.get(measurement_id, []))

    async def append_location(self, measurement_id: int, location: GeoLocation) -> None:
        # Kept in time order so pages are plain slices.
        insort(self._locations.setdefault(measurement_id, []), location,
               key=lambda l: l.timestamp_ms)

    async def count_locations(self, measurement_id: int) -> int:
        return len(self._locations.get(measurement_id, []))

    async def load_locations(self, measurement_id: int, offset: int = 0,
                             limit: int | None = None) -> list[GeoLocation]:
        end = None if limit is None else offset + limit
        return self._locations.get(measurement_id, [])[offset:end]

    async def append_vector_samples(self, measurement_id: int, channel: SensorChannel,
                                    samples: Sequence[VectorSample]) -> None:
        self._blob_versions.setdefault(
            (measurement_id, channel), self._require(measurement_id).file_format_version,
        )
        blob = self._blobs.setdefault((measurement_id, channel), bytearray())
        blob.extend(point_buffer.encode(samples))

    async def load_sample_blob(self, measurement_id: int,
                               channel: SensorChannel) -> SampleBlob | None:
        blob = self._blobs.get((measurement_id, channel))
        if blob is None:
            return None
        data = bytes(blob)
        return SampleBlob(
            channel=channel,
            size=len(data),
            file_format_version=self._blob_versions[(measurement_id, channel)],
            opener=lambda: io.BytesIO(data),
        )

    async def delete_sample_blobs(self, measurement_id: int) -> None:
        for channel in SensorChannel:
            self._blobs.pop((measurement_id, channel), None)
            self._blob_versions.pop((measurement_id, channel), None)

    def insert_sample_blob(self, measurement_id: int, channel: SensorChannel, data: bytes,
                           file_format_version: int) -> None:
        """Put an encoded point buffer in as-is, tagged with the version it was written in."""
        self._blobs[(measurement_id, channel)] = bytearray(data)
        self._blob_versions[(measurement_id, channel)] = file_format_version

    async def add_attachment(self, measurement_id: int, attachment_type: AttachmentType,
                             path: Path, file_format_version: int = 1) -> Attachment:
        attachment = Attachment(
            id=self._next_attachment_id,
            measurement_id=measurement_id,
            type=attachment_type,
            path=Path(path),
            file_format_version=file_format_version,
        )
        self._next_attachment_id += 1
        self._attachments[attachment.id] = attachment
        return _copy(attachment)

    async def load_attachments(self, measurement_id: int,
                               status: AttachmentStatus | None = None) -> list[Attachment]:
        return [
            _copy(a) for _, a in sorted(self._attachments.items())
            if a.measurement_id == measurement_id and (status is None or a.status == status)
        ]

    async def set_attachment_status(self, attachment_id: int, status: AttachmentStatus) -> None:
        attachment = self._attachments.get(attachment_id)
        if attachment is None:
            raise NoSuchAttachmentError(f"unknown attachment {attachment_id}")
        attachment.status = status


def _copy(obj):
    # Callers get snapshots; only the store methods mutate the stored record.
    return replace(obj)
