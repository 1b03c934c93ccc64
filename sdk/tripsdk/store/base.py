"""Local store interface (port) for measurements and their captured data."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
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


@dataclass(frozen=True)
class SampleBlob:
    """An already encoded point buffer of one sensor channel.

    ``open()`` returns a fresh binary stream positioned at the start, so the
    blob can be copied without loading it into memory.
    """
    channel: SensorChannel
    size: int
    file_format_version: int
    opener: Callable[[], BinaryIO]

    def open(self) -> BinaryIO:
        return self.opener()


class MeasurementStore(Protocol):
    """Port: persists measurements, events, locations, sensor blobs and attachments.

    Implementations raise ``StoreUnavailableError`` when the underlying
    storage cannot be accessed.
    """

    async def create_measurement(self, modality: Modality, file_format_version: int,
                                 timestamp_ms: int) -> Measurement: ...

    async def load_measurement(self, measurement_id: int) -> Measurement | None: ...

    async def load_measurements(self, status: MeasurementStatus | None = None) -> list[Measurement]: ...

    async def has_measurement(self, status: MeasurementStatus) -> bool: ...

    async def set_status(self, measurement_id: int, status: MeasurementStatus) -> None: ...

    async def update_modality(self, measurement_id: int, modality: Modality) -> None: ...

    async def update_distance(self, measurement_id: int, distance: float) -> None: ...

    async def append_event(self, event: Event) -> None: ...

    async def load_events(self, measurement_id: int, event_type: EventType | None = None,
                          offset: int = 0, limit: int | None = None) -> list[Event]: ...

    async def count_events(self, measurement_id: int) -> int: ...

    async def append_location(self, measurement_id: int, location: GeoLocation) -> None: ...

    async def count_locations(self, measurement_id: int) -> int: ...

    async def load_locations(self, measurement_id: int, offset: int = 0,
                             limit: int | None = None) -> list[GeoLocation]: ...

    async def append_vector_samples(self, measurement_id: int, channel: SensorChannel,
                                    samples: Sequence[VectorSample]) -> None: ...

    async def load_sample_blob(self, measurement_id: int,
                               channel: SensorChannel) -> SampleBlob | None: ...

    async def delete_sample_blobs(self, measurement_id: int) -> None: ...

    async def add_attachment(self, measurement_id: int, attachment_type: AttachmentType,
                             path: Path, file_format_version: int = 1) -> Attachment: ...

    async def load_attachments(self, measurement_id: int,
                               status: AttachmentStatus | None = None) -> list[Attachment]: ...

    async def set_attachment_status(self, attachment_id: int, status: AttachmentStatus) -> None: ...
