"""tripsdk — core internal data models.

These are plain dataclasses and enums with no framework dependencies.
The local store, the transfer file and the API convert to/from these at
their boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

# Format of the sensor point files and measurement rows written on the device.
PERSISTENCE_FILE_FORMAT_VERSION = 3

# Format of the (uncompressed) attachment files uploaded as-is.
ATTACHMENT_FILE_FORMAT_VERSION = 1


class MeasurementStatus(str, Enum):
    OPEN = "OPEN"
    PAUSED = "PAUSED"
    FINISHED = "FINISHED"
    SYNCABLE_ATTACHMENTS = "SYNCABLE_ATTACHMENTS"
    SYNCED = "SYNCED"
    SKIPPED = "SKIPPED"
    DEPRECATED = "DEPRECATED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """OPEN or PAUSED, i.e. the measurement is the current trip."""
        return self in (MeasurementStatus.OPEN, MeasurementStatus.PAUSED)


TERMINAL_STATUSES = frozenset({
    MeasurementStatus.SYNCED,
    MeasurementStatus.SKIPPED,
    MeasurementStatus.DEPRECATED,
})


class EventType(str, Enum):
    LIFECYCLE_START = "LIFECYCLE_START"
    LIFECYCLE_STOP = "LIFECYCLE_STOP"
    LIFECYCLE_PAUSE = "LIFECYCLE_PAUSE"
    LIFECYCLE_RESUME = "LIFECYCLE_RESUME"
    MODALITY_TYPE_CHANGE = "MODALITY_TYPE_CHANGE"


class Modality(str, Enum):
    UNKNOWN = "UNKNOWN"
    BICYCLE = "BICYCLE"
    CAR = "CAR"
    MOTORBIKE = "MOTORBIKE"
    BUS = "BUS"
    TRAIN = "TRAIN"
    WALKING = "WALKING"


class SensorChannel(str, Enum):
    ACCELERATION = "ACCELERATION"
    ROTATION = "ROTATION"
    DIRECTION = "DIRECTION"

    @property
    def file_extension(self) -> str:
        return _CHANNEL_EXTENSIONS[self]


_CHANNEL_EXTENSIONS = {
    SensorChannel.ACCELERATION: "cyfa",
    SensorChannel.ROTATION: "cyfr",
    SensorChannel.DIRECTION: "cyfd",
}


class AttachmentType(str, Enum):
    CSV = "CSV"
    JSON = "JSON"
    JPG = "JPG"


class AttachmentStatus(str, Enum):
    SAVED = "SAVED"
    SYNCED = "SYNCED"
    SKIPPED = "SKIPPED"


class UploadResult(str, Enum):
    SUCCESSFUL = "SUCCESSFUL"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass
class Measurement:
    id: int
    status: MeasurementStatus
    modality: Modality
    file_format_version: int = PERSISTENCE_FILE_FORMAT_VERSION
    distance: float = 0.0
    timestamp_ms: int = 0


@dataclass(frozen=True)
class Event:
    timestamp_ms: int
    type: EventType
    value: str | None = None
    measurement_id: int = 0


@dataclass(frozen=True)
class GeoLocation:
    timestamp_ms: int
    latitude: float
    longitude: float
    speed_mps: float
    accuracy_cm: float | None = None


@dataclass(frozen=True)
class VectorSample:
    timestamp_ms: int
    x: float
    y: float
    z: float


@dataclass
class Attachment:
    id: int
    measurement_id: int
    type: AttachmentType
    path: Path
    status: AttachmentStatus = AttachmentStatus.SAVED
    file_format_version: int = ATTACHMENT_FILE_FORMAT_VERSION


@dataclass(frozen=True)
class DeviceInfo:
    """Identifies the installation that recorded the data."""
    device_id: str
    os_version: str
    device_type: str
    app_version: str


@dataclass(frozen=True)
class RequestMetaData:
    """Meta data sent alongside every uploaded file."""
    device_id: str
    measurement_id: int
    os_version: str
    device_type: str
    app_version: str
    length_m: float
    location_count: int
    modality: str
    format_version: int
    start_location: GeoLocation | None = None
    end_location: GeoLocation | None = None
    log_count: int = 0
    image_count: int = 0
    video_count: int = 0

    @property
    def attachment_count(self) -> int:
        return self.log_count + self.image_count + self.video_count


@dataclass
class SyncReport:
    """Outcome of one sync pass."""
    synced: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed_format: list[int] = field(default_factory=list)
    aborted: bool = False
    stats: dict = field(default_factory=dict)
