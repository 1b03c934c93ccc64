"""File-based MeasurementStore implementation.

Stores every measurement in its own directory:
- measurement.json: the measurement row (source of truth for its status)
- events.jsonl / locations.jsonl: append-only JSON Lines
- accelerations.cyfa, rotations.cyfr, directions.cyfd: raw point buffers
- attachments.json: attachment rows

Directory structure: base_dir/measurements/<id>/
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict
from itertools import islice
from pathlib import Path

import structlog

from tripsdk.core import point_buffer
from tripsdk.core.errors import (
    NoSuchAttachmentError,
    NoSuchMeasurementError,
    StoreUnavailableError,
)
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

log = structlog.get_logger()

_SAMPLE_FILE_NAMES = {
    SensorChannel.ACCELERATION: "accelerations",
    SensorChannel.ROTATION: "rotations",
    SensorChannel.DIRECTION: "directions",
}


@contextmanager
def _io_errors(action: str) -> Iterator[None]:
    try:
        yield
    except OSError as e:
        log.error("store_io_failed", action=action, exc_info=True)
        raise StoreUnavailableError(f"{action} failed: {e}") from e


class FileMeasurementStore:
    """MeasurementStore backed by one directory per measurement on disk."""

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir)
        self._last_location_ts: dict[int, int] = {}
        with _io_errors("create store directory"):
            (self._base_dir / "measurements").mkdir(parents=True, exist_ok=True)

    def _measurement_dir(self, measurement_id: int) -> Path:
        return self._base_dir / "measurements" / str(measurement_id)

    def _sample_path(self, measurement_id: int, channel: SensorChannel) -> Path:
        name = f"{_SAMPLE_FILE_NAMES[channel]}.{channel.file_extension}"
        return self._measurement_dir(measurement_id) / name

    def _next_id(self, counter: str) -> int:
        path = self._base_dir / "counters.json"
        counters = json.loads(path.read_text()) if path.exists() else {}
        value = counters.get(counter, 0) + 1
        counters[counter] = value
        path.write_text(json.dumps(counters))
        return value

    # -- measurement rows ------------------------------------------------

    def _read_measurement(self, measurement_id: int) -> dict | None:
        path = self._measurement_dir(measurement_id) / "measurement.json"
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def _write_measurement(self, row: dict) -> None:
        directory = self._measurement_dir(row["id"])
        directory.mkdir(parents=True, exist_ok=True)
        tmp = directory / "measurement.json.tmp"
        tmp.write_text(json.dumps(row, separators=(",", ":")))
        tmp.replace(directory / "measurement.json")

    def _update(self, measurement_id: int, **changes) -> None:
        with _io_errors("update measurement"):
            row = self._read_measurement(measurement_id)
            if row is None:
                raise NoSuchMeasurementError(f"unknown measurement {measurement_id}")
            row.update(changes)
            self._write_measurement(row)

    @staticmethod
    def _to_measurement(row: dict) -> Measurement:
        return Measurement(
            id=row["id"],
            status=MeasurementStatus(row["status"]),
            modality=Modality(row["modality"]),
            file_format_version=row["file_format_version"],
            distance=row.get("distance", 0.0),
            timestamp_ms=row.get("timestamp_ms", 0),
        )

    async def create_measurement(self, modality: Modality, file_format_version: int,
                                 timestamp_ms: int) -> Measurement:
        with _io_errors("create measurement"):
            row = {
                "id": self._next_id("measurement"),
                "status": MeasurementStatus.OPEN.value,
                "modality": modality.value,
                "file_format_version": file_format_version,
                "distance": 0.0,
                "timestamp_ms": timestamp_ms,
            }
            self._write_measurement(row)
        log.debug("measurement_created", measurement_id=row["id"])
        return self._to_measurement(row)

    async def load_measurement(self, measurement_id: int) -> Measurement | None:
        with _io_errors("load measurement"):
            row = self._read_measurement(measurement_id)
        return self._to_measurement(row) if row is not None else None

    async def load_measurements(self, status: MeasurementStatus | None = None) -> list[Measurement]:
        with _io_errors("load measurements"):
            ids = sorted(
                int(p.name) for p in (self._base_dir / "measurements").iterdir()
                if p.is_dir() and p.name.isdigit()
            )
            rows = [self._read_measurement(i) for i in ids]
        measurements = [self._to_measurement(r) for r in rows if r is not None]
        return [m for m in measurements if status is None or m.status == status]

    async def has_measurement(self, status: MeasurementStatus) -> bool:
        return bool(await self.load_measurements(status))

    async def set_status(self, measurement_id: int, status: MeasurementStatus) -> None:
        self._update(measurement_id, status=status.value)

    async def update_modality(self, measurement_id: int, modality: Modality) -> None:
        self._update(measurement_id, modality=modality.value)

    async def update_distance(self, measurement_id: int, distance: float) -> None:
        self._update(measurement_id, distance=distance)

    # -- events and locations (JSON Lines) ---------------------------------

    def _append_line(self, measurement_id: int, name: str, entry: dict) -> None:
        with _io_errors(f"append {name}"):
            directory = self._measurement_dir(measurement_id)
            directory.mkdir(parents=True, exist_ok=True)
            with open(directory / name, "a") as f:
                f.write(json.dumps(entry, separators=(",", ":")) + "\n")

    def _rewrite_lines(self, measurement_id: int, name: str, entries: list[dict]) -> None:
        with _io_errors(f"rewrite {name}"):
            path = self._measurement_dir(measurement_id) / name
            tmp = path.with_name(name + ".tmp")
            with open(tmp, "w") as f:
                for entry in entries:
                    f.write(json.dumps(entry, separators=(",", ":")) + "\n")
            tmp.replace(path)

    def _read_lines(self, measurement_id: int, name: str) -> list[dict]:
        path = self._measurement_dir(measurement_id) / name
        with _io_errors(f"read {name}"):
            if not path.exists():
                return []
            with open(path) as f:
                return [json.loads(line) for line in f if line.strip()]

    async def append_event(self, event: Event) -> None:
        self._append_line(event.measurement_id, "events.jsonl", {
            "ts": event.timestamp_ms,
            "type": event.type.value,
            "value": event.value,
        })

    async def load_events(self, measurement_id: int, event_type: EventType | None = None,
                          offset: int = 0, limit: int | None = None) -> list[Event]:
        events = [
            Event(
                timestamp_ms=e["ts"],
                type=EventType(e["type"]),
                value=e.get("value"),
                measurement_id=measurement_id,
            )
            for e in self._read_lines(measurement_id, "events.jsonl")
        ]
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        end = None if limit is None else offset + limit
        return events[offset:end]

    async def count_events(self, measurement_id: int) -> int:
        return len(self._read_lines(measurement_id, "events.jsonl"))

    async def append_location(self, measurement_id: int, location: GeoLocation) -> None:
        # locations.jsonl is kept in time order so pages can be read with islice.
        last = self._last_location_ts.get(measurement_id)
        if last is None:
            rows = self._read_lines(measurement_id, "locations.jsonl")
            last = rows[-1]["timestamp_ms"] if rows else None
        if last is None or location.timestamp_ms >= last:
            self._append_line(measurement_id, "locations.jsonl", asdict(location))
            self._last_location_ts[measurement_id] = location.timestamp_ms
            return

        rows = self._read_lines(measurement_id, "locations.jsonl")
        rows.append(asdict(location))
        rows.sort(key=lambda r: r["timestamp_ms"])
        self._rewrite_lines(measurement_id, "locations.jsonl", rows)
        self._last_location_ts[measurement_id] = rows[-1]["timestamp_ms"]
        log.debug("location_out_of_order", measurement_id=measurement_id,
                  timestamp_ms=location.timestamp_ms)

    async def count_locations(self, measurement_id: int) -> int:
        path = self._measurement_dir(measurement_id) / "locations.jsonl"
        with _io_errors("count locations.jsonl"):
            if not path.exists():
                return 0
            with open(path) as f:
                return sum(1 for line in f if line.strip())

    async def load_locations(self, measurement_id: int, offset: int = 0,
                             limit: int | None = None) -> list[GeoLocation]:
        path = self._measurement_dir(measurement_id) / "locations.jsonl"
        end = None if limit is None else offset + limit
        with _io_errors("read locations.jsonl"):
            if not path.exists():
                return []
            with open(path) as f:
                lines = (line for line in f if line.strip())
                return [GeoLocation(**json.loads(line)) for line in islice(lines, offset, end)]

    # -- sensor point buffers ----------------------------------------------

    async def append_vector_samples(self, measurement_id: int, channel: SensorChannel,
                                    samples: Sequence[VectorSample]) -> None:
        with _io_errors("append samples"):
            path = self._sample_path(measurement_id, channel)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "ab") as f:
                f.write(point_buffer.encode(samples))

    async def load_sample_blob(self, measurement_id: int,
                               channel: SensorChannel) -> SampleBlob | None:
        path = self._sample_path(measurement_id, channel)
        with _io_errors("stat samples"):
            if not path.exists():
                return None
            size = path.stat().st_size
            row = self._read_measurement(measurement_id)
        if row is None:
            raise NoSuchMeasurementError(f"unknown measurement {measurement_id}")
        return SampleBlob(
            channel=channel,
            size=size,
            # Point files are written in the version of the measurement they belong to.
            file_format_version=row["file_format_version"],
            opener=lambda: open(path, "rb"),
        )

    async def delete_sample_blobs(self, measurement_id: int) -> None:
        with _io_errors("delete samples"):
            for channel in SensorChannel:
                path = self._sample_path(measurement_id, channel)
                if path.exists():
                    path.unlink()
                    log.debug("sample_file_deleted", measurement_id=measurement_id,
                              channel=channel.value)

    # -- attachments -----------------------------------------------------

    def _read_attachments(self, measurement_id: int) -> list[dict]:
        path = self._measurement_dir(measurement_id) / "attachments.json"
        with _io_errors("read attachments"):
            return json.loads(path.read_text()) if path.exists() else []

    def _write_attachments(self, measurement_id: int, rows: list[dict]) -> None:
        with _io_errors("write attachments"):
            directory = self._measurement_dir(measurement_id)
            directory.mkdir(parents=True, exist_ok=True)
            (directory / "attachments.json").write_text(json.dumps(rows))

    @staticmethod
    def _to_attachment(measurement_id: int, row: dict) -> Attachment:
        return Attachment(
            id=row["id"],
            measurement_id=measurement_id,
            type=AttachmentType(row["type"]),
            path=Path(row["path"]),
            status=AttachmentStatus(row["status"]),
            file_format_version=row["file_format_version"],
        )

    async def add_attachment(self, measurement_id: int, attachment_type: AttachmentType,
                             path: Path, file_format_version: int = 1) -> Attachment:
        rows = self._read_attachments(measurement_id)
        with _io_errors("create attachment"):
            attachment_id = self._next_id("attachment")
        row = {
            "id": attachment_id,
            "type": attachment_type.value,
            "path": str(path),
            "status": AttachmentStatus.SAVED.value,
            "file_format_version": file_format_version,
        }
        rows.append(row)
        self._write_attachments(measurement_id, rows)
        return self._to_attachment(measurement_id, row)

    async def load_attachments(self, measurement_id: int,
                               status: AttachmentStatus | None = None) -> list[Attachment]:
        attachments = [
            self._to_attachment(measurement_id, r)
            for r in self._read_attachments(measurement_id)
        ]
        return [a for a in attachments if status is None or a.status == status]

    async def set_attachment_status(self, attachment_id: int, status: AttachmentStatus) -> None:
        for measurement in await self.load_measurements():
            rows = self._read_attachments(measurement.id)
            for row in rows:
                if row["id"] == attachment_id:
                    row["status"] = status.value
                    self._write_attachments(measurement.id, rows)
                    return
        raise NoSuchAttachmentError(f"unknown attachment {attachment_id}")
