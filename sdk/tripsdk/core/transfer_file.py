"""Transfer file builder and reader.

A transfer file is what gets uploaded for the core data of one measurement:

    [2-byte big-endian transfer format version][raw DEFLATE(msgpack body)]

The body is a msgpack map with the keys ``format_version``, ``events``,
``location_records`` and, when present, ``accelerations_binary``,
``rotations_binary`` and ``directions_binary`` (raw point buffers). Only
the body is compressed. Attachments are uploaded as their raw bytes.

Events and locations are read from the store page by page and sensor blobs
are copied into the compressor in chunks, so a long trip never has to be
held in memory as a whole.
"""

from __future__ import annotations

import shutil
import struct
import tempfile
import zlib
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, TYPE_CHECKING

import msgpack
import structlog

from tripsdk.core import point_buffer
from tripsdk.core.errors import CorruptBufferError, FormatVersionMismatchError
from tripsdk.core.models import (
    Event,
    EventType,
    GeoLocation,
    PERSISTENCE_FILE_FORMAT_VERSION,
    SensorChannel,
    VectorSample,
)
from tripsdk.core.offset import LocationRecords, decode_location_records

if TYPE_CHECKING:
    from tripsdk.core.models import Attachment, Measurement
    from tripsdk.store.base import MeasurementStore

log = structlog.get_logger()

TRANSFER_FILE_FORMAT_VERSION = 3
COMPRESSION_LEVEL = 5
QUERY_LIMIT = 10_000
CHUNK_SIZE = 64 * 1024

CORE_FILE_PREFIX = "compressedTransferFile"
ATTACHMENT_FILE_PREFIX = "transferFile"
TEMP_FILE_SUFFIX = ".tmp"

_HEADER = struct.Struct(">H")
# msgpack bin 32 header, written by hand so blobs can be streamed after it
_BIN32_HEADER = struct.Struct(">BI")

BLOB_KEYS = {
    SensorChannel.ACCELERATION: "accelerations_binary",
    SensorChannel.ROTATION: "rotations_binary",
    SensorChannel.DIRECTION: "directions_binary",
}


class _Deflater:
    """Writes raw DEFLATE (no zlib header or trailer) into a binary file."""

    def __init__(self, out: BinaryIO, level: int) -> None:
        self._out = out
        self._compressor = zlib.compressobj(level, zlib.DEFLATED, -15)
        self.bytes_in = 0

    def write(self, data: bytes) -> None:
        self.bytes_in += len(data)
        self._out.write(self._compressor.compress(data))

    def finish(self) -> None:
        self._out.write(self._compressor.flush())


class TransferFileBuilder:
    """Serializes one measurement into a transfer file."""

    def __init__(
        self,
        store: MeasurementStore,
        supported_version: int = PERSISTENCE_FILE_FORMAT_VERSION,
        query_limit: int = QUERY_LIMIT,
        compression_level: int = COMPRESSION_LEVEL,
    ) -> None:
        self._store = store
        self._supported_version = supported_version
        self._query_limit = query_limit
        self._compression_level = compression_level

    async def write(self, measurement: Measurement, out: BinaryIO) -> int:
        """Write the transfer file of ``measurement`` to ``out``.

        Returns the number of uncompressed body bytes written.
        """
        if measurement.file_format_version != self._supported_version:
            raise FormatVersionMismatchError(
                f"measurement {measurement.id} has format version "
                f"{measurement.file_format_version}, expected {self._supported_version}"
            )

        blobs = []
        for channel, key in BLOB_KEYS.items():
            blob = await self._store.load_sample_blob(measurement.id, channel)
            if blob is None:
                continue
            if blob.file_format_version != self._supported_version:
                raise FormatVersionMismatchError(
                    f"{channel.value} samples of measurement {measurement.id} have format "
                    f"version {blob.file_format_version}, expected {self._supported_version}"
                )
            blobs.append((key, blob))

        out.write(_HEADER.pack(TRANSFER_FILE_FORMAT_VERSION))
        deflater = _Deflater(out, self._compression_level)
        packer = msgpack.Packer()

        deflater.write(packer.pack_map_header(3 + len(blobs)))
        deflater.write(packer.pack("format_version"))
        deflater.write(packer.pack(TRANSFER_FILE_FORMAT_VERSION))

        events = await self._load_all_events(measurement.id)
        deflater.write(packer.pack("events"))
        deflater.write(packer.pack_array_header(len(events)))
        for event in events:
            deflater.write(packer.pack({
                "timestamp": event.timestamp_ms,
                "type": event.type.value,
                "value": event.value,
            }))

        records = await self._location_records(measurement.id)
        deflater.write(packer.pack("location_records"))
        deflater.write(packer.pack(records.as_dict()))

        for key, blob in blobs:
            deflater.write(packer.pack(key))
            deflater.write(_BIN32_HEADER.pack(0xC6, blob.size))
            copied = 0
            with blob.open() as stream:
                while chunk := stream.read(CHUNK_SIZE):
                    deflater.write(chunk)
                    copied += len(chunk)
            if copied != blob.size:
                raise CorruptBufferError(
                    f"{key} of measurement {measurement.id} changed while copying: "
                    f"expected {blob.size} bytes, read {copied}"
                )

        deflater.finish()
        log.debug("transfer_file_written", measurement_id=measurement.id,
                  events=len(events), locations=len(records),
                  blobs=[key for key, _ in blobs], body_bytes=deflater.bytes_in)
        return deflater.bytes_in

    async def _load_all_events(self, measurement_id: int) -> list[Event]:
        # Events are few (lifecycle + modality changes), so one list is fine.
        events: list[Event] = []
        offset = 0
        while True:
            page = await self._store.load_events(measurement_id, offset=offset,
                                                 limit=self._query_limit)
            events.extend(page)
            if len(page) < self._query_limit:
                return events
            offset += len(page)

    async def _location_records(self, measurement_id: int) -> LocationRecords:
        records = LocationRecords()
        total = await self._store.count_locations(measurement_id)
        for offset in range(0, total, self._query_limit):
            records.extend(await self._store.load_locations(
                measurement_id, offset=offset, limit=self._query_limit,
            ))
        return records


async def write_transfer_file(builder: TransferFileBuilder, measurement: Measurement,
                              directory: Path) -> Path:
    """Build the transfer file of ``measurement`` into a new temp file.

    The caller owns the returned file and must delete it after the upload.
    """
    directory.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(prefix=CORE_FILE_PREFIX, suffix=TEMP_FILE_SUFFIX,
                                     dir=directory, delete=False) as f:
        path = Path(f.name)
        try:
            await builder.write(measurement, f)
        except BaseException:
            f.close()
            path.unlink(missing_ok=True)
            raise
    return path


def write_attachment_file(attachment: Attachment, directory: Path) -> Path:
    """Copy the attachment's bytes unchanged into a new temp file."""
    directory.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(prefix=ATTACHMENT_FILE_PREFIX, suffix=TEMP_FILE_SUFFIX,
                                     dir=directory, delete=False) as f:
        path = Path(f.name)
        try:
            with open(attachment.path, "rb") as src:
                shutil.copyfileobj(src, f, CHUNK_SIZE)
        except BaseException:
            f.close()
            path.unlink(missing_ok=True)
            raise
    return path


# -- Reading ---------------------------------------------------------------

@dataclass
class TransferFileContents:
    """A parsed transfer file with locations restored to absolute values."""
    transfer_format_version: int
    format_version: int
    events: list[Event] = field(default_factory=list)
    locations: list[GeoLocation] = field(default_factory=list)
    blobs: dict[SensorChannel, bytes] = field(default_factory=dict)

    def samples(self, channel: SensorChannel) -> Iterator[VectorSample]:
        return point_buffer.iter_decode(self.blobs.get(channel, b""))


def read_transfer_file(source: Path | bytes) -> TransferFileContents:
    data = source if isinstance(source, bytes) else Path(source).read_bytes()
    if len(data) < _HEADER.size:
        raise CorruptBufferError("transfer file is shorter than its header")
    (version,) = _HEADER.unpack_from(data)
    if version != TRANSFER_FILE_FORMAT_VERSION:
        raise FormatVersionMismatchError(
            f"transfer file version {version}, expected {TRANSFER_FILE_FORMAT_VERSION}"
        )
    try:
        body = zlib.decompress(data[_HEADER.size:], -15)
        message = msgpack.unpackb(body, raw=False)
    except (zlib.error, ValueError) as e:
        raise CorruptBufferError(f"transfer file body is unreadable: {e}") from e

    contents = TransferFileContents(
        transfer_format_version=version,
        format_version=message["format_version"],
        events=[
            Event(timestamp_ms=e["timestamp"], type=EventType(e["type"]), value=e.get("value"))
            for e in message.get("events", [])
        ],
        locations=decode_location_records(message.get("location_records", {})),
    )
    for channel, key in BLOB_KEYS.items():
        if key in message:
            contents.blobs[channel] = message[key]
    return contents
