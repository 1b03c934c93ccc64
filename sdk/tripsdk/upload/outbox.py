"""Outbox uploader: hands files to a collector by dropping them in a directory.

Layout: base_dir/<device_id>/<measurement_id>/
- core.ccyf + core.json (request meta data)
- attachment-<id>.bin + attachment-<id>.json

A file that is already in the outbox is reported as a conflict, the same
way a collector answers for a file it has already processed.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from tripsdk.core.errors import (
    AuthenticationError,
    ConflictError,
    MeasurementTooLargeError,
    SynchronisationError,
)
from tripsdk.core.models import UploadResult

if TYPE_CHECKING:
    from tripsdk.core.models import RequestMetaData
    from tripsdk.upload.base import ProgressCallback

log = structlog.get_logger()

CHUNK_SIZE = 64 * 1024


class OutboxUploader:
    """Uploader that copies files into a local outbox directory."""

    def __init__(self, base_dir: str | Path, max_file_size: int = 0) -> None:
        self._base_dir = Path(base_dir)
        self._max_file_size = max_file_size  # 0 = unlimited

    async def upload_core(self, token: str, meta: RequestMetaData, path: Path,
                          progress: ProgressCallback) -> UploadResult:
        return self._deliver(token, meta, path, "core.ccyf", "core.json", progress)

    async def upload_attachment(self, token: str, meta: RequestMetaData, attachment_id: int,
                                path: Path, progress: ProgressCallback) -> UploadResult:
        return self._deliver(token, meta, path, f"attachment-{attachment_id}.bin",
                             f"attachment-{attachment_id}.json", progress)

    def _deliver(self, token: str, meta: RequestMetaData, path: Path, name: str,
                 meta_name: str, progress: ProgressCallback) -> UploadResult:
        if not token:
            raise AuthenticationError("empty access token")
        size = path.stat().st_size
        if self._max_file_size and size > self._max_file_size:
            raise MeasurementTooLargeError(
                f"{name} of measurement {meta.measurement_id} is {size} bytes, "
                f"limit is {self._max_file_size}"
            )

        target_dir = self._base_dir / meta.device_id / str(meta.measurement_id)
        target = target_dir / name
        if target.exists():
            raise ConflictError(f"{target} was already delivered")

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(target.suffix + ".part")
            copied = 0
            progress(0.0)
            with open(path, "rb") as src, open(tmp, "wb") as dst:
                while chunk := src.read(CHUNK_SIZE):
                    dst.write(chunk)
                    copied += len(chunk)
                    progress(copied / size if size else 1.0)
            (target_dir / meta_name).write_text(json.dumps(asdict(meta), indent=2))
            tmp.replace(target)
        except OSError as e:
            raise SynchronisationError(f"could not deliver {name}: {e}") from e
        progress(1.0)

        log.info("file_delivered", measurement_id=meta.measurement_id, file=name, size=size)
        return UploadResult.SUCCESSFUL
