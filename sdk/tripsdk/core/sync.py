"""Upload orchestrator — one sync pass over all syncable measurements.

This is the core upload logic. It depends on the MeasurementStore,
Uploader and CredentialProvider protocols, not on concrete implementations.

A pass uploads measurements in SYNCABLE_ATTACHMENTS first (their core file
is already with the collector), then FINISHED ones. Per measurement the
core transfer file goes first, then every SAVED attachment. A transient
failure aborts the whole pass and leaves every status as it was, so the
next pass retries from the same point.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from tripsdk.core.errors import (
    AccountNotActivatedError,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    EntityNotParsableError,
    ErrorCode,
    ForbiddenError,
    FormatMismatchError,
    FormatVersionMismatchError,
    InternalServerError,
    InvalidTransitionError,
    MeasurementTooLargeError,
    NetworkUnavailableError,
    ServerUnavailableError,
    StoreUnavailableError,
    SyncAlreadyRunningError,
    SynchronisationError,
    SynchronizationInterruptedError,
    TooManyRequestsError,
    UnauthorizedError,
    UnexpectedResponseCodeError,
    UploadFailedError,
    UploadSessionExpiredError,
)
from tripsdk.core.models import (
    ATTACHMENT_FILE_FORMAT_VERSION,
    AttachmentStatus,
    AttachmentType,
    MeasurementStatus,
    RequestMetaData,
    SyncReport,
    UploadResult,
)
from tripsdk.core.transfer_file import (
    TRANSFER_FILE_FORMAT_VERSION,
    write_attachment_file,
    write_transfer_file,
)

if TYPE_CHECKING:
    from tripsdk.core.lifecycle import MeasurementStateMachine
    from tripsdk.core.models import Attachment, DeviceInfo, Measurement
    from tripsdk.core.notifications import ErrorNotifier
    from tripsdk.core.stats import SyncStats
    from tripsdk.core.transfer_file import TransferFileBuilder
    from tripsdk.store.base import MeasurementStore
    from tripsdk.upload.base import CredentialProvider, Uploader

log = structlog.get_logger()

# Receives (measurement_id, percent 0..100) while a pass runs.
ProgressListener = Callable[[int, float], None]

# Failed uploads: error code for the notifier and the stats bucket it counts in.
UPLOAD_ERRORS: dict[type[UploadFailedError], tuple[ErrorCode, str]] = {
    ServerUnavailableError: (ErrorCode.SERVER_UNAVAILABLE, "io"),
    ForbiddenError: (ErrorCode.FORBIDDEN, "auth"),
    UnauthorizedError: (ErrorCode.UNAUTHORIZED, "auth"),
    SynchronisationError: (ErrorCode.SYNCHRONIZATION_ERROR, "io"),
    InternalServerError: (ErrorCode.INTERNAL_SERVER_ERROR, "conflict"),
    EntityNotParsableError: (ErrorCode.ENTITY_NOT_PARSABLE, "parse"),
    BadRequestError: (ErrorCode.BAD_REQUEST, "parse"),
    NetworkUnavailableError: (ErrorCode.NETWORK_UNAVAILABLE, "io"),
    SynchronizationInterruptedError: (ErrorCode.SYNCHRONIZATION_INTERRUPTED, "io"),
    TooManyRequestsError: (ErrorCode.TOO_MANY_REQUESTS, "io"),
    UploadSessionExpiredError: (ErrorCode.UPLOAD_SESSION_EXPIRED, "io"),
    UnexpectedResponseCodeError: (ErrorCode.UNEXPECTED_RESPONSE_CODE, "parse"),
    AccountNotActivatedError: (ErrorCode.ACCOUNT_NOT_ACTIVATED, "auth"),
}

_SUPPORTED_ATTACHMENT_TYPES = frozenset(AttachmentType)
_UPLOADABLE = frozenset({MeasurementStatus.FINISHED, MeasurementStatus.SYNCABLE_ATTACHMENTS})


def combined_progress(index: int, total: int, file_index: int, file_count: int,
                      file_progress: float) -> float:
    """Overall pass progress in percent.

    ``index`` of ``total`` measurements, ``file_index`` of ``file_count``
    files of that measurement, ``file_progress`` (0..1) of the current file.
    """
    if total == 0:
        return 100.0
    file_progress = min(max(file_progress, 0.0), 1.0)
    fraction = index / total + (1 / total) * ((file_index + file_progress) / file_count)
    return fraction * 100.0


class UploadOrchestrator:
    """Runs sync passes. At most one pass runs at a time."""

    def __init__(
        self,
        store: MeasurementStore,
        lifecycle: MeasurementStateMachine,
        builder: TransferFileBuilder,
        uploader: Uploader,
        credentials: CredentialProvider,
        notifier: ErrorNotifier,
        stats: SyncStats,
        device: DeviceInfo,
        work_dir: Path,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._builder = builder
        self._uploader = uploader
        self._credentials = credentials
        self._notifier = notifier
        self._stats = stats
        self._device = device
        self._work_dir = Path(work_dir)
        self._lock = asyncio.Lock()
        self._cancelled = False
        self._progress_listeners: list[ProgressListener] = []

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._progress_listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        if listener in self._progress_listeners:
            self._progress_listeners.remove(listener)

    def cancel(self) -> None:
        """Stop the running pass before its next upload."""
        if self.is_running:
            log.info("sync_cancel_requested")
            self._cancelled = True

    async def sync_all(self, wait: bool = False) -> SyncReport:
        """Run one pass. Raises ``SyncAlreadyRunningError`` unless ``wait``."""
        if self._lock.locked() and not wait:
            raise SyncAlreadyRunningError("a sync pass is already running")
        async with self._lock:
            self._cancelled = False
            return await self._run_pass()

    # -- pass ----------------------------------------------------------------

    async def _run_pass(self) -> SyncReport:
        report = SyncReport()
        started_at = time.time()
        self._stats.record_pass_started()

        try:
            measurements = (
                await self._store.load_measurements(MeasurementStatus.SYNCABLE_ATTACHMENTS)
                + await self._store.load_measurements(MeasurementStatus.FINISHED)
            )
        except StoreUnavailableError as e:
            self._abort_on_store_error(e, report)
            return self._finish(report, started_at)

        log.info("sync_pass_started", measurements=len(measurements))
        total = len(measurements)
        for index, measurement in enumerate(measurements):
            if self._cancelled:
                log.info("sync_pass_cancelled", measurement_id=measurement.id)
                report.aborted = True
                break
            try:
                completed = await self._sync_measurement(index, total, measurement, report)
            except (FormatMismatchError, FormatVersionMismatchError) as e:
                self._stats.record_parse_error()
                self._notifier.notify(ErrorCode.FORMAT_MISMATCH, str(e))
                report.failed_format.append(measurement.id)
                continue
            except AuthenticationError as e:
                self._stats.record_auth_error()
                self._notifier.notify(ErrorCode.AUTHENTICATION_ERROR, str(e))
                report.aborted = True
                break
            except StoreUnavailableError as e:
                self._abort_on_store_error(e, report)
                break
            if not completed:
                report.aborted = True
                break

        return self._finish(report, started_at)

    def _abort_on_store_error(self, error: StoreUnavailableError, report: SyncReport) -> None:
        self._stats.record_database_error()
        self._notifier.notify(ErrorCode.DATABASE_ERROR, str(error))
        report.aborted = True

    def _finish(self, report: SyncReport, started_at: float) -> SyncReport:
        self._stats.record_pass_finished(started_at, len(report.synced), len(report.skipped),
                                         aborted=report.aborted)
        report.stats = self._stats.snapshot()
        log.info("sync_pass_finished", synced=report.synced, skipped=report.skipped,
                 failed_format=report.failed_format, aborted=report.aborted)
        return report

    async def _sync_measurement(self, index: int, total: int, measurement: Measurement,
                                report: SyncReport) -> bool:
        """Upload one measurement. Returns ``False`` when the pass must abort."""
        if measurement.file_format_version != self._lifecycle.supported_version:
            raise FormatMismatchError(
                f"measurement {measurement.id} has format version "
                f"{measurement.file_format_version}, expected {self._lifecycle.supported_version}"
            )
        attachments = await self._store.load_attachments(measurement.id)
        for attachment in attachments:
            if attachment.status == AttachmentStatus.SAVED:
                _validate_attachment(attachment)

        meta = await self._meta_data(measurement, attachments)
        file_count = 1 + len(attachments)

        def progress_for(file_index: int) -> Callable[[float], None]:
            def report_progress(p: float) -> None:
                percent = combined_progress(index, total, file_index, file_count, p)
                for listener in list(self._progress_listeners):
                    listener(measurement.id, percent)
            return report_progress

        if measurement.status == MeasurementStatus.FINISHED:
            result = await self._upload(
                measurement.id, "core",
                lambda: write_transfer_file(self._builder, measurement, self._work_dir),
                lambda token, path: self._uploader.upload_core(token, meta, path, progress_for(0)),
            )
            if result is None or result == UploadResult.FAILED:
                return False
            if result == UploadResult.SKIPPED:
                if not await self._advance(measurement.id,
                                           self._lifecycle.mark_skipped(measurement.id)):
                    return True
                report.skipped.append(measurement.id)
                return True
            if not await self._advance(measurement.id,
                                       self._lifecycle.mark_core_uploaded(measurement.id)):
                return True
            self._stats.record_update()

        current = await self._store.load_measurement(measurement.id)
        if current is None or current.status != MeasurementStatus.SYNCABLE_ATTACHMENTS:
            return True

        for file_index, attachment in enumerate(attachments, start=1):
            if attachment.status != AttachmentStatus.SAVED:
                continue
            result = await self._upload(
                measurement.id, f"attachment:{attachment.id}",
                lambda a=attachment: asyncio.to_thread(write_attachment_file, a, self._work_dir),
                lambda token, path, a=attachment, j=file_index: self._uploader.upload_attachment(
                    token, meta, a.id, path, progress_for(j),
                ),
            )
            if result is None or result == UploadResult.FAILED:
                return False
            status = (AttachmentStatus.SKIPPED if result == UploadResult.SKIPPED
                      else AttachmentStatus.SYNCED)
            if not await self._advance(measurement.id, self._lifecycle.mark_attachment(
                    measurement.id, attachment.id, status)):
                return True
            self._stats.record_update()

        if not await self._advance(measurement.id, self._lifecycle.mark_synced(measurement.id)):
            return True
        report.synced.append(measurement.id)
        log.info("measurement_synced", measurement_id=measurement.id,
                 attachments=len(attachments))
        return True

    async def _advance(self, measurement_id: int, transition: Awaitable[None]) -> bool:
        """Apply an upload-driven transition.

        Returns ``False`` when the measurement left the upload path while its
        file was in flight, e.g. because it was deprecated meanwhile.
        """
        try:
            await transition
        except InvalidTransitionError:
            current = await self._store.load_measurement(measurement_id)
            if current is not None and current.status in _UPLOADABLE:
                raise
            log.warning("measurement_left_sync", measurement_id=measurement_id,
                        status=current.status.value if current else None)
            return False
        return True

    async def _upload(
        self,
        measurement_id: int,
        label: str,
        build: Callable[[], Awaitable[Path]],
        send: Callable[[str, Path], Awaitable[UploadResult]],
    ) -> UploadResult | None:
        """Fetch a credential, build the file, send it, always delete it.

        Returns ``None`` when the pass was cancelled before sending.
        """
        if self._cancelled:
            log.info("sync_pass_cancelled", measurement_id=measurement_id, file=label)
            return None
        token = await self._credentials.fresh_token()
        try:
            path = await build()
        except OSError as e:
            raise StoreUnavailableError(f"could not prepare {label} file: {e}") from e
        try:
            size = path.stat().st_size
            try:
                result = await send(token, path)
            except UploadFailedError as e:
                return self._map_upload_error(measurement_id, label, e)
            except AuthenticationError:
                raise
            except Exception as e:
                log.error("upload_failed_unexpectedly", measurement_id=measurement_id,
                          file=label, exc_info=True)
                self._stats.record_io_error()
                self._notifier.notify(ErrorCode.UNKNOWN, f"{type(e).__name__}: {e}")
                return UploadResult.FAILED
            if result == UploadResult.SKIPPED:
                self._stats.record_skipped()
            elif result != UploadResult.FAILED:
                self._stats.record_upload(size)
            log.debug("file_uploaded", measurement_id=measurement_id, file=label,
                      result=result.value, size=size)
            return result
        finally:
            path.unlink(missing_ok=True)

    def _map_upload_error(self, measurement_id: int, label: str,
                          error: UploadFailedError) -> UploadResult:
        if isinstance(error, ConflictError):
            log.info("upload_already_processed", measurement_id=measurement_id, file=label)
            self._stats.record_skipped()
            return UploadResult.SUCCESSFUL
        if isinstance(error, MeasurementTooLargeError):
            log.warning("upload_too_large", measurement_id=measurement_id, file=label)
            self._stats.record_skipped()
            return UploadResult.SKIPPED

        code, bucket = ErrorCode.UNKNOWN, "io"
        for cls in type(error).__mro__:
            if cls in UPLOAD_ERRORS:
                code, bucket = UPLOAD_ERRORS[cls]
                break
        getattr(self._stats, f"record_{bucket}_error")()
        log.warning("upload_failed", measurement_id=measurement_id, file=label,
                    code=code.name, error=str(error))
        self._notifier.notify(code, str(error) or type(error).__name__)
        return UploadResult.FAILED

    async def _meta_data(self, measurement: Measurement,
                         attachments: list[Attachment]) -> RequestMetaData:
        location_count = await self._store.count_locations(measurement.id)
        start = end = None
        if location_count:
            start = (await self._store.load_locations(measurement.id, 0, 1))[0]
            end = (await self._store.load_locations(measurement.id, location_count - 1, 1))[0]
        return RequestMetaData(
            device_id=self._device.device_id,
            measurement_id=measurement.id,
            os_version=self._device.os_version,
            device_type=self._device.device_type,
            app_version=self._device.app_version,
            length_m=measurement.distance,
            location_count=location_count,
            modality=measurement.modality.value,
            format_version=TRANSFER_FILE_FORMAT_VERSION,
            start_location=start,
            end_location=end,
            log_count=sum(1 for a in attachments
                          if a.type in (AttachmentType.CSV, AttachmentType.JSON)),
            image_count=sum(1 for a in attachments if a.type == AttachmentType.JPG),
        )


def _validate_attachment(attachment: Attachment) -> None:
    if attachment.type not in _SUPPORTED_ATTACHMENT_TYPES:
        raise FormatMismatchError(
            f"attachment {attachment.id} has unsupported type {attachment.type}"
        )
    if attachment.file_format_version != ATTACHMENT_FILE_FORMAT_VERSION:
        raise FormatMismatchError(
            f"attachment {attachment.id} has format version {attachment.file_format_version}, "
            f"expected {ATTACHMENT_FILE_FORMAT_VERSION}"
        )

