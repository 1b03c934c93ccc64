"""Measurement lifecycle — the authoritative status of every measurement.

    OPEN ──pause──▶ PAUSED ──resume──▶ OPEN
    OPEN|PAUSED ──stop──▶ FINISHED
    FINISHED ──core uploaded──▶ SYNCABLE_ATTACHMENTS ──attachments done──▶ SYNCED
    FINISHED ──collector refused──▶ SKIPPED
    any non-terminal ──deprecate──▶ DEPRECATED

At most one measurement is OPEN or PAUSED at any time. Start, stop, pause,
resume and reconnect serialize on one lock. Every transition re-reads the
stored status first; the store, not this object, is the source of truth.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from tripsdk.core.errors import (
    CorruptedMeasurementError,
    DataCapturingError,
    FormatVersionMismatchError,
    InvalidTransitionError,
    NoSuchMeasurementError,
)
from tripsdk.core.models import (
    AttachmentStatus,
    Event,
    EventType,
    MeasurementStatus,
    PERSISTENCE_FILE_FORMAT_VERSION,
)

if TYPE_CHECKING:
    from tripsdk.capture.base import CaptureProcess
    from tripsdk.core.models import Measurement, Modality
    from tripsdk.store.base import MeasurementStore

log = structlog.get_logger()

# How long to wait for the capture process to acknowledge a stop or pause.
STOP_ACK_TIMEOUT_SECONDS = 0.5

_S = MeasurementStatus
_TRANSITIONS: dict[MeasurementStatus, frozenset[MeasurementStatus]] = {
    _S.OPEN: frozenset({_S.PAUSED, _S.FINISHED}),
    _S.PAUSED: frozenset({_S.OPEN, _S.FINISHED}),
    _S.FINISHED: frozenset({_S.SYNCABLE_ATTACHMENTS, _S.SKIPPED, _S.DEPRECATED}),
    _S.SYNCABLE_ATTACHMENTS: frozenset({_S.SYNCED, _S.DEPRECATED}),
    _S.SYNCED: frozenset(),
    _S.SKIPPED: frozenset(),
    _S.DEPRECATED: frozenset(),
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class MeasurementStateMachine:
    """Drives measurements through their lifecycle and the capture process with them."""

    def __init__(
        self,
        store: MeasurementStore,
        capture: CaptureProcess,
        supported_version: int = PERSISTENCE_FILE_FORMAT_VERSION,
        stop_ack_timeout: float = STOP_ACK_TIMEOUT_SECONDS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._capture = capture
        self._supported_version = supported_version
        self._stop_ack_timeout = stop_ack_timeout
        self._clock = clock
        self._lock = asyncio.Lock()
        # Set when a stop or pause begins, cleared when capturing (re)starts.
        self.is_stopping_or_stopped = False

    @property
    def supported_version(self) -> int:
        return self._supported_version

    # -- queries -----------------------------------------------------------

    async def load_current(self) -> Measurement | None:
        """Return the OPEN or PAUSED measurement, if there is one."""
        open_ = await self._store.load_measurements(_S.OPEN)
        paused = await self._store.load_measurements(_S.PAUSED)
        unfinished = open_ + paused
        if len(unfinished) > 1:
            raise CorruptedMeasurementError(
                f"more than one unfinished measurement: {[m.id for m in unfinished]}"
            )
        return unfinished[0] if unfinished else None

    # -- capture lifecycle -------------------------------------------------

    async def start(self, modality: Modality) -> Measurement:
        async with self._lock:
            for status in (_S.OPEN, _S.PAUSED):
                if await self._store.has_measurement(status):
                    raise CorruptedMeasurementError(f"there is a dead {status.value} measurement")

            timestamp = self._clock()
            measurement = await self._store.create_measurement(
                modality, self._supported_version, timestamp,
            )
            await self._log_event(measurement.id, EventType.LIFECYCLE_START, timestamp)
            await self._log_event(measurement.id, EventType.MODALITY_TYPE_CHANGE, timestamp,
                                  value=modality.value)
            self.is_stopping_or_stopped = False

            await self._start_capture(measurement.id)
            log.info("measurement_started", measurement_id=measurement.id,
                     modality=modality.value)
            return measurement

    async def stop(self) -> Measurement | None:
        """Finish the current measurement.

        Returns the finished measurement, or ``None`` when reconciliation
        found nothing left to finish.
        """
        async with self._lock:
            current = await self.load_current()
            if current is None:
                raise NoSuchMeasurementError("no open or paused measurement to stop")
            self.is_stopping_or_stopped = True
            await self._log_event(current.id, EventType.LIFECYCLE_STOP)

            if await self._stop_capture(current.id):
                await self._transition(current.id, _S.FINISHED)
                log.info("measurement_stopped", measurement_id=current.id)
                return await self._store.load_measurement(current.id)
            return await self._reconcile_stop(current.id)

    async def pause(self) -> Measurement:
        async with self._lock:
            current = await self.load_current()
            if current is None:
                raise NoSuchMeasurementError("no open or paused measurement to pause")
            self.is_stopping_or_stopped = True
            await self._log_event(current.id, EventType.LIFECYCLE_PAUSE)

            if await self._stop_capture(current.id):
                if current.status == _S.OPEN:
                    await self._transition(current.id, _S.PAUSED)
                log.info("measurement_paused", measurement_id=current.id)
            else:
                await self._reconcile_pause(current.id)
            return await self._store.load_measurement(current.id)

    async def resume(self) -> Measurement | None:
        """Resume the PAUSED measurement. Without one this is a logged no-op."""
        async with self._lock:
            paused = await self._store.load_measurements(_S.PAUSED)
            if not paused:
                log.warning("resume_ignored", reason="no_paused_measurement")
                return None
            measurement = paused[0]
            if measurement.file_format_version != self._supported_version:
                raise FormatVersionMismatchError(
                    f"paused measurement {measurement.id} has format version "
                    f"{measurement.file_format_version}, expected {self._supported_version}"
                )
            if await self._capture.is_running():
                log.warning("resume_ignored", reason="capture_already_running",
                            measurement_id=measurement.id)
                return None

            await self._log_event(measurement.id, EventType.LIFECYCLE_RESUME)
            self.is_stopping_or_stopped = False
            await self._start_capture(measurement.id)
            await self._transition(measurement.id, _S.OPEN)
            log.info("measurement_resumed", measurement_id=measurement.id)
            return await self._store.load_measurement(measurement.id)

    async def change_modality(self, modality: Modality) -> bool:
        """Record a modality switch of the current measurement.

        Returns ``True`` when an event was recorded.
        """
        async with self._lock:
            current = await self.load_current()
            if current is None:
                log.debug("modality_change_ignored", reason="no_unfinished_measurement")
                return False

            changes = await self._store.load_events(current.id, EventType.MODALITY_TYPE_CHANGE)
            if changes and changes[-1].value == modality.value:
                log.debug("modality_change_ignored", reason="unchanged",
                          measurement_id=current.id, modality=modality.value)
                return False

            await self._log_event(current.id, EventType.MODALITY_TYPE_CHANGE,
                                  value=modality.value)
            await self._store.update_modality(current.id, modality)
            log.info("modality_changed", measurement_id=current.id, modality=modality.value)
            return True

    async def reconnect(self, timeout: float | None = None) -> bool:
        """Rebind to a running capture process.

        Returns ``False`` while a stop or pause is in progress, or when no
        capture is running.
        """
        async with self._lock:
            if self.is_stopping_or_stopped:
                log.warning("reconnect_ignored", reason="stopping_or_stopped")
                return False
            try:
                running = await asyncio.wait_for(
                    self._capture.is_running(), timeout or self._stop_ack_timeout,
                )
            except asyncio.TimeoutError:
                log.warning("reconnect_timed_out")
                return False
            log.debug("reconnected", capture_running=running)
            return running

    # -- deprecation -------------------------------------------------------

    async def initialize(self) -> list[int]:
        """Deprecate every measurement written in an older format version.

        Returns the ids of the measurements deprecated by this call.
        """
        async with self._lock:
            deprecated = []
            for measurement in await self._store.load_measurements():
                version = measurement.file_format_version
                if version > self._supported_version:
                    raise ValueError(
                        f"measurement {measurement.id} has format version {version}, "
                        f"newer than supported {self._supported_version}"
                    )
                if version < self._supported_version and not measurement.status.is_terminal:
                    await self._deprecate(measurement.id)
                    deprecated.append(measurement.id)
            if deprecated:
                log.info("measurements_deprecated", ids=deprecated,
                         supported_version=self._supported_version)
            return deprecated

    async def mark_deprecated(self, measurement_id: int) -> None:
        async with self._lock:
            await self._deprecate(measurement_id)

    async def _deprecate(self, measurement_id: int) -> None:
        measurement = await self._require(measurement_id)
        if measurement.status.is_terminal:
            raise InvalidTransitionError(
                f"measurement {measurement_id} is {measurement.status.value}, cannot deprecate"
            )
        if measurement.status.is_active:
            await self._transition(measurement_id, _S.FINISHED)
        await self._transition(measurement_id, _S.DEPRECATED)
        await self._store.delete_sample_blobs(measurement_id)
        await self._skip_saved_attachments(measurement_id)
        log.info("measurement_deprecated", measurement_id=measurement_id,
                 format_version=measurement.file_format_version)

    # -- upload-driven transitions -------------------------------------------

    async def mark_core_uploaded(self, measurement_id: int) -> None:
        async with self._lock:
            await self._transition(measurement_id, _S.SYNCABLE_ATTACHMENTS, expected=_S.FINISHED)

    async def mark_skipped(self, measurement_id: int) -> None:
        async with self._lock:
            await self._transition(measurement_id, _S.SKIPPED, expected=_S.FINISHED)
            await self._skip_saved_attachments(measurement_id)

    async def mark_synced(self, measurement_id: int) -> None:
        async with self._lock:
            await self._transition(measurement_id, _S.SYNCED, expected=_S.SYNCABLE_ATTACHMENTS)

    async def mark_attachment(self, measurement_id: int, attachment_id: int,
                              status: AttachmentStatus) -> None:
        if status == AttachmentStatus.SAVED:
            raise InvalidTransitionError("attachments cannot be moved back to SAVED")
        async with self._lock:
            saved = await self._store.load_attachments(measurement_id, AttachmentStatus.SAVED)
            if not any(a.id == attachment_id for a in saved):
                raise InvalidTransitionError(
                    f"attachment {attachment_id} of measurement {measurement_id} is not SAVED"
                )
            await self._store.set_attachment_status(attachment_id, status)
        log.debug("attachment_marked", measurement_id=measurement_id,
                  attachment_id=attachment_id, status=status.value)

    # -- helpers -----------------------------------------------------------

    async def _require(self, measurement_id: int) -> Measurement:
        measurement = await self._store.load_measurement(measurement_id)
        if measurement is None:
            raise NoSuchMeasurementError(f"unknown measurement {measurement_id}")
        return measurement

    async def _transition(self, measurement_id: int, target: MeasurementStatus,
                          expected: MeasurementStatus | None = None) -> None:
        current = (await self._require(measurement_id)).status
        if (expected is not None and current != expected) or target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"measurement {measurement_id}: {current.value} -> {target.value} not allowed"
            )
        await self._store.set_status(measurement_id, target)
        if current == _S.FINISHED:
            # Sensor data is only needed until the core file went out.
            await self._store.delete_sample_blobs(measurement_id)
        log.debug("measurement_status_changed", measurement_id=measurement_id,
                  previous=current.value, status=target.value)

    async def _skip_saved_attachments(self, measurement_id: int) -> None:
        for attachment in await self._store.load_attachments(measurement_id, AttachmentStatus.SAVED):
            await self._store.set_attachment_status(attachment.id, AttachmentStatus.SKIPPED)

    async def _log_event(self, measurement_id: int, event_type: EventType,
                         timestamp: int | None = None, value: str | None = None) -> None:
        await self._store.append_event(Event(
            timestamp_ms=self._clock() if timestamp is None else timestamp,
            type=event_type,
            value=value,
            measurement_id=measurement_id,
        ))

    async def _start_capture(self, measurement_id: int) -> None:
        """Start capturing; on failure the measurement is closed as FINISHED."""
        try:
            started = await self._capture.start_capture(measurement_id)
            cause = None
        except Exception as e:
            started, cause = False, e
        if started:
            return
        log.error("capture_start_failed", measurement_id=measurement_id,
                  error=repr(cause) if cause else None)
        await self._transition(measurement_id, _S.FINISHED)
        raise DataCapturingError(
            f"capture for measurement {measurement_id} could not be started"
        ) from cause

    async def _stop_capture(self, measurement_id: int) -> bool:
        try:
            return await asyncio.wait_for(self._capture.stop_capture(), self._stop_ack_timeout)
        except asyncio.TimeoutError:
            log.warning("capture_stop_timed_out", measurement_id=measurement_id,
                        timeout_s=self._stop_ack_timeout)
        except Exception:
            log.error("capture_stop_failed", measurement_id=measurement_id, exc_info=True)
        return False

    async def _capture_still_running(self) -> bool:
        try:
            return await asyncio.wait_for(self._capture.is_running(), self._stop_ack_timeout)
        except asyncio.TimeoutError:
            # No answer means no running capture.
            return False

    async def _reconcile_stop(self, measurement_id: int) -> Measurement | None:
        if await self._capture_still_running():
            raise DataCapturingError("capture is still running after a failed stop")
        current = await self.load_current()
        if current is None:
            log.warning("stop_reconciled", outcome="nothing_to_finish",
                        measurement_id=measurement_id)
            return None
        if current.status == _S.OPEN:
            # The capture process probably died at some point.
            log.warning("stop_reconciled", outcome="open_not_running_finished",
                        measurement_id=current.id)
        await self._transition(current.id, _S.FINISHED)
        return await self._store.load_measurement(current.id)

    async def _reconcile_pause(self, measurement_id: int) -> None:
        if await self._capture_still_running():
            raise DataCapturingError("capture is still running after a failed pause")
        current = await self.load_current()
        if current is None:
            raise NoSuchMeasurementError(
                f"measurement {measurement_id} vanished while pausing"
            )
        if current.status == _S.OPEN:
            log.warning("pause_reconciled", outcome="open_not_running_paused",
                        measurement_id=current.id)
            await self._transition(current.id, _S.PAUSED)
        else:
            log.debug("pause_reconciled", outcome="already_paused", measurement_id=current.id)
