"""Tests for the upload orchestrator."""

from __future__ import annotations

import asyncio

import pytest

from tripsdk.core.errors import (
    BadRequestError,
    ConflictError,
    ErrorCode,
    ForbiddenError,
    InternalServerError,
    MeasurementTooLargeError,
    NetworkUnavailableError,
    ServerUnavailableError,
    StoreUnavailableError,
    SyncAlreadyRunningError,
    UploadFailedError,
)
from tripsdk.core.models import (
    AttachmentStatus,
    AttachmentType,
    MeasurementStatus,
    SensorChannel,
    UploadResult,
    VectorSample,
)
from tripsdk.core.sync import combined_progress
from tripsdk.core.transfer_file import read_transfer_file


async def _status(store, measurement_id):
    return (await store.load_measurement(measurement_id)).status


@pytest.fixture
def attachment_file(tmp_path):
    path = tmp_path / "trip-log.csv"
    path.write_text("timestamp,message\n1000,started\n")
    return path


# -- happy paths ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_finished_measurement_without_attachments_is_synced(
        orchestrator, store, uploader, make_measurement):
    measurement = await make_measurement()

    report = await orchestrator.sync_all()

    assert report.synced == [measurement.id]
    assert not report.aborted
    assert uploader.calls == [("core", measurement.id)]
    assert await _status(store, measurement.id) == MeasurementStatus.SYNCED
    contents = read_transfer_file(uploader.received[("core", measurement.id)])
    assert len(contents.locations) == 3


@pytest.mark.asyncio
async def test_core_success_goes_through_syncable_attachments(
        orchestrator, store, uploader, make_measurement, attachment_file):
    measurement = await make_measurement()
    attachment = await store.add_attachment(measurement.id, AttachmentType.CSV, attachment_file)
    seen = []

    async def status_now():
        seen.append(await _status(store, measurement.id))

    uploader.on_upload = lambda kind, key: seen.append(kind)
    original = orchestrator._lifecycle.mark_core_uploaded

    async def spy(measurement_id):
        await original(measurement_id)
        await status_now()
    orchestrator._lifecycle.mark_core_uploaded = spy

    await orchestrator.sync_all()

    assert seen == ["core", MeasurementStatus.SYNCABLE_ATTACHMENTS, "attachment"]
    assert await _status(store, measurement.id) == MeasurementStatus.SYNCED
    assert uploader.received[("attachment", attachment.id)] == attachment_file.read_bytes()
    (stored,) = await store.load_attachments(measurement.id)
    assert stored.status == AttachmentStatus.SYNCED


@pytest.mark.asyncio
async def test_syncable_attachments_uploaded_first(
        orchestrator, store, uploader, make_measurement, attachment_file):
    finished = await make_measurement()
    syncable = await make_measurement(status=MeasurementStatus.SYNCABLE_ATTACHMENTS)
    attachment = await store.add_attachment(syncable.id, AttachmentType.CSV, attachment_file)

    report = await orchestrator.sync_all()

    assert uploader.calls == [("attachment", attachment.id), ("core", finished.id)]
    assert report.synced == [syncable.id, finished.id]


@pytest.mark.asyncio
async def test_fresh_credential_before_every_upload(
        orchestrator, store, uploader, credentials, make_measurement, attachment_file):
    measurement = await make_measurement()
    await store.add_attachment(measurement.id, AttachmentType.CSV, attachment_file)
    await store.add_attachment(measurement.id, AttachmentType.JSON, attachment_file)

    await orchestrator.sync_all()

    assert credentials.calls == 3
    assert uploader.tokens == ["token-1#1", "token-1#2", "token-1#3"]


@pytest.mark.asyncio
async def test_temp_files_always_deleted(orchestrator, uploader, make_measurement):
    await make_measurement()
    second = await make_measurement()
    uploader.core[second.id] = ServerUnavailableError("down")

    await orchestrator.sync_all()

    assert len(uploader.paths) == 2
    assert not any(p.exists() for p in uploader.paths)


# -- abort / skip semantics ------------------------------------------------------

@pytest.mark.asyncio
async def test_second_core_failure_aborts_after_first_success(
        orchestrator, store, uploader, make_measurement):
    m1 = await make_measurement()
    m2 = await make_measurement()
    m3 = await make_measurement()
    uploader.core[m2.id] = NetworkUnavailableError("offline")

    report = await orchestrator.sync_all()

    assert report.aborted
    assert report.synced == [m1.id]
    assert await _status(store, m1.id) == MeasurementStatus.SYNCED
    assert await _status(store, m2.id) == MeasurementStatus.FINISHED
    assert await _status(store, m3.id) == MeasurementStatus.FINISHED
    assert ("core", m3.id) not in uploader.calls


@pytest.mark.asyncio
async def test_attachment_failure_keeps_syncable_attachments(
        orchestrator, store, uploader, make_measurement, attachment_file):
    measurement = await make_measurement()
    first = await store.add_attachment(measurement.id, AttachmentType.CSV, attachment_file)
    second = await store.add_attachment(measurement.id, AttachmentType.JPG, attachment_file)
    uploader.attachments[second.id] = ServerUnavailableError("down")

    report = await orchestrator.sync_all()

    assert report.aborted
    assert await _status(store, measurement.id) == MeasurementStatus.SYNCABLE_ATTACHMENTS
    statuses = {a.id: a.status for a in await store.load_attachments(measurement.id)}
    assert statuses == {first.id: AttachmentStatus.SYNCED, second.id: AttachmentStatus.SAVED}

    # The next pass only sends what is still missing.
    uploader.attachments.clear()
    uploader.calls.clear()
    await orchestrator.sync_all()
    assert uploader.calls == [("attachment", second.id)]
    assert await _status(store, measurement.id) == MeasurementStatus.SYNCED


@pytest.mark.asyncio
async def test_too_large_measurement_is_skipped(
        orchestrator, store, uploader, stats, notifications, make_measurement):
    measurement = await make_measurement()
    other = await make_measurement()
    uploader.core[measurement.id] = MeasurementTooLargeError("413")

    report = await orchestrator.sync_all()

    assert report.skipped == [measurement.id]
    assert report.synced == [other.id]
    assert not report.aborted
    assert await _status(store, measurement.id) == MeasurementStatus.SKIPPED
    assert notifications == []
    assert stats.snapshot()["num_skipped_entries"] == 1


@pytest.mark.asyncio
async def test_conflict_counts_as_success(orchestrator, store, uploader, notifications,
                                          make_measurement):
    measurement = await make_measurement()
    uploader.core[measurement.id] = ConflictError("already there")

    report = await orchestrator.sync_all()

    assert report.synced == [measurement.id]
    assert await _status(store, measurement.id) == MeasurementStatus.SYNCED
    assert notifications == []


@pytest.mark.asyncio
async def test_uploader_may_answer_skipped_directly(orchestrator, store, uploader,
                                                    make_measurement, attachment_file):
    measurement = await make_measurement(status=MeasurementStatus.SYNCABLE_ATTACHMENTS)
    attachment = await store.add_attachment(measurement.id, AttachmentType.JPG, attachment_file)
    uploader.attachments[attachment.id] = UploadResult.SKIPPED

    await orchestrator.sync_all()

    (stored,) = await store.load_attachments(measurement.id)
    assert stored.status == AttachmentStatus.SKIPPED
    assert await _status(store, measurement.id) == MeasurementStatus.SYNCED


@pytest.mark.asyncio
@pytest.mark.parametrize("error, code, counter", [
    (ServerUnavailableError("503"), ErrorCode.SERVER_UNAVAILABLE, "num_io_exceptions"),
    (ForbiddenError("403"), ErrorCode.FORBIDDEN, "num_auth_exceptions"),
    (BadRequestError("400"), ErrorCode.BAD_REQUEST, "num_parse_exceptions"),
    (InternalServerError("500"), ErrorCode.INTERNAL_SERVER_ERROR, "num_conflict_exceptions"),
    (UploadFailedError("?"), ErrorCode.UNKNOWN, "num_io_exceptions"),
    (RuntimeError("boom"), ErrorCode.UNKNOWN, "num_io_exceptions"),
])
async def test_failure_taxonomy(orchestrator, store, uploader, stats, notifications,
                                make_measurement, error, code, counter):
    measurement = await make_measurement()
    uploader.core[measurement.id] = error

    report = await orchestrator.sync_all()

    assert report.aborted
    assert await _status(store, measurement.id) == MeasurementStatus.FINISHED
    assert [n.code for n in notifications] == [code]
    assert stats.snapshot()[counter] == 1


# -- format, credential and store errors -------------------------------------------

@pytest.mark.asyncio
async def test_format_mismatch_continues_with_next(
        orchestrator, store, uploader, stats, notifications, make_measurement):
    old = await make_measurement(file_format_version=2)
    current = await make_measurement()

    report = await orchestrator.sync_all()

    assert report.failed_format == [old.id]
    assert report.synced == [current.id]
    assert not report.aborted
    assert await _status(store, old.id) == MeasurementStatus.FINISHED
    assert [n.code for n in notifications] == [ErrorCode.FORMAT_MISMATCH]
    assert stats.snapshot()["num_parse_exceptions"] == 1
    assert ("core", old.id) not in uploader.calls


@pytest.mark.asyncio
async def test_attachment_with_unknown_version_is_format_mismatch(
        orchestrator, store, uploader, notifications, make_measurement, attachment_file):
    measurement = await make_measurement()
    await store.add_attachment(measurement.id, AttachmentType.CSV, attachment_file,
                               file_format_version=2)

    report = await orchestrator.sync_all()

    assert report.failed_format == [measurement.id]
    assert uploader.calls == []
    assert await _status(store, measurement.id) == MeasurementStatus.FINISHED


@pytest.mark.asyncio
async def test_credential_failure_aborts(orchestrator, store, uploader, credentials,
                                         notifications, make_measurement):
    measurement = await make_measurement()
    credentials.token = ""

    report = await orchestrator.sync_all()

    assert report.aborted
    assert uploader.calls == []
    assert [n.code for n in notifications] == [ErrorCode.AUTHENTICATION_ERROR]
    assert await _status(store, measurement.id) == MeasurementStatus.FINISHED


@pytest.mark.asyncio
async def test_store_failure_aborts_pass(orchestrator, store, notifications, stats,
                                         make_measurement, monkeypatch):
    await make_measurement()

    async def broken(*args, **kwargs):
        raise StoreUnavailableError("disk gone")
    monkeypatch.setattr(store, "count_locations", broken)

    report = await orchestrator.sync_all()

    assert report.aborted
    assert [n.code for n in notifications] == [ErrorCode.DATABASE_ERROR]
    assert stats.snapshot()["num_database_errors"] == 1


# -- progress, cancellation, single pass ---------------------------------------------

def test_combined_progress_formula():
    # Second of two measurements, core file done, half of the only attachment.
    assert combined_progress(1, 2, 1, 2, 0.5) == pytest.approx(87.5)
    assert combined_progress(0, 1, 0, 1, 0.0) == 0.0
    assert combined_progress(0, 1, 0, 1, 1.0) == 100.0
    assert combined_progress(0, 0, 0, 1, 0.0) == 100.0


@pytest.mark.asyncio
async def test_progress_reported_to_listeners(orchestrator, make_measurement):
    m1 = await make_measurement()
    m2 = await make_measurement()
    seen = []
    orchestrator.add_progress_listener(lambda mid, percent: seen.append((mid, percent)))

    await orchestrator.sync_all()

    assert seen == [(m1.id, 25.0), (m1.id, 50.0), (m2.id, 75.0), (m2.id, 100.0)]


@pytest.mark.asyncio
async def test_cancel_stops_before_next_upload(orchestrator, store, uploader, make_measurement):
    m1 = await make_measurement()
    m2 = await make_measurement()
    uploader.on_upload = lambda kind, key: orchestrator.cancel()

    report = await orchestrator.sync_all()

    assert report.aborted
    # The acknowledged file still advances its measurement.
    assert await _status(store, m1.id) == MeasurementStatus.SYNCED
    assert await _status(store, m2.id) == MeasurementStatus.FINISHED
    assert uploader.calls == [("core", m1.id)]


@pytest.mark.asyncio
async def test_passes_never_overlap(orchestrator, uploader, make_measurement):
    await make_measurement()
    gate = asyncio.Event()
    original = uploader.upload_core

    async def slow_upload(*args):
        await gate.wait()
        return await original(*args)
    uploader.upload_core = slow_upload

    first = asyncio.create_task(orchestrator.sync_all())
    await asyncio.sleep(0.01)
    assert orchestrator.is_running
    with pytest.raises(SyncAlreadyRunningError):
        await orchestrator.sync_all()

    waiting = asyncio.create_task(orchestrator.sync_all(wait=True))
    await asyncio.sleep(0.01)
    gate.set()
    first_report = await first
    second_report = await waiting

    assert len(first_report.synced) == 1
    assert second_report.synced == []
    assert not orchestrator.is_running


@pytest.mark.asyncio
async def test_sensor_blobs_are_streamed_into_core_file(
        orchestrator, store, uploader, make_measurement):
    first = await make_measurement(samples=4)
    second = await make_measurement(samples=2)
    rotations = [VectorSample(2_000 + i, 0.01 * i, 0.02, -0.03) for i in range(5)]
    await store.append_vector_samples(second.id, SensorChannel.ROTATION, rotations)

    report = await orchestrator.sync_all()

    assert report.synced == [first.id, second.id]
    contents = read_transfer_file(uploader.received[("core", second.id)])
    assert len(list(contents.samples(SensorChannel.ACCELERATION))) == 2
    assert list(contents.samples(SensorChannel.ROTATION)) == rotations
    assert list(contents.samples(SensorChannel.DIRECTION)) == []
    # Sensor data is dropped once the core file went out.
    assert await store.load_sample_blob(second.id, SensorChannel.ROTATION) is None


@pytest.mark.asyncio
async def test_uploader_skipped_core_counts_once(orchestrator, store, uploader, stats,
                                                 make_measurement):
    measurement = await make_measurement()
    uploader.core[measurement.id] = UploadResult.SKIPPED

    report = await orchestrator.sync_all()

    assert report.skipped == [measurement.id]
    assert await _status(store, measurement.id) == MeasurementStatus.SKIPPED
    assert stats.snapshot()["num_skipped_entries"] == 1


@pytest.mark.asyncio
async def test_deprecated_during_upload_is_left_alone(
        orchestrator, lifecycle, store, uploader, stats, make_measurement):
    m1 = await make_measurement()
    m2 = await make_measurement()
    original = uploader.upload_core

    async def deprecate_meanwhile(token, meta, path, progress):
        if meta.measurement_id == m1.id:
            await lifecycle.mark_deprecated(m1.id)
        return await original(token, meta, path, progress)
    uploader.upload_core = deprecate_meanwhile

    report = await orchestrator.sync_all()

    assert await _status(store, m1.id) == MeasurementStatus.DEPRECATED
    assert await _status(store, m2.id) == MeasurementStatus.SYNCED
    assert report.synced == [m2.id]
    assert not report.aborted
    assert stats.snapshot()["last_pass"]["synced"] == 1
