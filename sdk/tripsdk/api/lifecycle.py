"""Measurement lifecycle endpoints.

This is the thin FastAPI adapter over the state machine. It parses JSON
requests, calls the lifecycle and maps SDK errors to HTTP status codes.
"""

from __future__ import annotations

import json
from pathlib import Path

from fastapi import APIRouter, Request, Response

from tripsdk.core.errors import (
    CorruptedMeasurementError,
    DataCapturingError,
    FormatVersionMismatchError,
    InvalidTransitionError,
    NoSuchAttachmentError,
    NoSuchMeasurementError,
    StoreUnavailableError,
    TripSdkError,
)
from tripsdk.core.models import (
    ATTACHMENT_FILE_FORMAT_VERSION,
    AttachmentType,
    Measurement,
    MeasurementStatus,
    Modality,
)

router = APIRouter(prefix="/api/v1")

_ERROR_STATUS: list[tuple[type[TripSdkError], int]] = [
    (NoSuchMeasurementError, 404),
    (NoSuchAttachmentError, 404),
    (CorruptedMeasurementError, 409),
    (InvalidTransitionError, 409),
    (FormatVersionMismatchError, 409),
    (DataCapturingError, 503),
    (StoreUnavailableError, 503),
]


def _json(content: dict, status_code: int = 200) -> Response:
    return Response(content=json.dumps(content), status_code=status_code,
                    media_type="application/json")


def error_response(error: TripSdkError) -> Response:
    status = next((code for cls, code in _ERROR_STATUS if isinstance(error, cls)), 500)
    return _json({"error": type(error).__name__, "detail": str(error)}, status)


def measurement_json(measurement: Measurement) -> dict:
    return {
        "id": measurement.id,
        "status": measurement.status.value,
        "modality": measurement.modality.value,
        "file_format_version": measurement.file_format_version,
        "distance": measurement.distance,
        "timestamp_ms": measurement.timestamp_ms,
    }


async def _json_body(request: Request) -> dict | None:
    body = await request.body()
    if not body:
        return {}
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _parse_modality(body: dict, default: Modality | None = None) -> Modality | None:
    value = body.get("modality")
    if value is None:
        return default
    try:
        return Modality(str(value).upper())
    except ValueError:
        return None


@router.post("/measurements/start")
async def start(request: Request) -> Response:
    from tripsdk.main import get_lifecycle

    body = await _json_body(request)
    if body is None:
        return _json({"error": "invalid JSON"}, 400)
    modality = _parse_modality(body, Modality.UNKNOWN)
    if modality is None:
        return _json({"error": f"unknown modality {body.get('modality')!r}"}, 422)

    try:
        measurement = await get_lifecycle().start(modality)
    except TripSdkError as e:
        return error_response(e)
    return _json(measurement_json(measurement))


@router.post("/measurements/stop")
async def stop() -> Response:
    from tripsdk.main import get_lifecycle

    try:
        measurement = await get_lifecycle().stop()
    except TripSdkError as e:
        return error_response(e)
    return _json({"measurement": measurement_json(measurement) if measurement else None})


@router.post("/measurements/pause")
async def pause() -> Response:
    from tripsdk.main import get_lifecycle

    try:
        measurement = await get_lifecycle().pause()
    except TripSdkError as e:
        return error_response(e)
    return _json({"measurement": measurement_json(measurement) if measurement else None})


@router.post("/measurements/resume")
async def resume() -> Response:
    from tripsdk.main import get_lifecycle

    try:
        measurement = await get_lifecycle().resume()
    except TripSdkError as e:
        return error_response(e)
    return _json({"measurement": measurement_json(measurement) if measurement else None})


@router.post("/measurements/modality")
async def change_modality(request: Request) -> Response:
    from tripsdk.main import get_lifecycle

    body = await _json_body(request)
    if body is None:
        return _json({"error": "invalid JSON"}, 400)
    modality = _parse_modality(body)
    if modality is None:
        return _json({"error": "a known modality is required"}, 422)

    try:
        recorded = await get_lifecycle().change_modality(modality)
    except TripSdkError as e:
        return error_response(e)
    return _json({"recorded": recorded})


@router.post("/reconnect")
async def reconnect() -> dict:
    from tripsdk.main import get_lifecycle

    return {"capture_running": await get_lifecycle().reconnect()}


@router.get("/measurements")
async def list_measurements(status: str | None = None) -> Response:
    from tripsdk.main import get_store

    wanted = None
    if status is not None:
        try:
            wanted = MeasurementStatus(status.upper())
        except ValueError:
            return _json({"error": f"unknown status {status!r}"}, 422)
    try:
        measurements = await get_store().load_measurements(wanted)
    except TripSdkError as e:
        return error_response(e)
    return _json({"measurements": [measurement_json(m) for m in measurements]})


@router.get("/measurements/current")
async def current() -> Response:
    from tripsdk.main import get_lifecycle

    try:
        measurement = await get_lifecycle().load_current()
    except TripSdkError as e:
        return error_response(e)
    return _json({"measurement": measurement_json(measurement) if measurement else None})


@router.get("/measurements/{measurement_id}")
async def measurement_detail(measurement_id: int) -> Response:
    from tripsdk.main import get_store

    store = get_store()
    try:
        measurement = await store.load_measurement(measurement_id)
        if measurement is None:
            raise NoSuchMeasurementError(f"unknown measurement {measurement_id}")
        events = await store.load_events(measurement_id)
        location_count = await store.count_locations(measurement_id)
        attachments = await store.load_attachments(measurement_id)
    except TripSdkError as e:
        return error_response(e)

    result = measurement_json(measurement)
    result["events"] = [
        {"timestamp_ms": e.timestamp_ms, "type": e.type.value, "value": e.value}
        for e in events
    ]
    result["location_count"] = location_count
    result["attachments"] = [
        {"id": a.id, "type": a.type.value, "status": a.status.value, "path": str(a.path)}
        for a in attachments
    ]
    return _json(result)


@router.post("/measurements/{measurement_id}/deprecate")
async def deprecate(measurement_id: int) -> Response:
    from tripsdk.main import get_lifecycle

    try:
        await get_lifecycle().mark_deprecated(measurement_id)
    except TripSdkError as e:
        return error_response(e)
    return _json({"id": measurement_id, "status": MeasurementStatus.DEPRECATED.value})


@router.post("/measurements/{measurement_id}/attachments")
async def add_attachment(measurement_id: int, request: Request) -> Response:
    """Register a log or image file recorded alongside a measurement."""
    from tripsdk.main import get_store

    body = await _json_body(request)
    if body is None:
        return _json({"error": "invalid JSON"}, 400)
    try:
        attachment_type = AttachmentType(str(body.get("type", "")).upper())
    except ValueError:
        return _json({"error": f"unknown attachment type {body.get('type')!r}"}, 422)
    if not body.get("path"):
        return _json({"error": "path is required"}, 422)
    try:
        file_format_version = int(body.get("file_format_version", ATTACHMENT_FILE_FORMAT_VERSION))
    except (TypeError, ValueError):
        return _json({"error": "file_format_version must be an integer"}, 422)

    store = get_store()
    try:
        if await store.load_measurement(measurement_id) is None:
            raise NoSuchMeasurementError(f"unknown measurement {measurement_id}")
        attachment = await store.add_attachment(
            measurement_id, attachment_type, Path(body["path"]),
            file_format_version=file_format_version,
        )
    except TripSdkError as e:
        return error_response(e)
    return _json({"id": attachment.id, "type": attachment.type.value,
                  "status": attachment.status.value})
