"""Health check and monitoring endpoints."""

from __future__ import annotations

import shutil

from fastapi import APIRouter

from tripsdk.core.models import MeasurementStatus

router = APIRouter(prefix="/api/v1")


def _free_space_mb(directory: str) -> float | None:
    try:
        return round(shutil.disk_usage(directory).free / (1024 ** 2), 1)
    except OSError:
        return None


@router.get("/health")
async def health() -> dict:
    """Liveness plus what a sync would have to do."""
    from tripsdk.main import get_config, get_lifecycle, get_orchestrator, get_stats, get_store

    config = get_config()
    store = get_store()
    current = await get_lifecycle().load_current()
    pending = (
        await store.load_measurements(MeasurementStatus.FINISHED)
        + await store.load_measurements(MeasurementStatus.SYNCABLE_ATTACHMENTS)
    )

    return {
        "status": "ok",
        "version": "0.1.0",
        "uptime_seconds": get_stats().snapshot()["uptime_seconds"],
        "storage_backend": config.storage.backend,
        # None when the work directory does not exist yet
        "work_dir_free_mb": _free_space_mb(config.transfer.work_dir),
        "current_measurement": current.id if current else None,
        "pending_uploads": sorted(m.id for m in pending),
        "sync_running": get_orchestrator().is_running,
    }


@router.get("/stats")
async def stats() -> dict:
    """Sync statistics.

    The ``num_*`` counters follow the sync adapter buckets:
    - ``num_updates``: files whose upload advanced a status
    - ``num_skipped_entries``: files refused or already known by the collector
    - ``num_io_exceptions`` / ``num_auth_exceptions`` / ``num_parse_exceptions``
    """
    from tripsdk.main import get_stats

    return get_stats().snapshot()


@router.get("/errors")
async def errors() -> dict:
    """The most recent user-facing error notifications, oldest first."""
    from tripsdk.main import get_notifier

    return {
        "errors": [
            {"code": n.code.name, "message": n.message, "from_background": n.from_background}
            for n in get_notifier().recent()
        ],
    }
