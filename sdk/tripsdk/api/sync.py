"""Sync endpoints: run, cancel and observe upload passes."""

from __future__ import annotations

import json
from dataclasses import asdict

from fastapi import APIRouter, Response

from tripsdk.core.errors import SyncAlreadyRunningError

router = APIRouter(prefix="/api/v1")


@router.post("/sync")
async def sync(wait: bool = False) -> Response:
    """Run one sync pass and return its report.

    Without ``wait`` a request made while a pass is running gets 409.
    """
    from tripsdk.main import get_orchestrator

    try:
        report = await get_orchestrator().sync_all(wait=wait)
    except SyncAlreadyRunningError as e:
        return Response(
            content=json.dumps({"error": "SyncAlreadyRunningError", "detail": str(e)}),
            status_code=409,
            media_type="application/json",
        )
    return Response(content=json.dumps(asdict(report)), media_type="application/json")


@router.post("/sync/cancel")
async def cancel() -> dict:
    from tripsdk.main import get_orchestrator

    orchestrator = get_orchestrator()
    running = orchestrator.is_running
    orchestrator.cancel()
    return {"cancelled": running}


@router.get("/sync/status")
async def status() -> dict:
    from tripsdk.main import get_orchestrator

    return {"running": get_orchestrator().is_running}
