"""tripsdk — local process entry point.

This is the only file that knows about concrete implementations.
It wires together the store, capture, lifecycle, sync and API layers.

Run with ``tripsdk-local`` or ``uvicorn tripsdk.main:app``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
import uvicorn
from fastapi import FastAPI

from tripsdk.api.lifecycle import router as lifecycle_router
from tripsdk.api.monitoring import router as monitoring_router
from tripsdk.api.sync import router as sync_router
from tripsdk.capture.base import CaptureProcess
from tripsdk.capture.simulated import SimulatedCapture
from tripsdk.config import AppConfig, load_config
from tripsdk.core.lifecycle import MeasurementStateMachine
from tripsdk.core.models import DeviceInfo
from tripsdk.core.notifications import ErrorNotifier
from tripsdk.core.stats import SyncStats
from tripsdk.core.sync import UploadOrchestrator
from tripsdk.core.transfer_file import TransferFileBuilder
from tripsdk.store.base import MeasurementStore
from tripsdk.store.file_store import FileMeasurementStore
from tripsdk.store.memory_store import InMemoryMeasurementStore
from tripsdk.upload.base import CredentialProvider, Uploader
from tripsdk.upload.credentials import StaticCredentialProvider
from tripsdk.upload.outbox import OutboxUploader

log = structlog.get_logger()

# Module-level singletons (set during startup)
_config: AppConfig | None = None
_store: MeasurementStore | None = None
_capture: CaptureProcess | None = None
_lifecycle: MeasurementStateMachine | None = None
_orchestrator: UploadOrchestrator | None = None
_stats: SyncStats | None = None
_notifier: ErrorNotifier | None = None


def get_config() -> AppConfig:
    assert _config is not None, "SDK not initialized"
    return _config


def get_store() -> MeasurementStore:
    assert _store is not None, "SDK not initialized"
    return _store


def get_lifecycle() -> MeasurementStateMachine:
    assert _lifecycle is not None, "SDK not initialized"
    return _lifecycle


def get_orchestrator() -> UploadOrchestrator:
    assert _orchestrator is not None, "SDK not initialized"
    return _orchestrator


def get_stats() -> SyncStats:
    assert _stats is not None, "SDK not initialized"
    return _stats


def get_notifier() -> ErrorNotifier:
    assert _notifier is not None, "SDK not initialized"
    return _notifier


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def _create_store(config: AppConfig) -> MeasurementStore:
    if config.storage.backend == "memory":
        return InMemoryMeasurementStore()
    if config.storage.backend == "file":
        return FileMeasurementStore(base_dir=config.storage.base_dir)
    raise ValueError(f"unknown storage backend: {config.storage.backend!r}")


def _create_capture(config: AppConfig, store: MeasurementStore) -> CaptureProcess:
    if config.capture.backend != "simulated":
        raise ValueError(f"unknown capture backend: {config.capture.backend!r}")
    lat, lon = config.capture.center.split(",")
    return SimulatedCapture(
        store,
        center=(float(lat), float(lon)),
        tick_seconds=config.capture.tick_seconds,
        samples_per_tick=config.capture.samples_per_tick,
    )


def init_components(
    config: AppConfig,
    store: MeasurementStore | None = None,
    capture: CaptureProcess | None = None,
    uploader: Uploader | None = None,
    credentials: CredentialProvider | None = None,
) -> None:
    """Create every component from ``config`` and publish the singletons.

    Passing a collaborator replaces the one the config would create.
    """
    global _config, _store, _capture, _lifecycle, _orchestrator, _stats, _notifier

    _config = config
    _store = store if store is not None else _create_store(config)
    _capture = capture if capture is not None else _create_capture(config, _store)
    _stats = SyncStats()
    _notifier = ErrorNotifier()
    _lifecycle = MeasurementStateMachine(
        _store,
        _capture,
        stop_ack_timeout=config.capture.stop_ack_timeout_ms / 1000,
    )
    builder = TransferFileBuilder(
        _store,
        supported_version=_lifecycle.supported_version,
        query_limit=config.transfer.query_limit,
        compression_level=config.transfer.compression_level,
    )
    _orchestrator = UploadOrchestrator(
        store=_store,
        lifecycle=_lifecycle,
        builder=builder,
        uploader=uploader if uploader is not None else OutboxUploader(
            config.sync.outbox_dir, max_file_size=config.sync.max_file_size,
        ),
        credentials=credentials if credentials is not None else StaticCredentialProvider(
            config.sync.token,
        ),
        notifier=_notifier,
        stats=_stats,
        device=DeviceInfo(
            device_id=config.sync.device_id,
            os_version=config.sync.os_version,
            device_type=config.sync.device_type,
            app_version=config.sync.app_version,
        ),
        work_dir=Path(config.transfer.work_dir),
    )


def reset_components() -> None:
    global _config, _store, _capture, _lifecycle, _orchestrator, _stats, _notifier
    _config = _store = _capture = _lifecycle = _orchestrator = _stats = _notifier = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    config = load_config()
    _setup_logging(config)

    log.info("sdk_starting",
             env=config.server.env,
             storage_backend=config.storage.backend,
             storage_dir=config.storage.base_dir)

    init_components(config)
    deprecated = await get_lifecycle().initialize()

    log.info("sdk_started",
             host=config.server.host,
             port=config.server.port,
             deprecated=len(deprecated))

    yield

    # Shutdown
    get_orchestrator().cancel()
    if _capture is not None and await _capture.is_running():
        # The measurement stays OPEN; the next stop() reconciles it.
        log.warning("capture_interrupted_by_shutdown")
        await _capture.stop_capture()
    reset_components()
    log.info("sdk_stopped")


app = FastAPI(
    title="tripsdk",
    description="Local control surface of the trip recording SDK",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(lifecycle_router)
app.include_router(sync_router)
app.include_router(monitoring_router)


def run() -> None:
    config = load_config()
    uvicorn.run("tripsdk.main:app", host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    run()
