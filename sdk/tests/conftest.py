"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

import tripsdk.main as main_module
from tripsdk.config import AppConfig
from tripsdk.core.errors import AuthenticationError
from tripsdk.core.lifecycle import MeasurementStateMachine
from tripsdk.core.models import (
    GeoLocation,
    Measurement,
    MeasurementStatus,
    Modality,
    SensorChannel,
    UploadResult,
    VectorSample,
    DeviceInfo,
)
from tripsdk.core.notifications import ErrorNotifier
from tripsdk.core.stats import SyncStats
from tripsdk.core.sync import UploadOrchestrator
from tripsdk.core.transfer_file import TransferFileBuilder
from tripsdk.store.memory_store import InMemoryMeasurementStore


class FakeCapture:
    """CaptureProcess whose answers are set by the test."""

    def __init__(self) -> None:
        self.running = False
        self.start_result = True
        self.stop_result: bool | None = None  # None = acknowledge when running
        self.stop_delay = 0.0
        self.keep_running_on_stop = False
        self.started_with: list[int] = []
        self.stop_calls = 0

    async def start_capture(self, measurement_id: int) -> bool:
        self.started_with.append(measurement_id)
        if self.start_result:
            self.running = True
        return self.start_result

    async def stop_capture(self) -> bool:
        self.stop_calls += 1
        if self.stop_delay:
            await asyncio.sleep(self.stop_delay)
        was_running = self.running
        if not self.keep_running_on_stop:
            self.running = False
        if self.stop_result is not None:
            return self.stop_result
        return was_running

    async def is_running(self) -> bool:
        return self.running


class FakeUploader:
    """Uploader returning scripted results (or raising scripted errors).

    ``core[measurement_id]`` / ``attachments[attachment_id]`` hold the outcome;
    anything unscripted succeeds. Uploaded files are read into ``received``.
    """

    def __init__(self) -> None:
        self.core: dict[int, UploadResult | Exception] = {}
        self.attachments: dict[int, UploadResult | Exception] = {}
        self.calls: list[tuple[str, int]] = []
        self.received: dict[tuple[str, int], bytes] = {}
        self.paths: list[Path] = []
        self.tokens: list[str] = []
        self.on_upload = None

    async def upload_core(self, token, meta, path, progress):
        return self._answer("core", meta.measurement_id, token, path, progress,
                            self.core.get(meta.measurement_id, UploadResult.SUCCESSFUL))

    async def upload_attachment(self, token, meta, attachment_id, path, progress):
        return self._answer("attachment", attachment_id, token, path, progress,
                            self.attachments.get(attachment_id, UploadResult.SUCCESSFUL))

    def _answer(self, kind, key, token, path, progress, outcome):
        self.calls.append((kind, key))
        self.tokens.append(token)
        self.paths.append(Path(path))
        self.received[(kind, key)] = Path(path).read_bytes()
        progress(0.5)
        if self.on_upload is not None:
            self.on_upload(kind, key)
        if isinstance(outcome, Exception):
            raise outcome
        progress(1.0)
        return outcome


class FakeCredentials:
    def __init__(self, token: str = "token-1") -> None:
        self.token = token
        self.calls = 0

    async def fresh_token(self) -> str:
        self.calls += 1
        if not self.token:
            raise AuthenticationError("login required")
        return f"{self.token}#{self.calls}"


class Clock:
    """Deterministic millisecond clock, advancing 100 ms per reading."""

    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        self.now += 100
        return self.now


@pytest.fixture
def store():
    return InMemoryMeasurementStore()


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def notifier():
    return ErrorNotifier()


@pytest.fixture
def notifications(notifier):
    received = []
    notifier.add_listener(received.append)
    return received


@pytest.fixture
def stats():
    return SyncStats()


@pytest.fixture
def lifecycle(store, capture):
    return MeasurementStateMachine(store, capture, stop_ack_timeout=0.05, clock=Clock())


@pytest.fixture
def orchestrator(store, lifecycle, uploader, credentials, notifier, stats, tmp_path):
    return UploadOrchestrator(
        store=store,
        lifecycle=lifecycle,
        builder=TransferFileBuilder(store, supported_version=lifecycle.supported_version),
        uploader=uploader,
        credentials=credentials,
        notifier=notifier,
        stats=stats,
        device=DeviceInfo(device_id="device-1", os_version="test", device_type="pytest",
                          app_version="0.1.0"),
        work_dir=tmp_path / "work",
    )


@pytest.fixture
def make_measurement(store):
    """Seed a measurement with locations and acceleration samples."""
    async def _make(status: MeasurementStatus = MeasurementStatus.FINISHED,
                    locations: int = 3, samples: int = 4,
                    file_format_version: int = 3) -> Measurement:
        measurement = await store.create_measurement(Modality.BICYCLE, file_format_version,
                                                     timestamp_ms=1_000)
        for i in range(locations):
            await store.append_location(measurement.id, GeoLocation(
                timestamp_ms=1_000 + i * 500,
                latitude=51.05 + i * 0.0001,
                longitude=13.72 + i * 0.0001,
                speed_mps=5.0 + i,
                accuracy_cm=300.0,
            ))
        if samples:
            await store.append_vector_samples(measurement.id, SensorChannel.ACCELERATION, [
                VectorSample(timestamp_ms=1_000 + i * 10, x=0.1 * i, y=-0.2, z=9.81)
                for i in range(samples)
            ])
        await store.set_status(measurement.id, status)
        return await store.load_measurement(measurement.id)
    return _make


@pytest.fixture(autouse=True)
def _init_sdk(tmp_path, capture, uploader, credentials):
    """Initialize the SDK singletons for every test, using a temp directory."""
    config = AppConfig()
    config.storage.backend = "memory"
    config.storage.base_dir = str(tmp_path / "data")
    config.transfer.work_dir = str(tmp_path / "api-work")
    config.capture.stop_ack_timeout_ms = 50
    config.logging.level = "warning"

    main_module.init_components(config, capture=capture, uploader=uploader,
                                credentials=credentials)

    yield

    main_module.reset_components()


@pytest.fixture
async def client():
    from tripsdk.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
