"""Simulated capture process.

Drives a virtual vehicle around a start point and writes what a phone would
record into the store: one location per tick plus a burst of acceleration,
rotation and direction samples. Useful for running the SDK locally and for
end-to-end tests without sensors.
"""

from __future__ import annotations

import asyncio
import math
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from tripsdk.core.models import GeoLocation, SensorChannel, VectorSample

if TYPE_CHECKING:
    from tripsdk.store.base import MeasurementStore

log = structlog.get_logger()

EARTH_METERS_PER_DEGREE = 111_000


@dataclass
class SimVehicle:
    lat: float
    lon: float
    bearing: float
    speed_mps: float
    distance_m: float = 0.0


def move_vehicle(vehicle: SimVehicle, dt_seconds: float, rng: random.Random) -> None:
    """Move a vehicle along its current bearing, with random turns."""
    vehicle.bearing = (vehicle.bearing + rng.uniform(-15, 15)) % 360

    # City driving: 3-20 m/s
    vehicle.speed_mps = max(3.0, min(20.0, vehicle.speed_mps + rng.uniform(-1, 1)))

    distance_m = vehicle.speed_mps * dt_seconds
    bearing_rad = math.radians(vehicle.bearing)

    dlat = (distance_m * math.cos(bearing_rad)) / EARTH_METERS_PER_DEGREE
    dlon = (distance_m * math.sin(bearing_rad)) / (
        EARTH_METERS_PER_DEGREE * math.cos(math.radians(vehicle.lat))
    )

    vehicle.lat += dlat
    vehicle.lon += dlon
    vehicle.distance_m += distance_m


class SimulatedCapture:
    """CaptureProcess that records a synthetic drive."""

    def __init__(
        self,
        store: MeasurementStore,
        center: tuple[float, float] = (45.764, 4.835),
        tick_seconds: float = 1.0,
        samples_per_tick: int = 10,
        seed: int | None = None,
    ) -> None:
        self._store = store
        self._center = center
        self._tick = tick_seconds
        self._samples_per_tick = samples_per_tick
        self._rng = random.Random(seed)
        self._task: asyncio.Task | None = None
        self._measurement_id: int | None = None

    async def start_capture(self, measurement_id: int) -> bool:
        if await self.is_running():
            log.warning("capture_already_running", measurement_id=self._measurement_id)
            return False
        measurement = await self._store.load_measurement(measurement_id)
        if measurement is None:
            return False
        vehicle = SimVehicle(
            lat=self._center[0],
            lon=self._center[1],
            bearing=self._rng.uniform(0, 360),
            speed_mps=self._rng.uniform(5, 15),
            distance_m=measurement.distance,
        )
        self._measurement_id = measurement_id
        self._task = asyncio.create_task(self._run(measurement_id, vehicle))
        log.info("capture_started", measurement_id=measurement_id)
        return True

    async def stop_capture(self) -> bool:
        if not await self.is_running():
            return False
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("capture_stopped", measurement_id=self._measurement_id)
        self._measurement_id = None
        return True

    async def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self, measurement_id: int, vehicle: SimVehicle) -> None:
        while True:
            await self.record_tick(measurement_id, vehicle)
            await asyncio.sleep(self._tick)

    async def record_tick(self, measurement_id: int, vehicle: SimVehicle) -> None:
        """Advance the vehicle by one tick and store what was "measured"."""
        move_vehicle(vehicle, self._tick, self._rng)
        now_ms = int(time.time() * 1000)
        await self._store.append_location(measurement_id, GeoLocation(
            timestamp_ms=now_ms,
            latitude=vehicle.lat,
            longitude=vehicle.lon,
            speed_mps=round(vehicle.speed_mps, 2),
            accuracy_cm=float(self._rng.randint(300, 1500)),
        ))
        step_ms = max(1, int(self._tick * 1000) // self._samples_per_tick)
        for channel, base in ((SensorChannel.ACCELERATION, (0.0, 0.0, 9.81)),
                              (SensorChannel.ROTATION, (0.0, 0.0, 0.0)),
                              (SensorChannel.DIRECTION, (20.0, -5.0, 40.0))):
            await self._store.append_vector_samples(measurement_id, channel, [
                VectorSample(
                    timestamp_ms=now_ms + i * step_ms,
                    x=base[0] + self._rng.gauss(0, 0.3),
                    y=base[1] + self._rng.gauss(0, 0.3),
                    z=base[2] + self._rng.gauss(0, 0.3),
                )
                for i in range(self._samples_per_tick)
            ])
        await self._store.update_distance(measurement_id, vehicle.distance_m)
