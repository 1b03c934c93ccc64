#!/usr/bin/env python3
"""tripsdk trip simulator.

Drives the local SDK process through complete trips over its HTTP API:
start, modality switches, pauses, stop, a log attachment, then a sync pass.
The SDK's simulated capture backend records the data while a trip is open.

Usage:
    # 3 trips of 20 seconds each, then sync
    python -m tools.simulator.simulate --server http://localhost:8100 --trips 3 --trip-seconds 20

    # One long trip with a pause in the middle, no sync
    python -m tools.simulator.simulate --trips 1 --trip-seconds 120 --pause-seconds 10 --no-sync
"""

from __future__ import annotations

import argparse
import asyncio
import random
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

import httpx

MODALITIES = ["CAR", "BICYCLE", "BUS", "WALKING", "TRAIN", "MOTORBIKE"]


@dataclass
class TripResult:
    measurement_id: int | None = None
    modalities: list[str] = field(default_factory=list)
    locations: int = 0
    errors: list[str] = field(default_factory=list)


async def _post(client: httpx.AsyncClient, url: str, result: TripResult, **kwargs) -> dict | None:
    try:
        resp = await client.post(url, **kwargs)
    except httpx.RequestError as e:
        result.errors.append(f"{url}: {e}")
        return None
    if resp.status_code != 200:
        result.errors.append(f"{url}: {resp.status_code} {resp.text}")
        return None
    return resp.json()


async def run_trip(
    client: httpx.AsyncClient,
    server_url: str,
    trip_seconds: float,
    pause_seconds: float,
    attachment_dir: Path,
) -> TripResult:
    """Record one trip and register a log file for it."""
    result = TripResult()
    api = f"{server_url}/api/v1"

    modality = random.choice(MODALITIES)
    started = await _post(client, f"{api}/measurements/start", result,
                          json={"modality": modality})
    if started is None:
        return result
    result.measurement_id = started["id"]
    result.modalities.append(modality)

    half = trip_seconds / 2
    await asyncio.sleep(half / 2)
    switch = random.choice([m for m in MODALITIES if m != modality])
    changed = await _post(client, f"{api}/measurements/modality", result,
                          json={"modality": switch})
    if changed and changed["recorded"]:
        result.modalities.append(switch)
    await asyncio.sleep(half / 2)

    if pause_seconds > 0:
        await _post(client, f"{api}/measurements/pause", result)
        await asyncio.sleep(pause_seconds)
        await _post(client, f"{api}/measurements/resume", result)

    await asyncio.sleep(half)
    await _post(client, f"{api}/measurements/stop", result)

    log_file = attachment_dir / f"trip-{result.measurement_id}.csv"
    log_file.write_text("timestamp_ms,message\n"
                        f"{int(time.time() * 1000)},trip recorded by simulator\n")
    await _post(client, f"{api}/measurements/{result.measurement_id}/attachments", result,
                json={"type": "CSV", "path": str(log_file)})

    detail = await client.get(f"{api}/measurements/{result.measurement_id}")
    if detail.status_code == 200:
        result.locations = detail.json()["location_count"]
    return result


async def run_simulation(args: argparse.Namespace) -> None:
    """Record the trips one after the other, then sync."""
    print(f"Starting simulation: {args.trips} trips of {args.trip_seconds}s")
    print(f"  Server: {args.server}")
    print(f"  Pause per trip: {args.pause_seconds}s")
    print()

    start = time.monotonic()
    results = []
    attachment_dir = Path(tempfile.mkdtemp(prefix="tripsdk-sim-"))

    async with httpx.AsyncClient(timeout=30.0) as client:
        # Only one measurement may be open at a time, so trips run in sequence.
        for i in range(args.trips):
            result = await run_trip(client, args.server, args.trip_seconds,
                                    args.pause_seconds, attachment_dir)
            results.append(result)
            print(f"  trip {i + 1}: measurement {result.measurement_id}, "
                  f"{result.locations} locations, modalities {' -> '.join(result.modalities)}")
            for error in result.errors:
                print(f"    error: {error}")

        if not args.no_sync:
            resp = await client.post(f"{args.server}/api/v1/sync", params={"wait": True})
            if resp.status_code == 200:
                report = resp.json()
                print(f"\nSync pass: synced {report['synced']}, skipped {report['skipped']}, "
                      f"format mismatches {report['failed_format']}, aborted {report['aborted']}")
            else:
                print(f"\nSync pass failed: {resp.status_code} {resp.text}")

        elapsed = time.monotonic() - start
        print(f"\nSimulation complete in {elapsed:.1f}s")
        print(f"  Trips recorded: {sum(1 for r in results if r.measurement_id is not None)}")
        print(f"  Errors: {sum(len(r.errors) for r in results)}")

        try:
            resp = await client.get(f"{args.server}/api/v1/stats")
        except httpx.RequestError:
            return
        if resp.status_code == 200:
            stats = resp.json()
            print("\nSDK stats:")
            print(f"  Files uploaded: {stats['files_uploaded']}")
            print(f"  Bytes uploaded: {stats['bytes_uploaded']}")
            print(f"  Skipped: {stats['num_skipped_entries']}")
            print(f"  I/O errors: {stats['num_io_exceptions']}")


def main():
    parser = argparse.ArgumentParser(description="tripsdk trip simulator")
    parser.add_argument("--server", default="http://localhost:8100", help="SDK process URL")
    parser.add_argument("--trips", type=int, default=3, help="Number of trips to record")
    parser.add_argument("--trip-seconds", type=float, default=20, help="Capture time per trip")
    parser.add_argument("--pause-seconds", type=float, default=3,
                        help="Pause in the middle of each trip (0 = no pause)")
    parser.add_argument("--no-sync", action="store_true", help="Skip the final sync pass")

    args = parser.parse_args()
    asyncio.run(run_simulation(args))


if __name__ == "__main__":
    main()
