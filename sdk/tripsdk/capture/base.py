"""Capture interface (port): starts and stops sensor/location acquisition."""

from __future__ import annotations

from typing import Protocol


class CaptureProcess(Protocol):
    """Port: the background process that records samples into the store.

    ``start_capture``/``stop_capture`` return ``False`` when the process did
    not acknowledge the request. ``is_running`` answers whether a capture is
    actually active right now.
    """

    async def start_capture(self, measurement_id: int) -> bool: ...

    async def stop_capture(self) -> bool: ...

    async def is_running(self) -> bool: ...
