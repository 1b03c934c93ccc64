"""Sync statistics.

Counters for upload passes, readable at any time through ``snapshot()``.
No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass


@dataclass
class PassRecord:
    """Outcome of the most recent sync pass."""
    started_at: float         # time.time() timestamp
    duration_seconds: float
    synced: int
    skipped: int
    aborted: bool


class SyncStats:
    """Thread-safe sync statistics.

    Error counters follow the classic sync adapter buckets: ``io`` for
    transient network/server trouble, ``auth`` for credential problems,
    ``parse`` for data the collector or the SDK cannot interpret and
    ``conflict`` for server-side failures.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()

        # Counters
        self.passes_started: int = 0
        self.passes_aborted: int = 0
        self.files_uploaded: int = 0
        self.bytes_uploaded: int = 0
        self.num_updates: int = 0
        self.num_skipped_entries: int = 0
        self.num_io_exceptions: int = 0
        self.num_auth_exceptions: int = 0
        self.num_parse_exceptions: int = 0
        self.num_conflict_exceptions: int = 0
        self.num_database_errors: int = 0

        self._last_pass: PassRecord | None = None

    def record_pass_started(self) -> None:
        with self._lock:
            self.passes_started += 1

    def record_pass_finished(self, started_at: float, synced: int, skipped: int,
                             *, aborted: bool) -> None:
        """Record the end of a pass that began at ``started_at`` (time.time())."""
        with self._lock:
            if aborted:
                self.passes_aborted += 1
            self._last_pass = PassRecord(
                started_at=started_at,
                duration_seconds=round(time.time() - started_at, 3),
                synced=synced,
                skipped=skipped,
                aborted=aborted,
            )

    def record_upload(self, size_bytes: int) -> None:
        with self._lock:
            self.files_uploaded += 1
            self.bytes_uploaded += size_bytes

    def record_update(self) -> None:
        with self._lock:
            self.num_updates += 1

    def record_skipped(self) -> None:
        with self._lock:
            self.num_skipped_entries += 1

    def record_io_error(self) -> None:
        with self._lock:
            self.num_io_exceptions += 1

    def record_auth_error(self) -> None:
        with self._lock:
            self.num_auth_exceptions += 1

    def record_parse_error(self) -> None:
        with self._lock:
            self.num_parse_exceptions += 1

    def record_conflict_error(self) -> None:
        with self._lock:
            self.num_conflict_exceptions += 1

    def record_database_error(self) -> None:
        with self._lock:
            self.num_database_errors += 1

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        with self._lock:
            last = self._last_pass
            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "passes_started": self.passes_started,
                "passes_aborted": self.passes_aborted,
                "files_uploaded": self.files_uploaded,
                "bytes_uploaded": self.bytes_uploaded,
                "num_updates": self.num_updates,
                "num_skipped_entries": self.num_skipped_entries,
                "num_io_exceptions": self.num_io_exceptions,
                "num_auth_exceptions": self.num_auth_exceptions,
                "num_parse_exceptions": self.num_parse_exceptions,
                "num_conflict_exceptions": self.num_conflict_exceptions,
                "num_database_errors": self.num_database_errors,
                "last_pass": None if last is None else {
                    "started_at": last.started_at,
                    "duration_seconds": last.duration_seconds,
                    "synced": last.synced,
                    "skipped": last.skipped,
                    "aborted": last.aborted,
                },
            }
