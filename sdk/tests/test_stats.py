"""Tests for SyncStats and the error notifier."""

from __future__ import annotations

import threading
import time

from tripsdk.core.errors import ErrorCode
from tripsdk.core.notifications import ErrorNotifier
from tripsdk.core.stats import SyncStats


def test_initial_stats():
    snap = SyncStats().snapshot()
    assert snap["passes_started"] == 0
    assert snap["num_updates"] == 0
    assert snap["num_io_exceptions"] == 0
    assert snap["last_pass"] is None


def test_error_buckets():
    stats = SyncStats()
    stats.record_io_error()
    stats.record_io_error()
    stats.record_auth_error()
    stats.record_parse_error()
    stats.record_conflict_error()
    stats.record_database_error()

    snap = stats.snapshot()
    assert snap["num_io_exceptions"] == 2
    assert snap["num_auth_exceptions"] == 1
    assert snap["num_parse_exceptions"] == 1
    assert snap["num_conflict_exceptions"] == 1
    assert snap["num_database_errors"] == 1


def test_uploads_and_updates():
    stats = SyncStats()
    stats.record_upload(700)
    stats.record_upload(300)
    stats.record_update()
    stats.record_skipped()

    snap = stats.snapshot()
    assert snap["files_uploaded"] == 2
    assert snap["bytes_uploaded"] == 1000
    assert snap["num_updates"] == 1
    assert snap["num_skipped_entries"] == 1


def test_last_pass():
    stats = SyncStats()
    started = time.time()
    stats.record_pass_started()
    stats.record_pass_finished(started, synced=2, skipped=1, aborted=True)

    snap = stats.snapshot()
    assert snap["passes_started"] == 1
    assert snap["passes_aborted"] == 1
    assert snap["last_pass"]["synced"] == 2
    assert snap["last_pass"]["skipped"] == 1
    assert snap["last_pass"]["aborted"] is True
    assert snap["last_pass"]["duration_seconds"] >= 0


def test_thread_safety():
    stats = SyncStats()

    def record_many():
        for _ in range(1000):
            stats.record_update()

    threads = [threading.Thread(target=record_many) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert stats.snapshot()["num_updates"] == 10_000


def test_uptime():
    stats = SyncStats()
    time.sleep(0.1)
    assert stats.snapshot()["uptime_seconds"] >= 0.1


# -- notifier ------------------------------------------------------------------

def test_notifier_fans_out():
    notifier = ErrorNotifier()
    first, second = [], []
    notifier.add_listener(first.append)
    notifier.add_listener(second.append)

    notifier.notify(ErrorCode.NETWORK_UNAVAILABLE, "offline")

    assert [n.code for n in first] == [ErrorCode.NETWORK_UNAVAILABLE]
    assert second[0].message == "offline"
    assert second[0].from_background is True


def test_notifier_survives_failing_listener():
    notifier = ErrorNotifier()
    received = []

    def broken(notification):
        raise RuntimeError("listener bug")

    notifier.add_listener(broken)
    notifier.add_listener(received.append)
    notifier.notify(ErrorCode.UNKNOWN, "x", from_background=False)

    assert received[0].from_background is False


def test_notifier_history_is_bounded():
    notifier = ErrorNotifier(history_size=2)
    for code in (ErrorCode.FORBIDDEN, ErrorCode.BAD_REQUEST, ErrorCode.UNAUTHORIZED):
        notifier.notify(code, code.name)
    assert [n.code for n in notifier.recent()] == [ErrorCode.BAD_REQUEST, ErrorCode.UNAUTHORIZED]


def test_remove_listener():
    notifier = ErrorNotifier()
    received = []
    notifier.add_listener(received.append)
    notifier.remove_listener(received.append)
    notifier.notify(ErrorCode.UNKNOWN, "x")
    assert received == []
