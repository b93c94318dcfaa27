"""Tests for ProgressTracker."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from static_cache_jobs.progress import PROGRESS_PREFIX, ProgressTracker
from static_cache_jobs.schemas import ProgressStatus

if TYPE_CHECKING:
    from conftest import FakeClock, RecordingNotifier
    from pydantic import JsonValue

    from static_cache_jobs.kv_store import KeyValueStore


# ============================================================================
# Lifecycle Tests
# ============================================================================


def test_start_creates_running_session(progress: ProgressTracker) -> None:
    session_id = progress.start("bulk_generate", 20, {"source": "admin"})

    session = progress.get(session_id)
    assert session is not None
    assert session.operation == "bulk_generate"
    assert session.total == 20
    assert session.current == 0
    assert session.percentage == 0
    assert session.status == ProgressStatus.running
    assert session.metadata == {"source": "admin"}


def test_update_sets_percentage_and_metrics(progress: ProgressTracker, clock: FakeClock) -> None:
    session_id = progress.start("bulk_generate", 20)
    clock.advance(10)

    assert progress.update(session_id, 5, current_item="post 5", message="chunk done") is True

    session = progress.get(session_id)
    assert session is not None
    assert session.percentage == 25
    assert session.current_item == "post 5"
    assert [m.message for m in session.messages] == ["chunk done"]
    assert session.performance.items_per_second == 0.5
    assert session.performance.average_item_time == 2.0
    assert session.performance.remaining_time == 30
    assert session.estimated_completion == int((clock.now + 30) * 1000)


def test_percentage_is_monotonic_and_reaches_100(progress: ProgressTracker) -> None:
    """Test non-decreasing updates give non-decreasing percentages ending at 100."""
    session_id = progress.start("bulk_generate", 7)

    percentages: list[int] = []
    for current in (0, 1, 1, 3, 4, 6, 7):
        _ = progress.update(session_id, current)
        session = progress.get(session_id)
        assert session is not None
        percentages.append(session.percentage)

    assert percentages == sorted(percentages)
    assert percentages[-1] == 100
    session = progress.get(session_id)
    assert session is not None
    assert session.status == ProgressStatus.completed
    assert session.completed_at is not None


def test_current_never_moves_backwards(progress: ProgressTracker) -> None:
    session_id = progress.start("bulk_generate", 10)
    _ = progress.update(session_id, 6)
    _ = progress.update(session_id, 2)

    session = progress.get(session_id)
    assert session is not None
    assert session.current == 6
    assert session.percentage == 60


def test_current_is_clamped_to_total(progress: ProgressTracker) -> None:
    session_id = progress.start("bulk_generate", 4)
    _ = progress.update(session_id, 9)

    session = progress.get(session_id)
    assert session is not None
    assert session.current == 4
    assert session.percentage == 100


def test_terminal_session_ignores_updates(progress: ProgressTracker) -> None:
    session_id = progress.start("bulk_generate", 10)
    assert progress.complete(session_id, ProgressStatus.failed, "aborted") is True

    assert progress.update(session_id, 5) is False
    assert progress.complete(session_id) is False

    session = progress.get(session_id)
    assert session is not None
    assert session.status == ProgressStatus.failed
    assert session.current == 0


def test_cancel(progress: ProgressTracker) -> None:
    session_id = progress.start("bulk_delete", 3)

    assert progress.cancel(session_id) is True

    assert progress.is_cancelled(session_id) is True
    session = progress.get(session_id)
    assert session is not None
    assert session.messages[-1].message == "Operation cancelled by user"


def test_update_from_stale_read_keeps_cancel(
    progress: ProgressTracker, kv_store: KeyValueStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test an update that read the session before a cancel cannot undo it."""
    session_id = progress.start("bulk_generate", 10)
    before_cancel = kv_store.get_versioned(f"{PROGRESS_PREFIX}{session_id}")
    assert progress.cancel(session_id) is True

    reads: list[str] = []
    real_get_versioned = kv_store.get_versioned

    def first_read_is_stale(key: str) -> tuple[JsonValue, str] | None:
        reads.append(key)
        return before_cancel if len(reads) == 1 else real_get_versioned(key)

    monkeypatch.setattr(kv_store, "get_versioned", first_read_is_stale)

    assert progress.update(session_id, 5, message="chunk done") is False
    assert progress.complete(session_id) is False
    assert len(reads) == 3

    monkeypatch.undo()
    session = progress.get(session_id)
    assert session is not None
    assert session.status == ProgressStatus.cancelled
    assert session.current == 0


def test_unknown_session(progress: ProgressTracker) -> None:
    assert progress.get("missing") is None
    assert progress.update("missing", 1) is False
    assert progress.add_error("missing", "boom") is False


def test_empty_session_completes_immediately(progress: ProgressTracker) -> None:
    session_id = progress.start("bulk_generate", 0)
    _ = progress.update(session_id, 0)

    session = progress.get(session_id)
    assert session is not None
    assert session.status == ProgressStatus.completed
    assert session.percentage == 100


# ============================================================================
# Ring Buffer Tests
# ============================================================================


def test_messages_are_bounded(progress: ProgressTracker) -> None:
    session_id = progress.start("bulk_generate", 100)
    for current in range(1, 9):
        _ = progress.update(session_id, current, message=f"item {current}")

    session = progress.get(session_id)
    assert session is not None
    assert [m.message for m in session.messages] == [f"item {i}" for i in range(4, 9)]


def test_errors_are_bounded(progress: ProgressTracker) -> None:
    session_id = progress.start("bulk_generate", 100)
    for index in range(7):
        _ = progress.add_error(session_id, f"error {index}", {"index": index})

    session = progress.get(session_id)
    assert session is not None
    assert len(session.errors) == 5
    assert session.errors[0].message == "error 2"
    assert session.errors[-1].context == {"index": 6}


# ============================================================================
# Query / Cleanup Tests
# ============================================================================


def test_active_sessions(progress: ProgressTracker) -> None:
    running = progress.start("bulk_generate", 5)
    finished = progress.start("bulk_delete", 5)
    _ = progress.complete(finished)

    assert [session.id for session in progress.active_sessions()] == [running]


def test_cleanup_old_sessions(kv_store: KeyValueStore, clock: FakeClock) -> None:
    progress = ProgressTracker(kv_store, ttl=7 * 86400, clock=clock)
    finished = progress.start("bulk_delete", 1)
    _ = progress.update(finished, 1)
    running = progress.start("bulk_generate", 5)
    clock.advance(3 * 3600)

    assert progress.cleanup_old_sessions() == 1
    assert progress.get(running) is not None

    clock.advance(22 * 3600)
    assert progress.cleanup_old_sessions() == 1


def test_progress_events_are_published(
    progress: ProgressTracker, notifier: RecordingNotifier
) -> None:
    session_id = progress.start("bulk_generate", 2)
    _ = progress.update(session_id, 2)

    assert [event[0] for event in notifier.events] == ["progress_running", "progress_completed"]
    assert notifier.events[-1][2]["percentage"] == 100


def test_sessions_expire_with_ttl(kv_store: KeyValueStore, clock: FakeClock) -> None:
    tracker = ProgressTracker(kv_store, ttl=60, clock=clock)
    session_id = tracker.start("bulk_generate", 5)
    clock.advance(61)

    assert tracker.get(session_id) is None
