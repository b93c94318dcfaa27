"""Tests for QueueStore and QueueManager."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.exc import IntegrityError

from static_cache_jobs.kv_store import KeyValueStore
from static_cache_jobs.models import QueueItem
from static_cache_jobs.queue_manager import PROCESSING_FLAG, QueueManager
from static_cache_jobs.queue_store import QueueStore
from static_cache_jobs.schemas import OperationResult, QueueAction, QueueItemRecord, QueueStatus

if TYPE_CHECKING:
    from conftest import FakeClock, FakeProducer, RecordingNotifier

    from sqlalchemy.orm import Session, sessionmaker

    from static_cache_jobs.artifact_storage import ArtifactStorageService


# ============================================================================
# QueueStore Tests
# ============================================================================


def test_add_assigns_pending_item(queue_store: QueueStore, clock: FakeClock) -> None:
    item_id, created = queue_store.add("42", "generate", priority=5, payload={"source": "save"})

    assert created is True
    item = queue_store.get(item_id)
    assert item is not None
    assert item.status == QueueStatus.pending
    assert item.attempts == 0
    assert item.max_attempts == 3
    assert item.priority == 5
    assert item.payload == {"source": "save"}
    assert item.created_at == int(clock.now * 1000)


def test_add_deduplicates_active_items(queue_store: QueueStore) -> None:
    first, _ = queue_store.add("42", "generate")
    second, created = queue_store.add("42", "generate")
    other, other_created = queue_store.add("42", "delete")

    assert second == first
    assert created is False
    assert other != first
    assert other_created is True


def test_add_race_returns_existing_item(
    queue_store: QueueStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test an enqueue whose duplicate check ran before another insert committed."""
    first, _ = queue_store.add("42", "generate")
    original = QueueStore._active_duplicate
    checks: list[str] = []

    def late_check(session: Session, target_id: str, action: str) -> QueueItem | None:
        checks.append(target_id)
        if len(checks) == 1:
            return None
        return original(session, target_id, action)

    monkeypatch.setattr(QueueStore, "_active_duplicate", staticmethod(late_check))

    second, created = queue_store.add("42", "generate")

    assert (second, created) == (first, False)
    assert queue_store.counts().pending == 1


def test_active_items_are_unique_per_target_and_action(
    session_factory: sessionmaker[Session],
) -> None:
    with session_factory() as session:
        for _ in range(2):
            session.add(
                QueueItem(target_id="42", action="generate", status="pending", created_at=1)
            )
        with pytest.raises(IntegrityError):
            session.commit()


def test_terminal_items_do_not_block_new_items(queue_store: QueueStore) -> None:
    first, _ = queue_store.add("42", "generate")
    _ = queue_store.mark_processing(first)
    _ = queue_store.mark_completed(first)

    second, created = queue_store.add("42", "generate")

    assert created is True
    assert second != first


def test_mark_processing_is_optimistic(queue_store: QueueStore) -> None:
    """Test only the first claim of an item succeeds."""
    item_id, _ = queue_store.add("42", "generate")

    assert queue_store.mark_processing(item_id) is True
    assert queue_store.mark_processing(item_id) is False

    item = queue_store.get(item_id)
    assert item is not None
    assert item.status == QueueStatus.processing
    assert item.attempts == 1
    assert item.started_at is not None


def test_requeue_stale(queue_store: QueueStore, clock: FakeClock) -> None:
    stuck, _ = queue_store.add("42", "generate")
    exhausted, _ = queue_store.add("43", "generate", max_attempts=1)
    _ = queue_store.mark_processing(stuck)
    _ = queue_store.mark_processing(exhausted)
    clock.advance(700)

    requeued, failed = queue_store.requeue_stale(int((clock.now - 600) * 1000))

    assert (requeued, failed) == (1, 1)
    stuck_item = queue_store.get(stuck)
    exhausted_item = queue_store.get(exhausted)
    assert stuck_item is not None and stuck_item.status == QueueStatus.pending
    assert exhausted_item is not None and exhausted_item.status == QueueStatus.failed
    assert exhausted_item.error_message == "Processing timed out"


def test_requeue_stale_ignores_recent(queue_store: QueueStore, clock: FakeClock) -> None:
    item_id, _ = queue_store.add("42", "generate")
    _ = queue_store.mark_processing(item_id)
    clock.advance(30)

    assert queue_store.requeue_stale(int((clock.now - 600) * 1000)) == (0, 0)


# ============================================================================
# Enqueue Tests
# ============================================================================


def test_enqueue_returns_existing_id(queue_manager: QueueManager) -> None:
    first = queue_manager.enqueue("42", QueueAction.generate)

    assert queue_manager.enqueue("42", QueueAction.generate) == first
    assert queue_manager.status().pending == 1


def test_enqueue_raises_priority_of_duplicate(queue_manager: QueueManager) -> None:
    item_id = queue_manager.enqueue("42")

    _ = queue_manager.enqueue("42", priority=1)
    item = queue_manager.store.get(item_id)
    assert item is not None
    assert item.priority == 1

    _ = queue_manager.enqueue("42", priority=20)
    item = queue_manager.store.get(item_id)
    assert item is not None
    assert item.priority == 1


def test_enqueue_after_completion_creates_new_item(queue_manager: QueueManager) -> None:
    first = queue_manager.enqueue("42")
    _ = queue_manager.tick()

    assert queue_manager.enqueue("42") != first


def test_bulk_enqueue(queue_manager: QueueManager) -> None:
    result = queue_manager.bulk_enqueue(["42", "43", "42", ""], QueueAction.regenerate)

    assert (result.added, result.skipped, result.failed) == (2, 1, 1)


# ============================================================================
# Tick Tests
# ============================================================================


def test_tick_processes_by_priority(
    queue_manager: QueueManager, producer: FakeProducer, storage: ArtifactStorageService
) -> None:
    """Test priorities [5, 1, 3] are processed as [1, 3, 5]."""
    producer.pages["44"] = b"<html>post 44</html>"
    _ = queue_manager.enqueue("42", priority=5)
    _ = queue_manager.enqueue("43", priority=1)
    _ = queue_manager.enqueue("44", priority=3)

    result = queue_manager.tick()

    assert producer.captures == ["43", "44", "42"]
    assert result.processed == 3
    assert result.completed == 3
    assert storage.exists("42") and storage.exists("43") and storage.exists("44")
    assert queue_manager.status().completed == 3


def test_tick_breaks_ties_by_creation_order(
    queue_manager: QueueManager, producer: FakeProducer, clock: FakeClock
) -> None:
    _ = queue_manager.enqueue("43", priority=2)
    clock.advance(1)
    _ = queue_manager.enqueue("42", priority=2)

    _ = queue_manager.tick()

    assert producer.captures == ["43", "42"]


def test_tick_respects_batch_size(queue_manager: QueueManager, producer: FakeProducer) -> None:
    for post_id in range(100, 107):
        producer.pages[str(post_id)] = b"<html></html>"
        _ = queue_manager.enqueue(str(post_id))

    result = queue_manager.tick()

    assert result.processed == 5
    assert queue_manager.status().pending == 2


def test_retry_terminal_transition(
    queue_manager: QueueManager, notifier: RecordingNotifier
) -> None:
    """Test an always-failing item is retried twice, then marked failed."""
    item_id = queue_manager.enqueue("999", max_attempts=3)

    observed: list[tuple[QueueStatus, int]] = []
    for _ in range(3):
        _ = queue_manager.tick()
        item = queue_manager.store.get(item_id)
        assert item is not None
        observed.append((item.status, item.attempts))

    assert observed == [
        (QueueStatus.pending, 1),
        (QueueStatus.pending, 2),
        (QueueStatus.failed, 3),
    ]
    item = queue_manager.store.get(item_id)
    assert item is not None
    assert item.error_message is not None
    assert "999" in item.error_message
    assert item.completed_at is not None

    assert len(notifier.errors) == 1
    assert notifier.errors[0].context == "queue_manager"
    assert notifier.errors[0].data["attempts"] == 3

    # Terminal items are never picked up again
    assert queue_manager.tick().processed == 0


def test_tick_is_not_reentrant(queue_manager: QueueManager, kv_store: KeyValueStore) -> None:
    _ = queue_manager.enqueue("42")
    assert kv_store.add(PROCESSING_FLAG, {"started_at": 0}, ttl=20) is True

    result = queue_manager.tick()

    assert result.skipped is True
    assert queue_manager.status().pending == 1


def test_tick_releases_flag(queue_manager: QueueManager) -> None:
    _ = queue_manager.enqueue("42")

    _ = queue_manager.tick()

    assert queue_manager.is_processing() is False


def test_stale_flag_expires(
    queue_manager: QueueManager, kv_store: KeyValueStore, clock: FakeClock
) -> None:
    """Test a flag left by a crashed tick stops blocking after the time budget."""
    _ = kv_store.add(PROCESSING_FLAG, {"started_at": 0}, ttl=20)
    _ = queue_manager.enqueue("42")
    clock.advance(21)

    assert queue_manager.tick().completed == 1


def test_slow_tick_keeps_newer_flag(
    queue_manager: QueueManager, kv_store: KeyValueStore, clock: FakeClock
) -> None:
    """Test a tick that outlives its flag leaves the next tick's flag alone."""
    claimed: list[bool] = []

    def slow(item: QueueItemRecord) -> OperationResult:
        clock.advance(25)
        claimed.append(kv_store.add(PROCESSING_FLAG, {"started_at": 1}, ttl=20))
        return OperationResult(success=True, resource_id=item.target_id)

    queue_manager.register_action("warm", slow)
    _ = queue_manager.enqueue("42", "warm")

    assert queue_manager.tick().completed == 1
    assert claimed == [True]
    assert kv_store.get(PROCESSING_FLAG) == {"started_at": 1}
    assert queue_manager.tick().skipped is True


def test_tick_stops_at_time_budget(queue_manager: QueueManager, clock: FakeClock) -> None:
    def slow(item: QueueItemRecord) -> OperationResult:
        clock.advance(15)
        return OperationResult(success=True, resource_id=item.target_id)

    queue_manager.register_action("warm", slow)
    for target in ("1", "2", "3"):
        _ = queue_manager.enqueue(target, "warm")

    result = queue_manager.tick()

    assert result.processed == 2
    assert queue_manager.status().pending == 1


# ============================================================================
# Actions Tests
# ============================================================================


def test_regenerate_and_delete_actions(
    queue_manager: QueueManager, storage: ArtifactStorageService
) -> None:
    _ = queue_manager.enqueue("42", QueueAction.regenerate)
    _ = queue_manager.tick()
    assert storage.exists("42") is True

    _ = queue_manager.enqueue("42", QueueAction.delete)
    _ = queue_manager.tick()
    assert storage.exists("42") is False


def test_custom_action_receives_payload(queue_manager: QueueManager) -> None:
    received: list[QueueItemRecord] = []

    def purge_cdn(item: QueueItemRecord) -> OperationResult:
        received.append(item)
        return OperationResult(success=True, resource_id=item.target_id)

    queue_manager.register_action("purge_cdn", purge_cdn)
    _ = queue_manager.enqueue("42", "purge_cdn", payload={"zone": "eu"})

    result = queue_manager.tick()

    assert result.completed == 1
    assert received[0].payload == {"zone": "eu"}
    assert received[0].attempts == 1


def test_unknown_action_fails(queue_manager: QueueManager) -> None:
    item_id = queue_manager.enqueue("42", "publish", max_attempts=1)

    _ = queue_manager.tick()

    item = queue_manager.store.get(item_id)
    assert item is not None
    assert item.status == QueueStatus.failed
    assert item.error_message == "Unknown action"


def test_raising_handler_is_contained(queue_manager: QueueManager) -> None:
    def explode(item: QueueItemRecord) -> OperationResult:
        raise RuntimeError("boom")

    queue_manager.register_action("explode", explode)
    item_id = queue_manager.enqueue("42", "explode")

    result = queue_manager.tick()

    assert result.requeued == 1
    item = queue_manager.store.get(item_id)
    assert item is not None
    assert item.error_message == "boom"


# ============================================================================
# Administration Tests
# ============================================================================


def test_status_counts(queue_manager: QueueManager) -> None:
    _ = queue_manager.enqueue("42")
    _ = queue_manager.enqueue("999", max_attempts=1)
    _ = queue_manager.enqueue("43")
    _ = queue_manager.tick()
    _ = queue_manager.enqueue("44")

    stats = queue_manager.status()

    assert (stats.total, stats.pending, stats.completed, stats.failed) == (4, 1, 2, 1)


def test_get_items_filters_and_orders(queue_manager: QueueManager, clock: FakeClock) -> None:
    for target in ("1", "2", "3"):
        _ = queue_manager.enqueue(target)
        clock.advance(1)

    newest = queue_manager.get_items(QueueStatus.pending, limit=2)
    oldest = queue_manager.get_items(newest_first=False, limit=1, offset=1)

    assert [item.target_id for item in newest] == ["3", "2"]
    assert [item.target_id for item in oldest] == ["2"]


def test_clear_by_status(queue_manager: QueueManager) -> None:
    _ = queue_manager.enqueue("999", max_attempts=1)
    _ = queue_manager.tick()
    _ = queue_manager.enqueue("42")

    assert queue_manager.clear(QueueStatus.failed) == 1
    assert queue_manager.status().total == 1
    assert queue_manager.clear() == 1


def test_cleanup_old_items(queue_manager: QueueManager, clock: FakeClock) -> None:
    _ = queue_manager.enqueue("42")
    _ = queue_manager.tick()
    clock.advance(8 * 86400)
    _ = queue_manager.enqueue("43")

    assert queue_manager.cleanup_old_items(retention_days=7) == 1
    assert queue_manager.status().pending == 1


def test_retry_failed_items(queue_manager: QueueManager) -> None:
    item_id = queue_manager.enqueue("999", max_attempts=1)
    _ = queue_manager.tick()

    assert queue_manager.retry_failed_items() == 1

    item = queue_manager.store.get(item_id)
    assert item is not None
    assert item.status == QueueStatus.pending
    assert item.attempts == 0
    assert item.error_message is None


def test_processing_stats(queue_manager: QueueManager, clock: FakeClock) -> None:
    def timed(item: QueueItemRecord) -> OperationResult:
        clock.advance(2)
        if item.target_id == "bad":
            return OperationResult.failure(item.target_id, "nope", "error")
        return OperationResult(success=True, resource_id=item.target_id)

    queue_manager.register_action("timed", timed)
    _ = queue_manager.enqueue("good", "timed")
    _ = queue_manager.enqueue("bad", "timed", max_attempts=1)
    _ = queue_manager.tick()

    stats = queue_manager.processing_stats()

    assert stats.total_processed == 2
    assert stats.successful == 1
    assert stats.success_rate == 50.0
    assert stats.avg_processing_time == 2.0
