"""Scheduling loop over the durable queue.

A scheduler calls ``tick()`` on a fixed interval. Each tick is a single,
time-boxed pass guarded by a global non-reentrancy flag in the key/value
store; items run through the atomic executor one at a time.
"""

import logging
import time
from collections.abc import Callable, Iterable

from pydantic import JsonValue

from .atomic import AtomicOperationExecutor
from .kv_store import KeyValueStore
from .notifier import Notifier, report_failure
from .queue_store import QueueStore
from .schemas import (
    BulkEnqueueResult,
    OperationResult,
    ProcessingStats,
    QueueAction,
    QueueItemRecord,
    QueueStats,
    QueueStatus,
    TickResult,
)

logger = logging.getLogger(__name__)

PROCESSING_FLAG = "queue:processing"

ActionHandler = Callable[[QueueItemRecord], OperationResult]


class QueueManager:
    """Enqueue work and drain it in bounded ticks.

    Example:
        manager = QueueManager(queue_store, kv_store, executor)
        manager.enqueue("42", QueueAction.generate)
        result = manager.tick()
    """

    def __init__(
        self,
        store: QueueStore,
        kv: KeyValueStore,
        executor: AtomicOperationExecutor,
        batch_size: int | None = None,
        time_limit: int | None = None,
        default_priority: int | None = None,
        max_attempts: int | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
    ):
        from .config import Config

        self.store: QueueStore = store
        self.kv: KeyValueStore = kv
        self.executor: AtomicOperationExecutor = executor
        self.batch_size: int = batch_size or Config.QUEUE_BATCH_SIZE
        self.time_limit: int = time_limit or Config.QUEUE_TIME_LIMIT
        self.default_priority: int = (
            default_priority if default_priority is not None else Config.QUEUE_DEFAULT_PRIORITY
        )
        self.max_attempts: int = max_attempts or Config.QUEUE_MAX_ATTEMPTS
        self.notifier: Notifier | None = notifier
        self._clock: Callable[[], float] = clock
        self._handlers: dict[str, ActionHandler] = {}

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        target_id: str,
        action: QueueAction | str = QueueAction.generate,
        priority: int | None = None,
        payload: dict[str, JsonValue] | None = None,
        target_type: str = "post",
        max_attempts: int | None = None,
    ) -> int:
        """Add an item, or return the id of the active duplicate.

        When a duplicate is pending or processing and ``priority`` is more
        urgent than the default, the existing item's priority is raised.

        Returns:
            Queue item id
        """
        action = self._action_name(action)
        effective_priority = priority if priority is not None else self.default_priority
        item_id, created = self.store.add(
            target_id,
            action,
            target_type=target_type,
            priority=effective_priority,
            max_attempts=max_attempts or self.max_attempts,
            payload=payload,
            raise_priority=effective_priority < self.default_priority,
        )
        if created:
            logger.debug(f"Queued {action} for {target_id} (item {item_id})")
        else:
            logger.debug(f"{action} for {target_id} already queued as item {item_id}")
        return item_id

    def bulk_enqueue(
        self,
        target_ids: Iterable[str],
        action: QueueAction | str = QueueAction.generate,
        priority: int | None = None,
        payload: dict[str, JsonValue] | None = None,
    ) -> BulkEnqueueResult:
        """Enqueue many targets, counting new, duplicate and rejected items."""
        result = BulkEnqueueResult()
        for target_id in target_ids:
            if target_id is None or str(target_id).strip() == "":
                result.failed += 1
                continue
            before, created = self.store.add(
                target_id,
                self._action_name(action),
                priority=priority if priority is not None else self.default_priority,
                max_attempts=self.max_attempts,
                payload=payload,
            )
            if created:
                result.added += 1
            else:
                result.skipped += 1
                logger.debug(f"Skipped duplicate queue item {before} for {target_id}")
        return result

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def tick(self) -> TickResult:
        """Run one bounded scheduling pass.

        Returns:
            ``TickResult(skipped=True)`` if another tick holds the flag
        """
        started = self._clock()
        flag = {"started_at": int(started * 1000)}
        flag_version = self.kv.claim(PROCESSING_FLAG, flag, ttl=self.time_limit)
        if flag_version is None:
            logger.debug("Queue tick skipped: another tick is running")
            return TickResult(skipped=True)

        result = TickResult()
        try:
            for item in self.store.select_pending(self.batch_size):
                if self._clock() - started >= self.time_limit:
                    logger.info(
                        f"Queue tick time budget of {self.time_limit}s reached, "
                        f"leaving remaining items for the next tick"
                    )
                    break
                if not self.store.mark_processing(item.id):
                    continue

                item = item.model_copy(update={"attempts": item.attempts + 1})
                outcome = self._process_item(item)
                result.processed += 1

                if outcome.success:
                    _ = self.store.mark_completed(item.id)
                    result.completed += 1
                    continue

                error = outcome.error or "Unknown error"
                new_status = self.store.mark_attempt_failed(item.id, error)
                if new_status is QueueStatus.failed:
                    result.failed += 1
                    report_failure(
                        self.notifier,
                        "queue_manager",
                        f"Queue item {item.id} failed after {item.attempts} attempts: {error}",
                        item_id=item.id,
                        target_id=item.target_id,
                        action=item.action,
                        attempts=item.attempts,
                    )
                else:
                    result.requeued += 1
                    logger.warning(
                        f"Queue item {item.id} ({item.action} {item.target_id}) attempt "
                        f"{item.attempts}/{item.max_attempts} failed: {error}"
                    )
        except Exception as e:
            report_failure(
                self.notifier,
                "queue_manager",
                f"Queue processing error: {e}",
                severity="critical",
            )
        finally:
            self._release_flag(flag_version)

        result.elapsed_ms = int((self._clock() - started) * 1000)
        if result.processed > 0:
            logger.info(
                f"Processed {result.processed} queue items in {result.elapsed_ms}ms "
                f"({result.completed} completed, {result.requeued} requeued, {result.failed} failed)"
            )
        return result

    def _release_flag(self, flag_version: str) -> None:
        # The flag may have expired during a slow item and been claimed by
        # another tick; that tick owns it now.
        if not self.kv.delete_if(PROCESSING_FLAG, flag_version):
            logger.warning(
                "Queue tick outlived its processing flag; leaving the current flag in place"
            )

    def is_processing(self) -> bool:
        return self.kv.get(PROCESSING_FLAG) is not None

    def _process_item(self, item: QueueItemRecord) -> OperationResult:
        try:
            handler = self._handlers.get(item.action)
            if handler is not None:
                return handler(item)
            if item.action == QueueAction.generate.value:
                return self.executor.generate(item.target_id)
            if item.action == QueueAction.regenerate.value:
                return self.executor.regenerate(item.target_id)
            if item.action == QueueAction.delete.value:
                return self.executor.delete(item.target_id)
            return OperationResult.failure(item.target_id, "Unknown action", "unknown_action")
        except Exception as e:
            logger.exception(f"Queue item {item.id} raised: {e}")
            return OperationResult.failure(item.target_id, str(e), "error")

    # -------------------------------------------------------------------------
    # Custom actions
    # -------------------------------------------------------------------------

    def register_action(self, name: str, handler: ActionHandler) -> None:
        """Register a handler for a custom action name.

        Handlers for built-in names take precedence over the executor.
        """
        self._handlers[self._action_name(name)] = handler

    @staticmethod
    def _action_name(action: QueueAction | str) -> str:
        return action.value if isinstance(action, QueueAction) else str(action)

    # -------------------------------------------------------------------------
    # Inspection and administration
    # -------------------------------------------------------------------------

    def status(self) -> QueueStats:
        return self.store.counts()

    def get_items(
        self,
        status: QueueStatus | None = None,
        limit: int = 50,
        offset: int = 0,
        newest_first: bool = True,
    ) -> list[QueueItemRecord]:
        return self.store.list_items(status, limit, offset, newest_first)

    def clear(self, status: QueueStatus | Iterable[QueueStatus] | None = None) -> int:
        """Delete items; with no filter, every item is removed."""
        if isinstance(status, (QueueStatus, str)):
            statuses: list[QueueStatus] | None = [QueueStatus(status)]
        elif status is None:
            statuses = None
        else:
            statuses = [QueueStatus(s) for s in status]
        cleared = self.store.clear(statuses)
        logger.info(f"Cleared {cleared} queue item(s)")
        return cleared

    def cleanup_old_items(self, retention_days: int | None = None) -> int:
        """Purge completed and failed items older than the retention window."""
        if retention_days is None:
            from .config import Config

            retention_days = Config.QUEUE_RETENTION_DAYS
        cutoff_ms = int((self._clock() - retention_days * 86400) * 1000)
        purged = self.store.purge_old(cutoff_ms)
        if purged:
            logger.info(f"Cleaned up {purged} old queue item(s)")
        return purged

    def retry_failed_items(self) -> int:
        reset = self.store.retry_failed()
        if reset:
            logger.info(f"Reset {reset} failed queue item(s) to pending")
        return reset

    def processing_stats(self) -> ProcessingStats:
        return self.store.processing_stats()
