"""Durable queue of deferred artifact work.

``QueueStore`` owns every read and write of the ``queue_items`` table. It knows
nothing about what an action means; the queue manager drives the state machine:

    pending -> processing -> completed
    processing -> pending   (attempts remain)
    processing -> failed    (attempts exhausted)
"""

import logging
import time
from collections.abc import Callable, Iterable

from pydantic import JsonValue
from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .models import QueueItem
from .queue_translator import db_item_to_record, new_db_item
from .schemas import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    ProcessingStats,
    QueueItemRecord,
    QueueStats,
    QueueStatus,
)

logger = logging.getLogger(__name__)

_ACTIVE = [status.value for status in ACTIVE_STATUSES]
_TERMINAL = [status.value for status in TERMINAL_STATUSES]


class QueueStore:
    """SQLAlchemy repository for queue items.

    Claims use optimistic locking: the ``UPDATE ... WHERE status='pending'``
    only affects a row for the first caller, so two overlapping ticks can
    never both move the same item to ``processing``.

    Example:
        store = QueueStore(session_factory)
        item_id, created = store.add("42", "generate", priority=5)
        for item in store.select_pending(limit=5):
            if store.mark_processing(item.id):
                ...
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Callable[[], float] = time.time,
    ):
        self.session_factory: sessionmaker[Session] = session_factory
        self._clock: Callable[[], float] = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _active_duplicate(session: Session, target_id: str, action: str) -> QueueItem | None:
        stmt = (
            select(QueueItem)
            .where(
                QueueItem.target_id == target_id,
                QueueItem.action == action,
                QueueItem.status.in_(_ACTIVE),
            )
            .order_by(QueueItem.id)
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    # -------------------------------------------------------------------------
    # Insert
    # -------------------------------------------------------------------------

    def add(
        self,
        target_id: str,
        action: str,
        *,
        target_type: str = "post",
        priority: int = 10,
        max_attempts: int = 3,
        payload: dict[str, JsonValue] | None = None,
        raise_priority: bool = False,
    ) -> tuple[int, bool]:
        """Insert a pending item unless one is already active.

        Args:
            target_id: Resource to act on
            action: Action name
            target_type: Resource type tag
            priority: Lower value means processed earlier
            max_attempts: Attempts before the item is marked failed
            payload: Extra data handed to custom action handlers
            raise_priority: On a duplicate, lower the existing item's
                priority value to ``priority`` if that is more urgent

        Returns:
            ``(item_id, created)``; ``created`` is False for a duplicate
        """
        target_id = str(target_id)
        with self.session_factory() as session:
            existing = self._active_duplicate(session, target_id, action)
            if existing is not None:
                if raise_priority and priority < existing.priority:
                    logger.debug(
                        f"Raising priority of queue item {existing.id} "
                        f"from {existing.priority} to {priority}"
                    )
                    existing.priority = priority
                    session.commit()
                return existing.id, False

            db_item = new_db_item(
                target_id,
                action,
                target_type=target_type,
                priority=priority,
                max_attempts=max_attempts,
                payload=payload,
                created_at=self._now_ms(),
            )
            session.add(db_item)
            try:
                session.commit()
            except IntegrityError:
                # A concurrent enqueue inserted the active item first
                session.rollback()
                existing = self._active_duplicate(session, target_id, action)
                if existing is None:
                    raise
                return existing.id, False
            return db_item.id, True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, item_id: int) -> QueueItemRecord | None:
        with self.session_factory() as session:
            db_item = session.get(QueueItem, item_id)
            return db_item_to_record(db_item) if db_item else None

    def select_pending(self, limit: int) -> list[QueueItemRecord]:
        """Return up to ``limit`` pending items in scheduling order.

        Order is ``(priority ASC, created_at ASC)`` with the id as a final
        tie-breaker for items created in the same millisecond.
        """
        with self.session_factory() as session:
            stmt = (
                select(QueueItem)
                .where(QueueItem.status == QueueStatus.pending.value)
                .order_by(QueueItem.priority, QueueItem.created_at, QueueItem.id)
                .limit(limit)
            )
            return [db_item_to_record(item) for item in session.execute(stmt).scalars()]

    def list_items(
        self,
        status: QueueStatus | None = None,
        limit: int = 50,
        offset: int = 0,
        newest_first: bool = True,
    ) -> list[QueueItemRecord]:
        with self.session_factory() as session:
            stmt = select(QueueItem)
            if status is not None:
                stmt = stmt.where(QueueItem.status == QueueStatus(status).value)
            if newest_first:
                stmt = stmt.order_by(QueueItem.created_at.desc(), QueueItem.id.desc())
            else:
                stmt = stmt.order_by(QueueItem.created_at, QueueItem.id)
            stmt = stmt.limit(limit).offset(offset)
            return [db_item_to_record(item) for item in session.execute(stmt).scalars()]

    def counts(self) -> QueueStats:
        with self.session_factory() as session:
            stmt = select(QueueItem.status, func.count()).group_by(QueueItem.status)
            rows = session.execute(stmt).all()

        stats = QueueStats()
        for status, count in rows:
            if status in QueueStats.model_fields:
                setattr(stats, status, count)
            stats.total += count
        return stats

    def processing_stats(self) -> ProcessingStats:
        """Aggregate timing and success rate over finished items."""
        with self.session_factory() as session:
            duration = QueueItem.completed_at - QueueItem.started_at
            stmt = select(
                func.count(),
                func.sum(case((QueueItem.status == QueueStatus.completed.value, 1), else_=0)),
                func.avg(duration),
            ).where(
                QueueItem.status.in_(_TERMINAL),
                QueueItem.started_at.is_not(None),
                QueueItem.completed_at.is_not(None),
            )
            total, successful, avg_ms = session.execute(stmt).one()

        total = total or 0
        successful = int(successful or 0)
        return ProcessingStats(
            avg_processing_time=round(float(avg_ms or 0) / 1000, 3),
            success_rate=round(successful / total * 100, 2) if total else 0.0,
            total_processed=total,
            successful=successful,
        )

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def mark_processing(self, item_id: int) -> bool:
        """Claim a pending item, incrementing its attempts.

        Returns:
            True if this call claimed the item, False if it was no longer pending
        """
        with self.session_factory() as session:
            stmt = (
                update(QueueItem)
                .where(
                    QueueItem.id == item_id,
                    QueueItem.status == QueueStatus.pending.value,  # Optimistic lock
                    QueueItem.attempts < QueueItem.max_attempts,
                )
                .values(
                    status=QueueStatus.processing.value,
                    attempts=QueueItem.attempts + 1,
                    started_at=self._now_ms(),
                )
            )
            result = session.execute(stmt)
            session.commit()
            return (result.rowcount or 0) == 1

    def mark_completed(self, item_id: int) -> bool:
        with self.session_factory() as session:
            stmt = (
                update(QueueItem)
                .where(
                    QueueItem.id == item_id,
                    QueueItem.status == QueueStatus.processing.value,
                )
                .values(
                    status=QueueStatus.completed.value,
                    completed_at=self._now_ms(),
                    error_message=None,
                )
            )
            result = session.execute(stmt)
            session.commit()
            return (result.rowcount or 0) == 1

    def mark_attempt_failed(self, item_id: int, error_message: str) -> QueueStatus | None:
        """Record a failed attempt on a processing item.

        The item goes back to ``pending`` at the back of its priority band
        while attempts remain, otherwise to ``failed``.

        Returns:
            The new status, or None if the item was not processing
        """
        now_ms = self._now_ms()
        with self.session_factory() as session:
            db_item = session.get(QueueItem, item_id)
            if db_item is None or db_item.status != QueueStatus.processing.value:
                return None

            db_item.error_message = error_message
            if db_item.attempts < db_item.max_attempts:
                db_item.status = QueueStatus.pending.value
                db_item.created_at = now_ms
                db_item.started_at = None
            else:
                db_item.status = QueueStatus.failed.value
                db_item.completed_at = now_ms
            new_status = QueueStatus(db_item.status)
            session.commit()
            return new_status

    def requeue_stale(self, stale_before_ms: int) -> tuple[int, int]:
        """Recover items stuck in ``processing`` since before ``stale_before_ms``.

        Returns:
            ``(requeued, failed)`` counts
        """
        requeued = failed = 0
        now_ms = self._now_ms()
        with self.session_factory() as session:
            stmt = select(QueueItem).where(
                QueueItem.status == QueueStatus.processing.value,
                or_(QueueItem.started_at.is_(None), QueueItem.started_at < stale_before_ms),
            )
            for db_item in session.execute(stmt).scalars():
                if db_item.attempts < db_item.max_attempts:
                    db_item.status = QueueStatus.pending.value
                    db_item.started_at = None
                    requeued += 1
                else:
                    db_item.status = QueueStatus.failed.value
                    db_item.completed_at = now_ms
                    db_item.error_message = "Processing timed out"
                    failed += 1
            session.commit()
        return requeued, failed

    def retry_failed(self) -> int:
        """Reset failed items to pending with a fresh attempt budget.

        Items whose (target_id, action) already has an active item are left
        failed.
        """
        reset = 0
        now_ms = self._now_ms()
        with self.session_factory() as session:
            stmt = (
                select(QueueItem)
                .where(QueueItem.status == QueueStatus.failed.value)
                .order_by(QueueItem.id)
            )
            for db_item in session.execute(stmt).scalars().all():
                if self._active_duplicate(session, db_item.target_id, db_item.action):
                    continue
                db_item.status = QueueStatus.pending.value
                db_item.attempts = 0
                db_item.created_at = now_ms
                db_item.started_at = None
                db_item.completed_at = None
                db_item.error_message = None
                session.flush()
                reset += 1
            session.commit()
        return reset

    # -------------------------------------------------------------------------
    # Purge
    # -------------------------------------------------------------------------

    def clear(self, statuses: Iterable[QueueStatus] | None = None) -> int:
        """Delete items, optionally only those in ``statuses``."""
        with self.session_factory() as session:
            stmt = delete(QueueItem)
            if statuses is not None:
                stmt = stmt.where(QueueItem.status.in_([QueueStatus(s).value for s in statuses]))
            result = session.execute(stmt)
            session.commit()
            return result.rowcount or 0

    def purge_old(self, older_than_ms: int) -> int:
        """Delete terminal items that finished before ``older_than_ms``."""
        with self.session_factory() as session:
            stmt = delete(QueueItem).where(
                QueueItem.status.in_(_TERMINAL),
                func.coalesce(QueueItem.completed_at, QueueItem.created_at) < older_than_ms,
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount or 0
