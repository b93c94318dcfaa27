"""Queue item conversion between the ORM row and the pydantic record."""


# -------------------------------------------------------------------------
# Pydantic Conversion Helpers
# -------------------------------------------------------------------------

import time

from pydantic import JsonValue

from .models import QueueItem
from .schemas import QueueItemRecord, QueueStatus


def db_item_to_record(db_item: QueueItem) -> QueueItemRecord:
    """Convert SQLAlchemy QueueItem to Pydantic QueueItemRecord.

    Returns:
        Detached record safe to use after the session is closed
    """
    payload = db_item.payload if isinstance(db_item.payload, dict) else {}
    return QueueItemRecord(
        id=db_item.id,
        target_id=db_item.target_id,
        target_type=db_item.target_type,
        action=db_item.action,
        priority=db_item.priority,
        status=QueueStatus(db_item.status),
        attempts=db_item.attempts,
        max_attempts=db_item.max_attempts,
        payload=payload,
        created_at=db_item.created_at,
        started_at=db_item.started_at,
        completed_at=db_item.completed_at,
        error_message=db_item.error_message,
    )


def new_db_item(
    target_id: str,
    action: str,
    *,
    target_type: str = "post",
    priority: int = 10,
    max_attempts: int = 3,
    payload: dict[str, JsonValue] | None = None,
    created_at: int | None = None,
) -> QueueItem:
    """Create a pending SQLAlchemy QueueItem.

    Returns:
        SQLAlchemy QueueItem instance (not persisted)
    """
    return QueueItem(
        target_id=str(target_id),
        target_type=target_type,
        action=action,
        priority=priority,
        status=QueueStatus.pending.value,
        attempts=0,
        max_attempts=max_attempts,
        payload=payload or {},
        created_at=created_at if created_at is not None else int(time.time() * 1000),
    )
