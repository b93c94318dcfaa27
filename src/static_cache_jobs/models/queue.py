"""Queue item model for deferred artifact work."""

from typing import TypeAlias, override

from sqlalchemy import BigInteger, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base

JSONPrimitive: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONPrimitive | list["JSONValue"] | dict[str, "JSONValue"]


class QueueItem(Base):
    """Unit of deferred work against one resource.

    Written by the queue manager (enqueue, tick) and by the recovery sweep
    (stale requeue). Rows in a terminal state are purged after the retention
    window.

    Database-specific fields:
    - id: Primary key, monotonically assigned; tie-breaker for ordering
    - created_at, started_at, completed_at: Timestamps in milliseconds
    - attempts, max_attempts: Retry bookkeeping
    """

    __tablename__ = "queue_items"  # pyright: ignore[reportUnannotatedClassAttribute]
    __table_args__ = (  # pyright: ignore[reportUnannotatedClassAttribute]
        Index("ix_queue_items_priority_status", "priority", "status"),
        Index("ix_queue_items_target_action", "target_id", "action"),
        # At most one pending or processing item per (target_id, action)
        Index(
            "uq_queue_items_active_target_action",
            "target_id",
            "action",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    target_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    target_type: Mapped[str] = mapped_column(String(50), nullable=False, default="post")
    action: Mapped[str] = mapped_column(String(50), nullable=False, default="generate")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    payload: Mapped[JSONValue] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    @override
    def __repr__(self) -> str:
        return (
            f"<QueueItem(id={self.id}, target_id={self.target_id}, "
            f"action={self.action}, status={self.status})>"
        )
