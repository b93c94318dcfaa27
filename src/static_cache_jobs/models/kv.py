"""Key/value entry model with optional expiry."""

from typing import override

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base
from .queue import JSONValue


class KeyValueEntry(Base):
    """Expiring key/value record.

    Backs locks, the queue tick flag, progress sessions and batch jobs. The key
    is the primary key, so inserting an existing key fails; that is the
    create-if-absent primitive the lock manager relies on. ``version`` is
    replaced on every write and makes conditional updates and deletes
    possible.
    """

    __tablename__ = "kv_entries"  # pyright: ignore[reportUnannotatedClassAttribute]

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[JSONValue] = mapped_column(JSON, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    version: Mapped[str] = mapped_column(String(32), nullable=False)
    # None means no expiry
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)

    @override
    def __repr__(self) -> str:
        return f"<KeyValueEntry(key={self.key}, expires_at={self.expires_at})>"
