"""SQLAlchemy-backed key/value store with TTL support.

Used for locks, the queue processing flag, progress sessions and batch state.
All operations open their own short session so that every write is committed
before the call returns.
"""

import logging
import time
import uuid
from collections.abc import Callable

from pydantic import JsonValue
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .models import KeyValueEntry

logger = logging.getLogger(__name__)


def _new_version() -> str:
    return uuid.uuid4().hex


class KeyValueStore:
    """Persistent key/value store with optional per-key expiry.

    Expired entries are treated as absent by every reader; they are removed
    lazily by ``add`` and in bulk by ``purge_expired``.

    Example:
        store = KeyValueStore(session_factory)
        if store.add("lock:42", {"holder": "worker-1"}, ttl=300):
            ...  # we own the key
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

    def _expires_at(self, ttl: float | None) -> int | None:
        if ttl is None:
            return None
        return self._now_ms() + int(ttl * 1000)

    @staticmethod
    def _is_live(entry: KeyValueEntry, now_ms: int) -> bool:
        return entry.expires_at is None or entry.expires_at > now_ms

    def get(self, key: str) -> JsonValue | None:
        """Get the value for ``key``, or None if missing or expired."""
        entry = self.get_versioned(key)
        return entry[0] if entry is not None else None

    def get_versioned(self, key: str) -> tuple[JsonValue, str] | None:
        """Get ``(value, version)`` for a live ``key``.

        The version changes on every write; pass it to ``replace_if`` or
        ``delete_if`` to act only if nobody wrote the key in between.
        """
        with self.session_factory() as session:
            entry = session.get(KeyValueEntry, key)
            if entry is None or not self._is_live(entry, self._now_ms()):
                return None
            return entry.value, entry.version

    def set(self, key: str, value: JsonValue, ttl: float | None = None) -> None:
        """Insert or overwrite ``key``.

        Args:
            key: Entry key
            value: JSON-serialisable value
            ttl: Seconds until expiry, or None for no expiry
        """
        with self.session_factory() as session:
            entry = session.get(KeyValueEntry, key)
            if entry is None:
                entry = KeyValueEntry(key=key, created_at=self._now_ms())
                session.add(entry)
            entry.value = value
            entry.version = _new_version()
            entry.expires_at = self._expires_at(ttl)
            session.commit()

    def add(self, key: str, value: JsonValue, ttl: float | None = None) -> bool:
        """Atomically create ``key`` only if no live entry exists.

        Returns:
            True if this call created the entry, False if it already existed
        """
        return self.claim(key, value, ttl) is not None

    def claim(self, key: str, value: JsonValue, ttl: float | None = None) -> str | None:
        """Create ``key`` if absent and return the new entry's version.

        An expired entry is deleted first (conditionally on still being
        expired), then a plain INSERT is attempted. The primary key makes the
        INSERT fail for every caller but one.

        Returns:
            Version of the created entry, or None if a live entry exists
        """
        now_ms = self._now_ms()
        version = _new_version()
        with self.session_factory() as session:
            _ = session.execute(
                delete(KeyValueEntry).where(
                    KeyValueEntry.key == key,
                    KeyValueEntry.expires_at.is_not(None),
                    KeyValueEntry.expires_at <= now_ms,
                )
            )
            session.add(
                KeyValueEntry(
                    key=key,
                    value=value,
                    created_at=now_ms,
                    version=version,
                    expires_at=self._expires_at(ttl),
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            return version

    def replace_if(
        self, key: str, value: JsonValue, version: str, ttl: float | None = None
    ) -> bool:
        """Overwrite ``key`` only if its version is still ``version``.

        Returns:
            True if the entry was written, False if it changed or disappeared
        """
        with self.session_factory() as session:
            result = session.execute(
                update(KeyValueEntry)
                .where(
                    KeyValueEntry.key == key,
                    KeyValueEntry.version == version,
                    or_(
                        KeyValueEntry.expires_at.is_(None),
                        KeyValueEntry.expires_at > self._now_ms(),
                    ),
                )
                .values(value=value, version=_new_version(), expires_at=self._expires_at(ttl))
            )
            session.commit()
            return (result.rowcount or 0) > 0

    def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True if a row was removed."""
        with self.session_factory() as session:
            result = session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
            session.commit()
            return (result.rowcount or 0) > 0

    def delete_if(self, key: str, version: str) -> bool:
        """Delete ``key`` only if its version is still ``version``."""
        with self.session_factory() as session:
            result = session.execute(
                delete(KeyValueEntry).where(
                    KeyValueEntry.key == key, KeyValueEntry.version == version
                )
            )
            session.commit()
            return (result.rowcount or 0) > 0

    def items(self, prefix: str, include_expired: bool = False) -> list[tuple[str, JsonValue]]:
        """List ``(key, value)`` pairs whose key starts with ``prefix``."""
        now_ms = self._now_ms()
        with self.session_factory() as session:
            stmt = (
                select(KeyValueEntry)
                .where(KeyValueEntry.key.startswith(prefix, autoescape=True))
                .order_by(KeyValueEntry.key)
            )
            entries = session.execute(stmt).scalars().all()
            return [
                (entry.key, entry.value)
                for entry in entries
                if include_expired or self._is_live(entry, now_ms)
            ]

    def delete_prefix(self, prefix: str) -> int:
        """Delete every entry whose key starts with ``prefix``."""
        with self.session_factory() as session:
            result = session.execute(
                delete(KeyValueEntry).where(KeyValueEntry.key.startswith(prefix, autoescape=True))
            )
            session.commit()
            return result.rowcount or 0

    def purge_expired(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        with self.session_factory() as session:
            result = session.execute(
                delete(KeyValueEntry).where(
                    KeyValueEntry.expires_at.is_not(None),
                    KeyValueEntry.expires_at <= self._now_ms(),
                )
            )
            session.commit()
            purged = result.rowcount or 0

        if purged:
            logger.info(f"Purged {purged} expired key/value entries")
        return purged
