"""Per-resource mutual exclusion on top of the key/value store.

A lock is a ``lock:<resource_id>`` entry holding a ``LockInfo`` payload. It is
valid iff ``now - acquired_at < timeout``; an expired record is logically
absent to every reader and is replaced by the next ``acquire``.
"""

import logging
import os
import socket
import time
from collections.abc import Callable

from pydantic import ValidationError

from .kv_store import KeyValueStore
from .schemas import LockInfo

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"


def generate_holder_id() -> str:
    """Generate a holder identity: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


class LockManager:
    """Exclusive, expiring claims on resources.

    Acquisition failure is not an error; it means another operation is in
    progress and the caller should abort without mutating anything.

    Example:
        locks = LockManager(store)
        if locks.acquire("42"):
            try:
                ...
            finally:
                locks.release("42")
    """

    def __init__(
        self,
        store: KeyValueStore,
        default_timeout: int | None = None,
        holder: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if default_timeout is None:
            from .config import Config

            default_timeout = Config.LOCK_TIMEOUT

        self.store: KeyValueStore = store
        self.default_timeout: int = default_timeout
        self.holder: str = holder or generate_holder_id()
        self._clock: Callable[[], float] = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _key(resource_id: str) -> str:
        return f"{LOCK_PREFIX}{resource_id}"

    @staticmethod
    def _parse(raw: object) -> LockInfo | None:
        if not isinstance(raw, dict):
            return None
        try:
            return LockInfo.model_validate(raw)
        except ValidationError:
            return None

    def acquire(self, resource_id: str, timeout: int | None = None) -> bool:
        """Try to take the lock for ``resource_id``.

        Args:
            resource_id: Resource to lock
            timeout: Lock lifetime in seconds (defaults to ``default_timeout``)

        Returns:
            True if the lock was created by this call, False if a valid lock exists
        """
        timeout = timeout or self.default_timeout
        info = LockInfo(
            resource_id=resource_id,
            holder=self.holder,
            acquired_at=self._now_ms(),
            timeout=timeout,
        )

        if self.store.add(self._key(resource_id), info.model_dump(), ttl=timeout):
            logger.debug(f"Lock acquired for {resource_id} by {self.holder}")
            return True

        existing = self.get_lock_info(resource_id)
        if existing is not None:
            logger.info(
                f"Lock still active for {resource_id} (held by {existing.holder} "
                f"since {existing.acquired_at})"
            )
            return False

        # The stored record is unreadable or expired by its own timeout; the
        # TTL on the store entry may be longer, so reclaim and retry once.
        # Only the caller whose delete removed that exact record may retry.
        entry = self.store.get_versioned(self._key(resource_id))
        if entry is None:
            return False
        raw, version = entry
        if self._is_stale(raw) and self.store.delete_if(self._key(resource_id), version):
            logger.info(f"Reclaimed stale lock for {resource_id}")
            return self.store.add(self._key(resource_id), info.model_dump(), ttl=timeout)
        return False

    def _is_stale(self, raw: object, timeout: int | None = None) -> bool:
        info = self._parse(raw)
        return info is None or not info.is_valid(self._now_ms(), timeout)

    def release(self, resource_id: str) -> bool:
        """Release the lock. Releasing a missing lock is not an error.

        Returns:
            Always True
        """
        if self.store.delete(self._key(resource_id)):
            logger.debug(f"Lock released for {resource_id}")
        return True

    def is_locked(self, resource_id: str) -> bool:
        return self.get_lock_info(resource_id) is not None

    def get_lock_info(self, resource_id: str) -> LockInfo | None:
        """Return the lock record if it exists and is still valid."""
        info = self._parse(self.store.get(self._key(resource_id)))
        if info is None or not info.is_valid(self._now_ms()):
            return None
        return info

    def get_active_locks(self) -> list[LockInfo]:
        active: list[LockInfo] = []
        now_ms = self._now_ms()
        for _key, raw in self.store.items(LOCK_PREFIX):
            info = self._parse(raw)
            if info is not None and info.is_valid(now_ms):
                active.append(info)
        return active

    def cleanup_expired(self, timeout: int | None = None) -> int:
        """Remove lock records older than ``timeout`` seconds.

        Records that are unreadable or already past their own timeout are
        removed as well. Used by periodic maintenance only.

        Returns:
            Number of lock records removed
        """
        timeout = timeout or self.default_timeout
        now_ms = self._now_ms()
        cleaned = 0

        for key, raw in self.store.items(LOCK_PREFIX, include_expired=True):
            info = self._parse(raw)
            if info is None or not info.is_valid(now_ms) or not info.is_valid(now_ms, timeout):
                if self.store.delete(key):
                    cleaned += 1
                    logger.info(f"Cleaned expired lock: {key}")

        if cleaned > 0:
            logger.info(f"Cleaned {cleaned} expired lock(s)")
        return cleaned

    def force_release_all(self) -> int:
        """Delete every lock record. Operator action; never called automatically."""
        released = self.store.delete_prefix(LOCK_PREFIX)
        logger.warning(f"Force released {released} lock(s)")
        return released
