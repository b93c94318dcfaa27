"""Progress sessions for long-running bulk operations.

Sessions live in the key/value store under ``progress:<id>`` with a TTL, so a
poller in another process can read them while the operation runs.
"""

import logging
import time
import uuid
from collections.abc import Callable

from pydantic import JsonValue, ValidationError

from .kv_store import KeyValueStore
from .notifier import Notifier
from .schemas import PerformanceMetrics, ProgressMessage, ProgressSession, ProgressStatus

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "progress:"

# Running sessions older than this are considered abandoned
STALE_RUNNING_AGE = 24 * 3600
# Finished sessions are kept this long for pollers to see the outcome
FINISHED_RETENTION = 2 * 3600
# Conditional writes give up after this many conflicting concurrent writes
WRITE_ATTEMPTS = 5


class ProgressTracker:
    """Tracks ``current/total`` for bulk operations.

    ``current`` never moves backwards and never exceeds ``total``; a session
    becomes terminal exactly once, after which updates are ignored.

    Example:
        tracker = ProgressTracker(kv_store)
        session_id = tracker.start("bulk_generate", total=20)
        tracker.update(session_id, 5, current_item="post 5")
        tracker.get(session_id).percentage  # 25
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl: int | None = None,
        max_messages: int | None = None,
        max_errors: int | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
    ):
        from .config import Config

        self.store: KeyValueStore = store
        self.ttl: int = ttl or Config.PROGRESS_TTL
        self.max_messages: int = max_messages or Config.PROGRESS_MAX_MESSAGES
        self.max_errors: int = max_errors or Config.PROGRESS_MAX_ERRORS
        self.notifier: Notifier | None = notifier
        self._clock: Callable[[], float] = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{PROGRESS_PREFIX}{session_id}"

    def _save(self, session: ProgressSession) -> None:
        self.store.set(self._key(session.id), session.model_dump(mode="json"), ttl=self.ttl)

    def _load(self, session_id: str) -> ProgressSession | None:
        return self._parse(session_id, self.store.get(self._key(session_id)))

    @staticmethod
    def _parse(session_id: str, raw: JsonValue | None) -> ProgressSession | None:
        if raw is None:
            return None
        try:
            return ProgressSession.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable progress session {session_id}: {e}")
            return None

    def _publish(self, session: ProgressSession) -> None:
        if self.notifier is None:
            return
        _ = self.notifier.publish_event(
            f"progress_{session.status.value}",
            session.id,
            {
                "operation": session.operation,
                "current": session.current,
                "total": session.total,
                "percentage": session.percentage,
            },
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(
        self, operation: str, total: int, metadata: dict[str, JsonValue] | None = None
    ) -> str:
        """Create a running session and return its id."""
        now_ms = self._now_ms()
        session = ProgressSession(
            id=f"progress_{uuid.uuid4().hex[:13]}",
            operation=operation,
            total=max(0, int(total)),
            started_at=now_ms,
            updated_at=now_ms,
            metadata=metadata or {},
        )
        self._save(session)
        logger.info(
            f"Started progress session {session.id} for {operation} with {session.total} items"
        )
        self._publish(session)
        return session.id

    def update(
        self,
        session_id: str,
        current: int,
        current_item: str = "",
        message: str = "",
    ) -> bool:
        """Advance a running session.

        Reaching ``total`` completes the session at 100%.

        Returns:
            False if the session is missing or already terminal
        """

        def advance(session: ProgressSession) -> bool:
            if session.is_terminal:
                return False
            now_ms = self._now_ms()
            session.current = min(max(session.current, int(current)), session.total)
            session.percentage = (
                round(session.current / session.total * 100) if session.total > 0 else 0
            )
            session.updated_at = now_ms
            session.current_item = current_item

            if message:
                self._append(
                    session.messages,
                    ProgressMessage(time=now_ms, message=message),
                    self.max_messages,
                )

            elapsed = (now_ms - session.started_at) / 1000
            if session.current > 0 and elapsed > 0:
                average_item_time = elapsed / session.current
                remaining_time = (session.total - session.current) * average_item_time
                session.performance = PerformanceMetrics(
                    items_per_second=round(session.current / elapsed, 2),
                    average_item_time=round(average_item_time, 2),
                    elapsed_time=round(elapsed, 3),
                    remaining_time=round(remaining_time),
                )
                session.estimated_completion = now_ms + int(remaining_time * 1000)

            if session.current >= session.total:
                self._finalize(session, ProgressStatus.completed, now_ms)
                session.percentage = 100
            return True

        session = self._mutate(session_id, advance)
        if session is None:
            return False
        self._publish(session)
        return True

    def add_error(
        self, session_id: str, error: str, context: dict[str, JsonValue] | None = None
    ) -> bool:
        def record(session: ProgressSession) -> bool:
            entry = ProgressMessage(time=self._now_ms(), message=error, context=context or {})
            self._append(session.errors, entry, self.max_errors)
            return True

        return self._mutate(session_id, record) is not None

    def complete(
        self,
        session_id: str,
        status: ProgressStatus = ProgressStatus.completed,
        message: str = "",
    ) -> bool:
        """Finalize a running session with ``status``.

        Returns:
            False if the session is missing or already terminal
        """

        def finish(session: ProgressSession) -> bool:
            if session.is_terminal:
                return False
            now_ms = self._now_ms()
            if message:
                self._append(
                    session.messages,
                    ProgressMessage(time=now_ms, message=message),
                    self.max_messages,
                )
            self._finalize(session, ProgressStatus(status), now_ms)
            return True

        session = self._mutate(session_id, finish)
        if session is None:
            return False

        logger.info(
            f"Completed progress session {session_id} with status {session.status.value} "
            f"({session.current}/{session.total} items, {len(session.errors)} errors)"
        )
        self._publish(session)
        return True

    def cancel(self, session_id: str) -> bool:
        return self.complete(session_id, ProgressStatus.cancelled, "Operation cancelled by user")

    def is_cancelled(self, session_id: str) -> bool:
        session = self._load(session_id)
        return session is not None and session.status is ProgressStatus.cancelled

    def _mutate(
        self, session_id: str, apply: Callable[[ProgressSession], bool]
    ) -> ProgressSession | None:
        """Apply ``apply`` to the stored session and write it back.

        The write only lands if nobody else wrote the session since it was
        read; otherwise the session is re-read and ``apply`` runs again, so a
        concurrent cancel is seen rather than overwritten. ``apply`` returns
        False to leave the session unchanged.

        Returns:
            The saved session, or None if missing, refused or still contended
        """
        for _ in range(WRITE_ATTEMPTS):
            entry = self.store.get_versioned(self._key(session_id))
            if entry is None:
                return None
            raw, version = entry
            session = self._parse(session_id, raw)
            if session is None or not apply(session):
                return None
            if self.store.replace_if(
                self._key(session_id), session.model_dump(mode="json"), version, ttl=self.ttl
            ):
                return session

        logger.warning(
            f"Gave up updating progress session {session_id} after {WRITE_ATTEMPTS} conflicts"
        )
        return None

    @staticmethod
    def _finalize(session: ProgressSession, status: ProgressStatus, now_ms: int) -> None:
        session.status = status
        session.completed_at = now_ms
        session.performance.total_time = round((now_ms - session.started_at) / 1000, 3)

    @staticmethod
    def _append(buffer: list[ProgressMessage], entry: ProgressMessage, limit: int) -> None:
        buffer.append(entry)
        if len(buffer) > limit:
            del buffer[: len(buffer) - limit]

    # -------------------------------------------------------------------------
    # Queries and maintenance
    # -------------------------------------------------------------------------

    def get(self, session_id: str) -> ProgressSession | None:
        return self._load(session_id)

    def active_sessions(self) -> list[ProgressSession]:
        sessions: list[ProgressSession] = []
        for key, _raw in self.store.items(PROGRESS_PREFIX):
            session = self._load(key.removeprefix(PROGRESS_PREFIX))
            if session is not None and session.status is ProgressStatus.running:
                sessions.append(session)
        return sessions

    def cleanup_old_sessions(self) -> int:
        """Remove abandoned running sessions and finished sessions past retention."""
        now_ms = self._now_ms()
        cleaned = 0
        for key, raw in self.store.items(PROGRESS_PREFIX, include_expired=True):
            try:
                session = ProgressSession.model_validate(raw)
            except ValidationError:
                cleaned += int(self.store.delete(key))
                continue

            too_old = now_ms - session.started_at > STALE_RUNNING_AGE * 1000
            finished_long_ago = (
                session.is_terminal
                and session.completed_at is not None
                and now_ms - session.completed_at > FINISHED_RETENTION * 1000
            )
            if (too_old or finished_long_ago) and self.store.delete(key):
                cleaned += 1

        if cleaned > 0:
            logger.info(f"Cleaned up {cleaned} old progress session(s)")
        return cleaned
