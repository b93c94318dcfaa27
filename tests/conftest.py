"""Shared test fixtures for static_cache_jobs tests."""

from __future__ import annotations

import os
import tempfile
from typing import TYPE_CHECKING

# Config validates STATIC_CACHE_DIR at import time
_ = os.environ.setdefault("STATIC_CACHE_DIR", tempfile.mkdtemp(prefix="static_cache_test_"))

import pytest

from static_cache_jobs.artifact_storage import ArtifactStorageService
from static_cache_jobs.atomic import AtomicOperationExecutor
from static_cache_jobs.batch import BatchProcessor
from static_cache_jobs.database import create_db_engine, create_session_factory, init_db
from static_cache_jobs.errors import NotFound
from static_cache_jobs.kv_store import KeyValueStore
from static_cache_jobs.lock_manager import LockManager
from static_cache_jobs.metadata_store import MetadataStore
from static_cache_jobs.progress import ProgressTracker
from static_cache_jobs.queue_manager import QueueManager
from static_cache_jobs.queue_store import QueueStore
from static_cache_jobs.retry import RetryExecutor
from static_cache_jobs.schemas import ErrorEvent, RetryConfig

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session, sessionmaker


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now: float = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProducer:
    """In-memory artifact producer.

    ``pages`` maps resource ids to captured content; unknown ids raise
    ``NotFound``. ``fail_capture`` counts down transient capture failures per
    id, and ids in ``fail_transform`` always fail the transform step.
    """

    def __init__(self) -> None:
        self.pages: dict[str, bytes] = {}
        self.fail_capture: dict[str, int] = {}
        self.fail_transform: set[str] = set()
        self.captures: list[str] = []

    def capture(self, resource_id: str) -> bytes:
        self.captures.append(resource_id)
        remaining = self.fail_capture.get(resource_id, 0)
        if remaining != 0:
            self.fail_capture[resource_id] = remaining - 1
            raise RuntimeError(f"upstream timeout for {resource_id}")
        if resource_id not in self.pages:
            raise NotFound(f"Post {resource_id} not found")
        return self.pages[resource_id]

    def transform(self, content: bytes, resource_id: str) -> bytes:
        if resource_id in self.fail_transform:
            raise ValueError("malformed markup")
        return content + b"<!-- static -->"


class RecordingNotifier:
    """Notifier that keeps every event in memory."""

    def __init__(self) -> None:
        self.errors: list[ErrorEvent] = []
        self.events: list[tuple[str, str, dict]] = []

    def connect(self) -> bool:
        return True

    def disconnect(self) -> None:
        pass

    def notify_error(self, event: ErrorEvent) -> bool:
        self.errors.append(event)
        return True

    def publish_event(self, event_type: str, subject_id: str, data: dict) -> bool:
        self.events.append((event_type, subject_id, data))
        return True


# ============================================================================
# Infrastructure
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    """Seconds passed to the injected sleep function."""
    return []


@pytest.fixture
def in_memory_engine() -> Generator[Engine, None, None]:
    """Create SQLite in-memory engine with all tables created.

    Yields:
        Engine: SQLAlchemy engine with in-memory SQLite database
    """
    engine = create_db_engine("sqlite:///:memory:")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(in_memory_engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(in_memory_engine)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ============================================================================
# Services
# ============================================================================


@pytest.fixture
def kv_store(session_factory: sessionmaker[Session], clock: FakeClock) -> KeyValueStore:
    return KeyValueStore(session_factory, clock=clock)


@pytest.fixture
def locks(kv_store: KeyValueStore, clock: FakeClock) -> LockManager:
    return LockManager(kv_store, default_timeout=300, holder="test-host:1", clock=clock)


@pytest.fixture
def storage(tmp_path: Path) -> ArtifactStorageService:
    return ArtifactStorageService(base_dir=str(tmp_path / "pages"))


@pytest.fixture
def metadata(session_factory: sessionmaker[Session]) -> MetadataStore:
    return MetadataStore(session_factory)


@pytest.fixture
def producer() -> FakeProducer:
    producer = FakeProducer()
    producer.pages["42"] = b"<html>post 42</html>"
    producer.pages["43"] = b"<html>post 43</html>"
    return producer


@pytest.fixture
def retry_executor(sleeps: list[float]) -> RetryExecutor:
    return RetryExecutor(sleep=sleeps.append)


@pytest.fixture
def executor(
    producer: FakeProducer,
    storage: ArtifactStorageService,
    metadata: MetadataStore,
    locks: LockManager,
    retry_executor: RetryExecutor,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> AtomicOperationExecutor:
    return AtomicOperationExecutor(
        producer,
        storage,
        metadata,
        locks,
        retry=retry_executor,
        producer_retry=RetryConfig(
            max_attempts=2, initial_delay=10, max_delay=100, jitter=False,
            fatal_exceptions=(NotFound,),
        ),
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def queue_store(session_factory: sessionmaker[Session], clock: FakeClock) -> QueueStore:
    return QueueStore(session_factory, clock=clock)


@pytest.fixture
def queue_manager(
    queue_store: QueueStore,
    kv_store: KeyValueStore,
    executor: AtomicOperationExecutor,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> QueueManager:
    return QueueManager(
        queue_store,
        kv_store,
        executor,
        batch_size=5,
        time_limit=20,
        default_priority=10,
        max_attempts=3,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def progress(kv_store: KeyValueStore, notifier: RecordingNotifier, clock: FakeClock) -> ProgressTracker:
    return ProgressTracker(kv_store, ttl=3600, max_messages=5, max_errors=5, notifier=notifier, clock=clock)


@pytest.fixture
def batches(
    kv_store: KeyValueStore,
    executor: AtomicOperationExecutor,
    queue_manager: QueueManager,
    progress: ProgressTracker,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> BatchProcessor:
    return BatchProcessor(
        kv_store, executor, queue_manager, progress, chunk_size=3, notifier=notifier, clock=clock
    )
