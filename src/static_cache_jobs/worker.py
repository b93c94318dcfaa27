"""Scheduler and operator entry point.

Usage:
    static-cache-worker --producer myapp.render:producer run
    static-cache-worker tick
    static-cache-worker status
    static-cache-worker clear --status failed
"""

import argparse
import importlib
import json
import logging
import os
import sys
import time
from collections.abc import Sequence
from dataclasses import dataclass

from .artifact_storage import ArtifactStorageService
from .atomic import AtomicOperationExecutor
from .batch import BatchProcessor
from .config import Config
from .database import create_db_engine, create_session_factory, init_db
from .errors import ProducerFailure
from .kv_store import KeyValueStore
from .lock_manager import LockManager
from .metadata_store import MetadataStore
from .notifier import MQTTNotifier, NoOpNotifier, get_notifier
from .producer import ArtifactProducer
from .progress import ProgressTracker
from .queue_manager import QueueManager
from .queue_store import QueueStore
from .recovery import RecoverySweep
from .schemas import QueueStatus

logger = logging.getLogger("static-cache-worker")

PRODUCER_ENV = "STATIC_CACHE_PRODUCER"


class UnconfiguredProducer:
    """Placeholder for commands that never generate artifacts."""

    def capture(self, resource_id: str) -> bytes:
        raise ProducerFailure("No artifact producer configured")

    def transform(self, content: bytes, resource_id: str) -> bytes:
        raise ProducerFailure("No artifact producer configured")


def load_producer(path: str) -> ArtifactProducer:
    """Import a producer from ``module:attribute``.

    The attribute may be a producer instance or a zero-argument factory
    (such as a class) returning one.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Producer path must look like 'module:attribute', got {path!r}")

    target = getattr(importlib.import_module(module_name), attr)
    if isinstance(target, type) or not isinstance(target, ArtifactProducer):
        target = target()
    producer = target
    if not isinstance(producer, ArtifactProducer):
        raise TypeError(f"{path} does not provide capture() and transform()")
    return producer


@dataclass
class Services:
    """Every manager wired to one database, storage directory and notifier."""

    kv: KeyValueStore
    locks: LockManager
    storage: ArtifactStorageService
    metadata: MetadataStore
    executor: AtomicOperationExecutor
    queue: QueueManager
    progress: ProgressTracker
    batches: BatchProcessor
    recovery: RecoverySweep
    notifier: MQTTNotifier | NoOpNotifier


def build_services(
    producer: ArtifactProducer,
    database_url: str | None = None,
    storage_dir: str | None = None,
) -> Services:
    engine = create_db_engine(database_url or Config.DATABASE_URL)
    init_db(engine)
    session_factory = create_session_factory(engine)

    notifier = get_notifier()
    kv = KeyValueStore(session_factory)
    locks = LockManager(kv)
    storage = ArtifactStorageService(storage_dir)
    metadata = MetadataStore(session_factory)
    executor = AtomicOperationExecutor(producer, storage, metadata, locks, notifier=notifier)
    queue = QueueManager(QueueStore(session_factory), kv, executor, notifier=notifier)
    progress = ProgressTracker(kv, notifier=notifier)
    batches = BatchProcessor(kv, executor, queue, progress, notifier=notifier)
    recovery = RecoverySweep(
        queue, locks, kv, storage, metadata=metadata, progress=progress, batches=batches
    )
    return Services(
        kv=kv,
        locks=locks,
        storage=storage,
        metadata=metadata,
        executor=executor,
        queue=queue,
        progress=progress,
        batches=batches,
        recovery=recovery,
        notifier=notifier,
    )


# -------------------------------------------------------------------------
# Commands
# -------------------------------------------------------------------------


def run_scheduler(services: Services, tick_interval: int, max_ticks: int | None = None) -> None:
    """Tick on a fixed interval, with hourly recovery and daily cleanup."""
    last_recovery = last_cleanup = time.time()
    ticks = 0
    logger.info(f"Scheduler started (tick every {tick_interval}s)")

    while max_ticks is None or ticks < max_ticks:
        started = time.time()
        _ = services.queue.tick()
        ticks += 1

        if started - last_recovery >= Config.SCHEDULER_RECOVERY_INTERVAL:
            _ = services.recovery.run_hourly()
            last_recovery = started
        if started - last_cleanup >= Config.SCHEDULER_CLEANUP_INTERVAL:
            _ = services.recovery.run_daily()
            last_cleanup = started

        if max_ticks is not None and ticks >= max_ticks:
            break
        time.sleep(max(0.0, tick_interval - (time.time() - started)))


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="static-cache-worker", description="Process the static cache job queue"
    )
    parser.add_argument(
        "--producer",
        default=os.getenv(PRODUCER_ENV),
        help=f"Artifact producer as module:attribute (default: ${PRODUCER_ENV})",
    )
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    parser.add_argument("--storage-dir", default=None, help="Override ARTIFACT_STORAGE_DIR")

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run the scheduler loop")
    run.add_argument("--interval", type=int, default=Config.SCHEDULER_TICK_INTERVAL)
    run.add_argument("--max-ticks", type=int, default=None, help="Stop after N ticks")

    _ = commands.add_parser("tick", help="Run one queue pass")
    _ = commands.add_parser("status", help="Show queue counts, stats and active locks")
    _ = commands.add_parser("retry-failed", help="Reset failed items to pending")

    clear = commands.add_parser("clear", help="Delete queue items")
    clear.add_argument(
        "--status",
        choices=[status.value for status in QueueStatus],
        action="append",
        help="Only delete items in this status (repeatable)",
    )

    _ = commands.add_parser("release-locks", help="Force release every lock")
    _ = commands.add_parser("recover", help="Run hourly recovery now")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=Config.LOG_LEVEL)

    if args.command in ("run", "tick"):
        if not args.producer:
            parser.error(f"--producer (or ${PRODUCER_ENV}) is required for '{args.command}'")
        producer: ArtifactProducer = load_producer(args.producer)
    elif args.producer:
        producer = load_producer(args.producer)
    else:
        producer = UnconfiguredProducer()

    services = build_services(producer, args.database_url, args.storage_dir)
    try:
        if args.command == "run":
            try:
                run_scheduler(services, args.interval, args.max_ticks)
            except KeyboardInterrupt:
                logger.info("Scheduler stopped")
        elif args.command == "tick":
            _print_json(services.queue.tick().model_dump())
        elif args.command == "status":
            _print_json(
                {
                    "queue": services.queue.status().model_dump(),
                    "processing": services.queue.processing_stats().model_dump(),
                    "locks": [lock.model_dump() for lock in services.locks.get_active_locks()],
                    "storage": services.storage.get_storage_size(),
                }
            )
        elif args.command == "retry-failed":
            _print_json({"reset": services.queue.retry_failed_items()})
        elif args.command == "clear":
            statuses = [QueueStatus(s) for s in args.status] if args.status else None
            _print_json({"cleared": services.queue.clear(statuses)})
        elif args.command == "release-locks":
            _print_json({"released": services.locks.force_release_all()})
        elif args.command == "recover":
            _print_json(services.recovery.run_hourly().model_dump())
    finally:
        services.notifier.disconnect()
    return 0


if __name__ == "__main__":
    sys.exit(main())
