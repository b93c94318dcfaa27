"""Periodic recovery after crashes and abandoned work.

The queue manager never recovers items left in ``processing`` by a crashed
tick; ``RecoverySweep.run_hourly`` does. Each task runs independently and a
failing task does not stop the others.

Hourly:
    - requeue stale ``processing`` items
    - remove expired lock records
    - purge expired key/value entries
    - delete orphaned temp and backup artifact files

Daily:
    - verify artifacts against their metadata
    - purge old queue items
    - purge old progress sessions and batches
"""

import logging
import time
from collections.abc import Callable

from .artifact_storage import ArtifactStorageService
from .batch import BatchProcessor
from .kv_store import KeyValueStore
from .lock_manager import LockManager
from .metadata_store import GENERATED_AT, MetadataStore
from .progress import ProgressTracker
from .queue_manager import QueueManager
from .schemas import QueueAction, RecoveryReport, RecoveryTaskResult

logger = logging.getLogger(__name__)

REPORT_PREFIX = "recovery:last_"


class RecoverySweep:
    """Hourly and daily maintenance over queue, locks, storage and sessions.

    Example:
        sweep = RecoverySweep(queue_manager, locks, kv_store, storage)
        report = sweep.run_hourly()
        report.failed_tasks  # 0
    """

    def __init__(
        self,
        queue: QueueManager,
        locks: LockManager,
        kv: KeyValueStore,
        storage: ArtifactStorageService,
        metadata: MetadataStore | None = None,
        progress: ProgressTracker | None = None,
        batches: BatchProcessor | None = None,
        stale_after: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        from .config import Config

        self.queue: QueueManager = queue
        self.locks: LockManager = locks
        self.kv: KeyValueStore = kv
        self.storage: ArtifactStorageService = storage
        self.metadata: MetadataStore | None = metadata
        self.progress: ProgressTracker | None = progress
        self.batches: BatchProcessor | None = batches
        self.stale_after: int = stale_after or Config.QUEUE_STALE_AFTER
        self._clock: Callable[[], float] = clock

    def run_hourly(self) -> RecoveryReport:
        return self._run(
            "hourly",
            {
                "stale_items": self.requeue_stale_items,
                "stuck_locks": lambda: {"cleaned": self.locks.cleanup_expired()},
                "expired_entries": lambda: {"purged": self.kv.purge_expired()},
                "temp_files": lambda: {"cleaned": self.storage.cleanup_stale_files()},
            },
        )

    def run_daily(self) -> RecoveryReport:
        tasks: dict[str, Callable[[], dict[str, int]]] = {
            "queue_items": lambda: {"purged": self.queue.cleanup_old_items()},
        }
        if self.metadata is not None:
            tasks["artifact_verification"] = self.verify_artifacts
        if self.progress is not None:
            progress = self.progress
            tasks["progress_sessions"] = lambda: {"cleaned": progress.cleanup_old_sessions()}
        if self.batches is not None:
            batches = self.batches
            tasks["batches"] = lambda: {"cleaned": batches.cleanup_old_batches()}
        return self._run("daily", tasks)

    def last_report(self, run_type: str = "hourly") -> RecoveryReport | None:
        raw = self.kv.get(f"{REPORT_PREFIX}{run_type}")
        return RecoveryReport.model_validate(raw) if raw is not None else None

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def requeue_stale_items(self) -> dict[str, int]:
        """Move items stuck in ``processing`` back to ``pending`` (or ``failed``)."""
        stale_before_ms = int((self._clock() - self.stale_after) * 1000)
        requeued, failed = self.queue.store.requeue_stale(stale_before_ms)
        if requeued or failed:
            logger.warning(
                f"Recovered stale queue items: {requeued} requeued, {failed} marked failed"
            )
        return {"requeued": requeued, "failed": failed}

    def verify_artifacts(self) -> dict[str, int]:
        """Reconcile metadata with the files on disk.

        Metadata for a missing artifact is removed; an empty artifact is
        queued for regeneration. Each resource is checked under its lock, and
        resources locked by a running operation are skipped until the next run.

        Raises:
            ValueError: If the sweep has no metadata store
        """
        if self.metadata is None:
            raise ValueError("Artifact verification requires a metadata store")

        verified = cleaned = requeued = skipped = 0
        for resource_id in self.metadata.resources_with(GENERATED_AT):
            if not self.locks.acquire(resource_id):
                skipped += 1
                continue
            try:
                content = self.storage.read(resource_id)
                if content is None:
                    cleaned += int(self.metadata.delete(resource_id) > 0)
                elif not content:
                    _ = self.queue.enqueue(resource_id, QueueAction.regenerate)
                    requeued += 1
                    logger.warning(f"Queued regeneration of empty artifact for {resource_id}")
                else:
                    verified += 1
            finally:
                _ = self.locks.release(resource_id)

        if skipped:
            logger.info(f"Skipped verifying {skipped} artifact(s) locked by running operations")
        return {"verified": verified, "cleaned": cleaned, "requeued": requeued, "skipped": skipped}

    # -------------------------------------------------------------------------
    # Runner
    # -------------------------------------------------------------------------

    def _run(self, run_type: str, tasks: dict[str, Callable[[], dict[str, int]]]) -> RecoveryReport:
        report = RecoveryReport(type=run_type, started_at=int(self._clock() * 1000))

        for name, task in tasks.items():
            try:
                report.tasks[name] = RecoveryTaskResult(counts=task())
            except Exception as e:
                logger.exception(f"Recovery task {name} failed: {e}")
                report.tasks[name] = RecoveryTaskResult(status="failed", error=str(e))

        report.finished_at = int(self._clock() * 1000)
        self.kv.set(f"{REPORT_PREFIX}{run_type}", report.model_dump(mode="json"))

        level = logging.WARNING if report.failed_tasks else logging.INFO
        logger.log(
            level,
            f"{run_type.capitalize()} recovery completed: "
            f"{len(report.tasks) - report.failed_tasks} successful, {report.failed_tasks} failed tasks",
        )
        return report
