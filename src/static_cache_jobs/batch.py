"""Chunked execution of large item sets.

A batch is created once and then driven by repeated ``process_chunk`` calls
(from a poller or the worker), each handling at most ``chunk_size`` items so
that no single call runs for long.
"""

import logging
import time
import uuid
from collections.abc import Callable, Iterable

from pydantic import JsonValue, ValidationError

from .atomic import AtomicOperationExecutor
from .kv_store import KeyValueStore
from .notifier import Notifier, report_failure
from .progress import ProgressTracker
from .queue_manager import QueueManager
from .schemas import BatchJob, BatchStatus, ChunkResult, OperationResult

logger = logging.getLogger(__name__)

BATCH_PREFIX = "batch:"
# Outside BATCH_PREFIX so batch listings and cleanup never see claims
CHUNK_CLAIM_PREFIX = "batch_chunk:"
# Conditional writes give up after this many conflicting concurrent writes
WRITE_ATTEMPTS = 5

OperationHandler = Callable[[str, dict[str, JsonValue]], OperationResult]


class BatchProcessor:
    """Splits items into chunks and runs one chunk per call.

    Built-in operations are ``generate`` and ``delete`` (through the atomic
    executor) and ``queue`` (enqueue each item, ``args["queue_action"]``
    selects the queue action). Other names must be registered with
    ``register_operation``.

    Example:
        batches = BatchProcessor(kv_store, executor, queue_manager)
        batch_id = batches.start_batch(post_ids, "generate", chunk_size=5)
        while batches.process_chunk(batch_id).status is not BatchStatus.completed:
            ...
    """

    def __init__(
        self,
        store: KeyValueStore,
        executor: AtomicOperationExecutor,
        queue_manager: QueueManager | None = None,
        progress: ProgressTracker | None = None,
        chunk_size: int | None = None,
        ttl: int | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
    ):
        from .config import Config

        self.store: KeyValueStore = store
        self.executor: AtomicOperationExecutor = executor
        self.queue_manager: QueueManager | None = queue_manager
        self.progress: ProgressTracker | None = progress
        self.chunk_size: int = chunk_size or Config.BATCH_CHUNK_SIZE
        self.ttl: int = ttl or Config.BATCH_TTL
        self.item_timeout: int = Config.LOCK_TIMEOUT
        self.notifier: Notifier | None = notifier
        self._clock: Callable[[], float] = clock
        self._operations: dict[str, OperationHandler] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _key(batch_id: str) -> str:
        return f"{BATCH_PREFIX}{batch_id}"

    def _save(self, batch: BatchJob) -> None:
        self.store.set(self._key(batch.id), batch.model_dump(mode="json"), ttl=self.ttl)

    def _replace(self, batch: BatchJob, version: str) -> bool:
        return self.store.replace_if(
            self._key(batch.id), batch.model_dump(mode="json"), version, ttl=self.ttl
        )

    def _load(self, batch_id: str) -> tuple[BatchJob, str] | None:
        entry = self.store.get_versioned(self._key(batch_id))
        if entry is None:
            return None
        raw, version = entry
        try:
            return BatchJob.model_validate(raw), version
        except ValidationError as e:
            logger.warning(f"Discarding unreadable batch {batch_id}: {e}")
            return None

    def register_operation(self, name: str, handler: OperationHandler) -> None:
        """Register ``handler(item_id, args)`` for a custom operation name."""
        self._operations[name] = handler

    # -------------------------------------------------------------------------
    # Batch lifecycle
    # -------------------------------------------------------------------------

    def start_batch(
        self,
        items: Iterable[str],
        operation: str,
        chunk_size: int | None = None,
        args: dict[str, JsonValue] | None = None,
        track_progress: bool = False,
    ) -> str:
        """Create a pending batch and return its id.

        Args:
            items: Resource ids, processed in the given order
            operation: ``generate``, ``delete``, ``queue`` or a registered name
            chunk_size: Items per ``process_chunk`` call
            args: Operation arguments
            track_progress: Open a progress session updated after each chunk
        """
        batch = BatchJob(
            id=f"batch_{uuid.uuid4().hex[:13]}",
            operation=operation,
            items=list(items),
            chunk_size=chunk_size or self.chunk_size,
            started_at=self._now_ms(),
            args=args or {},
        )
        if track_progress and self.progress is not None:
            batch.progress_session_id = self.progress.start(
                f"batch_{operation}", batch.total, {"batch_id": batch.id}
            )

        self._save(batch)
        logger.info(
            f"Started batch {batch.id} for {operation} operation with {batch.total} items"
        )
        return batch.id

    def get_status(self, batch_id: str) -> BatchJob | None:
        loaded = self._load(batch_id)
        return loaded[0] if loaded is not None else None

    def process_chunk(self, batch_id: str) -> ChunkResult:
        """Process the next ``chunk_size`` items of a batch.

        Overlapping calls for the same batch are refused while a chunk is
        claimed, and a cancellation recorded mid-chunk stops the remaining
        items and is never overwritten by the chunk's own save.
        """
        loaded = self._load(batch_id)
        if loaded is None:
            return ChunkResult(success=False, batch_id=batch_id, error="Batch not found")
        batch, _version = loaded
        finished = self._finished_result(batch)
        if finished is not None:
            return finished

        claim_key = f"{CHUNK_CLAIM_PREFIX}{batch_id}"
        claim = self.store.claim(
            claim_key,
            {"chunk": batch.current_chunk, "claimed_at": self._now_ms()},
            ttl=batch.chunk_size * self.item_timeout,
        )
        if claim is None:
            logger.info(f"Skipping batch {batch_id}: a chunk is already being processed")
            return ChunkResult(
                success=False,
                batch_id=batch_id,
                processed=batch.processed,
                total=batch.total,
                progress_pct=batch.progress_pct,
                status=batch.status,
                error="Chunk already in progress",
            )

        try:
            return self._run_chunk(batch_id)
        finally:
            _ = self.store.delete_if(claim_key, claim)

    def _run_chunk(self, batch_id: str) -> ChunkResult:
        # Reload under the claim; another caller may have finished a chunk since
        loaded = self._load(batch_id)
        if loaded is None:
            return ChunkResult(success=False, batch_id=batch_id, error="Batch not found")
        batch, _version = loaded
        finished = self._finished_result(batch)
        if finished is not None:
            return finished

        chunk = batch.current_chunk
        start = chunk * batch.chunk_size
        chunk_items = batch.items[start : start + batch.chunk_size]
        result = ChunkResult(success=True, batch_id=batch_id, chunk=chunk)

        handled = 0
        for offset, item in enumerate(chunk_items):
            if self._is_cancelled(batch_id):
                logger.info(
                    f"Batch {batch_id} cancelled, stopping after {handled} item(s) of chunk {chunk}"
                )
                break
            index = str(start + offset)
            outcome = self._process_item(item, batch)
            handled += 1
            if outcome.success:
                result.successful += 1
            else:
                result.failed += 1
                result.errors[index] = outcome.error or "Unknown error"
                logger.error(
                    f"Error processing item {index} ({item}) in batch {batch_id}: {outcome.error}"
                )

        saved = self._record_chunk(batch_id, chunk, handled, handled == len(chunk_items), result)
        if saved is None:
            result.success = False
            result.error = "Batch changed while the chunk was processed"
            return result
        batch = saved

        if batch.status is BatchStatus.completed:
            logger.info(
                f"Completed batch {batch_id}: {batch.successful} successful, {batch.failed} failed"
            )
            if batch.failed:
                report_failure(
                    self.notifier,
                    "batch_processor",
                    f"Batch {batch_id} finished with {batch.failed} failed item(s)",
                    batch_id=batch_id,
                    operation=batch.operation,
                    failed=batch.failed,
                )

        self._update_progress(batch, result)

        result.processed = batch.processed
        result.total = batch.total
        result.progress_pct = batch.progress_pct
        result.status = batch.status
        if batch.status is BatchStatus.cancelled:
            result.success = False
            result.error = "Batch was cancelled"
        return result

    def _record_chunk(
        self, batch_id: str, chunk: int, handled: int, chunk_done: bool, result: ChunkResult
    ) -> BatchJob | None:
        """Fold a chunk's counts into the stored batch.

        The batch is re-read before every write so that a concurrent
        ``cancel`` survives. Returns the saved batch, or None if it vanished,
        moved past ``chunk`` or kept changing.
        """
        for _ in range(WRITE_ATTEMPTS):
            loaded = self._load(batch_id)
            if loaded is None:
                logger.warning(f"Batch {batch_id} disappeared before chunk {chunk} was saved")
                return None
            batch, version = loaded
            if batch.current_chunk != chunk:
                logger.warning(f"Chunk {chunk} of batch {batch_id} was already recorded")
                return None

            batch.processed += handled
            batch.successful += result.successful
            batch.failed += result.failed
            batch.errors.update(result.errors)
            if chunk_done:
                batch.current_chunk += 1
            if batch.status is not BatchStatus.cancelled:
                batch.status = BatchStatus.processing
                if batch.processed >= batch.total:
                    batch.status = BatchStatus.completed
                    batch.completed_at = self._now_ms()

            if self._replace(batch, version):
                return batch

        logger.warning(
            f"Gave up saving chunk {chunk} of batch {batch_id} after {WRITE_ATTEMPTS} conflicts"
        )
        return None

    def _finished_result(self, batch: BatchJob) -> ChunkResult | None:
        if batch.status is BatchStatus.cancelled:
            return ChunkResult(
                success=False, batch_id=batch.id, status=batch.status, error="Batch was cancelled"
            )
        if batch.status is BatchStatus.completed:
            return ChunkResult(
                success=False,
                batch_id=batch.id,
                processed=batch.processed,
                total=batch.total,
                progress_pct=batch.progress_pct,
                status=batch.status,
                error="Batch already completed",
            )
        return None

    def _is_cancelled(self, batch_id: str) -> bool:
        batch = self.get_status(batch_id)
        return batch is not None and batch.status is BatchStatus.cancelled

    def cancel(self, batch_id: str) -> bool:
        """Mark a batch cancelled; a running chunk stops before its next item."""
        for _ in range(WRITE_ATTEMPTS):
            loaded = self._load(batch_id)
            if loaded is None:
                return False
            batch, version = loaded
            if batch.status is BatchStatus.cancelled:
                return True
            batch.status = BatchStatus.cancelled
            batch.completed_at = self._now_ms()
            if self._replace(batch, version):
                break
        else:
            logger.warning(f"Could not cancel batch {batch_id}: it kept changing")
            return False

        if batch.progress_session_id and self.progress is not None:
            _ = self.progress.cancel(batch.progress_session_id)
        logger.info(f"Cancelled batch {batch_id}")
        return True

    cancel_batch = cancel

    def cleanup_old_batches(self, max_age_hours: int = 24) -> int:
        """Delete batches started more than ``max_age_hours`` ago."""
        cutoff_ms = self._now_ms() - max_age_hours * 3600 * 1000
        cleaned = 0
        for key, raw in self.store.items(BATCH_PREFIX, include_expired=True):
            started_at = raw.get("started_at") if isinstance(raw, dict) else None
            if not isinstance(started_at, int) or started_at < cutoff_ms:
                cleaned += int(self.store.delete(key))
        if cleaned:
            logger.info(f"Cleaned up {cleaned} old batch(es)")
        return cleaned

    # -------------------------------------------------------------------------
    # Item dispatch
    # -------------------------------------------------------------------------

    def _process_item(self, item: str, batch: BatchJob) -> OperationResult:
        operation = batch.operation
        try:
            if operation in self._operations:
                return self._operations[operation](item, batch.args)
            if operation == "generate":
                return self.executor.generate(item)
            if operation == "delete":
                return self.executor.delete(item)
            if operation == "queue":
                return self._enqueue(item, batch.args)
            return OperationResult.failure(item, "Unknown operation", "unknown_operation")
        except Exception as e:
            logger.exception(f"Batch {batch.id} item {item} raised: {e}")
            return OperationResult.failure(item, str(e), "error")

    def _enqueue(self, item: str, args: dict[str, JsonValue]) -> OperationResult:
        if self.queue_manager is None:
            return OperationResult.failure(item, "No queue manager configured", "error")
        priority = args.get("priority")
        item_id = self.queue_manager.enqueue(
            item,
            str(args.get("queue_action") or "generate"),
            priority=priority if isinstance(priority, int) else None,
        )
        return OperationResult(success=True, resource_id=item, message=f"Queued as item {item_id}")

    def _update_progress(self, batch: BatchJob, result: ChunkResult) -> None:
        if not batch.progress_session_id or self.progress is None:
            return
        session_id = batch.progress_session_id
        for index, error in result.errors.items():
            _ = self.progress.add_error(session_id, error, {"index": int(index)})
        last_item = batch.items[batch.processed - 1] if batch.processed else ""
        _ = self.progress.update(
            session_id,
            batch.processed,
            current_item=last_item,
            message=f"Chunk {result.chunk} done: {result.successful} ok, {result.failed} failed",
        )