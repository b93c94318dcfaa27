"""Transactional generate/delete of cached artifacts.

Every mutation of an artifact file or its metadata goes through
``AtomicOperationExecutor`` under a held lock. Failures never escape as
exceptions: the executor rolls back and returns an ``OperationResult``.

Generate sequence:
    1. acquire lock (fail fast with ``locked``)
    2. snapshot metadata, copy existing artifact to a backup
    3. capture (with retry) and transform through the producer
    4. write temp file, validate non-empty, ``os.replace`` onto canonical path
    5. update metadata
    6. drop backup, release lock
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .artifact_storage import ArtifactStorageService
from .errors import (
    LockUnavailable,
    NotFound,
    ProducerFailure,
    RetryExhausted,
    StaticCacheError,
    ValidationFailure,
    error_kind,
    error_message,
)
from .lock_manager import LockManager
from .metadata_store import ETAG, ETAG_TIME, FILE_SIZE, GENERATED_AT, MetadataStore
from .notifier import Notifier, report_failure
from .producer import ArtifactProducer, ShouldGenerate, always_generate
from .retry import RetryExecutor
from .schemas import BulkResult, OperationResult, RetryConfig

logger = logging.getLogger(__name__)

SuccessCallback = Callable[[str, str, OperationResult], None]


@dataclass
class RollbackRecord:
    """State captured before mutating; lives for one operation only."""

    resource_id: str
    lock_acquired: bool = False
    metadata: dict[str, str | None] | None = None
    backup_path: Path | None = None
    temp_path: Path | None = None
    # True once a new artifact has been moved onto the canonical path
    replaced: bool = False
    # True once the canonical artifact has been unlinked by a delete
    removed: bool = False
    notes: list[str] = field(default_factory=list)


class AtomicOperationExecutor:
    """Lock-guarded generate/delete with backup and rollback.

    Example:
        executor = AtomicOperationExecutor(producer, storage, metadata, locks)
        result = executor.generate("42")
        if not result.success and result.error_kind == "locked":
            ...  # already being processed, try later
    """

    def __init__(
        self,
        producer: ArtifactProducer,
        storage: ArtifactStorageService,
        metadata: MetadataStore,
        locks: LockManager,
        retry: RetryExecutor | None = None,
        producer_retry: RetryConfig | None = None,
        should_generate: ShouldGenerate = always_generate,
        notifier: Notifier | None = None,
        on_success: SuccessCallback | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if producer_retry is None:
            from .config import Config

            producer_retry = RetryConfig(
                max_attempts=Config.PRODUCER_MAX_ATTEMPTS,
                initial_delay=Config.PRODUCER_INITIAL_DELAY,
                max_delay=max(Config.PRODUCER_INITIAL_DELAY, 30000),
                fatal_exceptions=(NotFound,),
            )

        self.producer: ArtifactProducer = producer
        self.storage: ArtifactStorageService = storage
        self.metadata: MetadataStore = metadata
        self.locks: LockManager = locks
        self.retry: RetryExecutor = retry or RetryExecutor()
        self.producer_retry: RetryConfig = producer_retry
        self.should_generate: ShouldGenerate = should_generate
        self.notifier: Notifier | None = notifier
        self.on_success: SuccessCallback | None = on_success
        self._clock: Callable[[], float] = clock

    # -------------------------------------------------------------------------
    # Generate
    # -------------------------------------------------------------------------

    def generate(self, resource_id: str) -> OperationResult:
        """Produce and install a fresh artifact for ``resource_id``."""
        resource_id = str(resource_id)

        if not self.should_generate(resource_id):
            logger.info(f"Generation skipped for {resource_id}: not eligible")
            return OperationResult.failure(
                resource_id, f"Resource {resource_id} is not eligible for generation", NotFound.kind
            )

        if not self.locks.acquire(resource_id):
            return self._locked(resource_id)

        rollback = RollbackRecord(resource_id=resource_id, lock_acquired=True)
        try:
            rollback.metadata = self.metadata.snapshot(resource_id)
            rollback.backup_path = self.storage.backup(resource_id)

            content = self._produce(resource_id)

            rollback.temp_path = self.storage.write_temp(resource_id, content)
            artifact_path = self.storage.atomic_replace(rollback.temp_path, resource_id)
            rollback.temp_path = None
            rollback.replaced = True

            size = artifact_path.stat().st_size
            etag = self.storage.calculate_hash(artifact_path)
            now = self._clock()
            self.metadata.update(
                resource_id,
                {
                    GENERATED_AT: int(now * 1000),
                    FILE_SIZE: size,
                    ETAG: etag,
                    ETAG_TIME: int(now),
                },
            )
        except Exception as e:
            return self._fail("generation", rollback, e)

        self.storage.discard(rollback.backup_path)
        _ = self.locks.release(resource_id)

        logger.info(f"Successfully generated static page for {resource_id} ({size} bytes)")
        result = OperationResult(
            success=True,
            resource_id=resource_id,
            artifact_path=str(artifact_path),
            size=size,
            etag=etag,
            message="Static file generated successfully",
        )
        self._notify_success("generate", result)
        return result

    def _produce(self, resource_id: str) -> bytes:
        """Run capture (retried) and transform, mapping failures to the taxonomy."""
        try:
            captured = self.retry.retry(
                lambda: self.producer.capture(resource_id), self.producer_retry
            )
        except RetryExhausted as e:
            if isinstance(e.last_error, StaticCacheError):
                raise e.last_error from e
            raise ProducerFailure(str(e)) from e
        except StaticCacheError:
            raise
        except Exception as e:
            raise ProducerFailure(f"Failed to capture page HTML: {e}") from e

        if not captured:
            raise ValidationFailure("Failed to capture page HTML (empty response)")

        try:
            transformed = self.producer.transform(captured, resource_id)
        except StaticCacheError:
            raise
        except Exception as e:
            raise ProducerFailure(f"Failed to transform page HTML: {e}") from e

        if not transformed:
            raise ValidationFailure("Generated file is invalid (empty)")
        return transformed

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, resource_id: str) -> OperationResult:
        """Remove the artifact and its metadata for ``resource_id``.

        Deleting a resource with no artifact is a ``not_found`` failure; any
        stale metadata for it is cleared so nothing residual is left behind.
        """
        resource_id = str(resource_id)

        if not self.locks.acquire(resource_id):
            return self._locked(resource_id)

        rollback = RollbackRecord(resource_id=resource_id, lock_acquired=True)
        try:
            rollback.metadata = self.metadata.snapshot(resource_id)

            if not self.storage.exists(resource_id):
                _ = self.metadata.delete(resource_id)
                _ = self.locks.release(resource_id)
                logger.info(f"No static file to delete for {resource_id}")
                return OperationResult.failure(
                    resource_id, f"No static file exists for resource {resource_id}", NotFound.kind
                )

            rollback.backup_path = self.storage.backup(resource_id)
            rollback.removed = self.storage.remove(resource_id)
            _ = self.metadata.delete(resource_id)
        except Exception as e:
            return self._fail("deletion", rollback, e)

        self.storage.discard(rollback.backup_path)
        _ = self.locks.release(resource_id)

        logger.info(f"Successfully deleted static page for {resource_id}")
        result = OperationResult(
            success=True,
            resource_id=resource_id,
            message="Static file deleted successfully",
        )
        self._notify_success("delete", result)
        return result

    def regenerate(self, resource_id: str) -> OperationResult:
        """Rebuild an artifact.

        The previous artifact stays in place (and is restored on failure)
        until the new one has been atomically moved over it.
        """
        return self.generate(resource_id)

    # -------------------------------------------------------------------------
    # Bulk
    # -------------------------------------------------------------------------

    def bulk(
        self,
        resource_ids: Iterable[str],
        operation: str = "generate",
        stop_on_failure: bool | None = None,
        rollback_on_failure: bool | None = None,
    ) -> BulkResult:
        """Apply ``generate`` or ``delete`` to each id independently.

        Args:
            resource_ids: Resources to process, in order
            operation: ``"generate"`` or ``"delete"``
            stop_on_failure: Stop at the first failed item
            rollback_on_failure: Undo completed items if any item failed
                (generated items are deleted, deleted items regenerated)
        """
        if stop_on_failure is None or rollback_on_failure is None:
            from .config import Config

            if stop_on_failure is None:
                stop_on_failure = Config.BULK_STOP_ON_FAILURE
            if rollback_on_failure is None:
                rollback_on_failure = Config.BULK_ROLLBACK_ON_FAILURE

        if operation == "generate":
            run, undo = self.generate, self.delete
        elif operation == "delete":
            run, undo = self.delete, self.generate
        else:
            raise ValueError(f"Unknown bulk operation: {operation}")

        ids = [str(resource_id) for resource_id in resource_ids]
        result = BulkResult(total=len(ids))

        for resource_id in ids:
            item_result = run(resource_id)
            if item_result.success:
                result.completed[resource_id] = item_result
                continue

            result.failed[resource_id] = item_result.error or "Unknown error"
            if stop_on_failure:
                result.error = f"Bulk operation failed at {resource_id}: {item_result.error}"
                break

        if result.failed:
            result.success = not (stop_on_failure or rollback_on_failure)
            if rollback_on_failure and result.completed:
                logger.warning(
                    f"Rolling back {len(result.completed)} completed {operation} operation(s)"
                )
                for resource_id in result.completed:
                    undone = undo(resource_id)
                    if not undone.success:
                        logger.error(f"Could not roll back {operation} for {resource_id}: {undone.error}")
                result.rolled_back = True

        result.success_count = len(result.completed)
        result.failure_count = len(result.failed)
        return result

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    def _locked(self, resource_id: str) -> OperationResult:
        error = LockUnavailable(resource_id)
        logger.info(str(error))
        return OperationResult.failure(resource_id, str(error), error.kind)

    def _fail(self, stage: str, rollback: RollbackRecord, exc: Exception) -> OperationResult:
        kind = error_kind(exc)
        message = error_message(exc)
        resource_id = rollback.resource_id

        if isinstance(exc, NotFound):
            logger.warning(f"Atomic {stage} for {resource_id}: {message}")
        else:
            report_failure(
                self.notifier,
                "atomic_operations",
                f"Atomic {stage} failed for {resource_id}: {message}",
                resource_id=resource_id,
                error_kind=kind,
            )

        self._rollback(rollback)
        return OperationResult.failure(resource_id, message, kind)

    def _rollback(self, rollback: RollbackRecord) -> None:
        """Restore artifact, metadata and lock to their pre-operation state.

        Each step runs even if an earlier one fails; failures are reported as
        critical because they leave state diverged from the snapshot.
        """
        resource_id = rollback.resource_id

        def step(name: str, action: Callable[[], object]) -> None:
            try:
                _ = action()
            except Exception as e:
                rollback.notes.append(f"{name}: {e}")
                report_failure(
                    self.notifier,
                    "atomic_operations",
                    f"Rollback step '{name}' failed for {resource_id}: {e}",
                    severity="critical",
                    resource_id=resource_id,
                )

        if rollback.temp_path is not None:
            step("discard temp file", lambda: self.storage.discard(rollback.temp_path))

        if rollback.backup_path is not None:
            backup_path = rollback.backup_path
            if rollback.replaced or rollback.removed:
                step("restore backup", lambda: self.storage.restore_backup(backup_path, resource_id))
            else:
                step("discard backup", lambda: self.storage.discard(backup_path))
        elif rollback.replaced:
            # No artifact existed before; remove the one we installed
            step("remove new artifact", lambda: self.storage.remove(resource_id))

        if rollback.metadata is not None:
            snapshot = rollback.metadata
            step("restore metadata", lambda: self.metadata.restore(resource_id, snapshot))

        if rollback.lock_acquired:
            step("release lock", lambda: self.locks.release(resource_id))

        if not rollback.notes:
            logger.info(f"Rollback completed for {resource_id}")

    def _notify_success(self, operation: str, result: OperationResult) -> None:
        if self.on_success is None:
            return
        try:
            self.on_success(operation, result.resource_id, result)
        except Exception as e:
            logger.warning(f"on_success callback failed for {result.resource_id}: {e}")
