"""Job-processing services for regenerating cached static artifacts."""

# Public API - Service implementations
from .artifact_storage import ArtifactStorageService
from .atomic import AtomicOperationExecutor
from .batch import BatchProcessor
from .config import Config
from .kv_store import KeyValueStore
from .lock_manager import LockManager
from .metadata_store import MetadataStore
from .producer import ArtifactProducer
from .progress import ProgressTracker
from .queue_manager import QueueManager
from .queue_store import QueueStore
from .recovery import RecoverySweep
from .retry import RetryExecutor

# Public API - Pydantic models
from .schemas import (
    BatchJob,
    BatchStatus,
    BulkResult,
    OperationResult,
    ProgressSession,
    ProgressStatus,
    QueueAction,
    QueueItemRecord,
    QueueStatus,
    RetryConfig,
)

__all__ = [
    # Configuration
    "Config",
    # Services
    "ArtifactProducer",
    "ArtifactStorageService",
    "AtomicOperationExecutor",
    "BatchProcessor",
    "KeyValueStore",
    "LockManager",
    "MetadataStore",
    "ProgressTracker",
    "QueueManager",
    "QueueStore",
    "RecoverySweep",
    "RetryExecutor",
    # Pydantic Models
    "BatchJob",
    "BatchStatus",
    "BulkResult",
    "OperationResult",
    "ProgressSession",
    "ProgressStatus",
    "QueueAction",
    "QueueItemRecord",
    "QueueStatus",
    "RetryConfig",
]
