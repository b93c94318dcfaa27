"""
Pydantic schemas shared by the queue, lock, batch and progress services.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, JsonValue, field_validator, model_validator


class QueueAction(str, Enum):
    """Built-in queue actions. Registered custom handlers may use other names."""

    generate = "generate"
    regenerate = "regenerate"
    delete = "delete"
    custom = "custom"


class QueueStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


ACTIVE_STATUSES: tuple[QueueStatus, ...] = (QueueStatus.pending, QueueStatus.processing)
TERMINAL_STATUSES: tuple[QueueStatus, ...] = (QueueStatus.completed, QueueStatus.failed)


class QueueItemRecord(BaseModel):
    """Detached view of a queue row."""

    id: int
    target_id: str
    target_type: str = "post"
    action: str
    priority: int = 10
    status: QueueStatus = QueueStatus.pending
    attempts: int = 0
    max_attempts: int = 3
    payload: dict[str, JsonValue] = Field(default_factory=dict)
    created_at: int
    started_at: int | None = None
    completed_at: int | None = None
    error_message: str | None = None

    @property
    def attempts_remaining(self) -> bool:
        return self.attempts < self.max_attempts


class QueueStats(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class ProcessingStats(BaseModel):
    avg_processing_time: float = 0.0
    success_rate: float = 0.0
    total_processed: int = 0
    successful: int = 0


class BulkEnqueueResult(BaseModel):
    added: int = 0
    skipped: int = 0
    failed: int = 0


class TickResult(BaseModel):
    """Outcome of one scheduling pass."""

    skipped: bool = False
    processed: int = 0
    completed: int = 0
    requeued: int = 0
    failed: int = 0
    elapsed_ms: int = 0


# ============================================================================
# Retry
# ============================================================================


class RetryConfig(BaseModel):
    """Backoff configuration. Delays are whole milliseconds."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    max_attempts: int = Field(3, ge=1)
    initial_delay: int = Field(1000, ge=0)
    max_delay: int = Field(30000, ge=0)
    multiplier: float = Field(2.0, ge=1.0)
    jitter: bool = True
    # Empty means every exception is retryable
    retryable_exceptions: tuple[type[BaseException], ...] = ()
    # Never retried, even when they match the allow-list
    fatal_exceptions: tuple[type[BaseException], ...] = ()

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryConfig":
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be greater than or equal to initial_delay")
        return self


# ============================================================================
# Atomic operations
# ============================================================================


class OperationResult(BaseModel):
    """Structured result of a generate or delete operation."""

    success: bool
    resource_id: str
    artifact_path: str | None = None
    size: int | None = None
    etag: str | None = None
    message: str | None = None
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def failure(cls, resource_id: str, error: str, error_kind: str) -> "OperationResult":
        return cls(success=False, resource_id=resource_id, error=error, error_kind=error_kind)


class BulkResult(BaseModel):
    success: bool = True
    total: int = 0
    completed: dict[str, OperationResult] = Field(default_factory=dict)
    failed: dict[str, str] = Field(default_factory=dict)
    success_count: int = 0
    failure_count: int = 0
    error: str | None = None
    rolled_back: bool = False


# ============================================================================
# Locks
# ============================================================================


class LockInfo(BaseModel):
    """Lock record payload. ``acquired_at`` is in milliseconds, ``timeout`` in seconds."""

    resource_id: str
    holder: str
    acquired_at: int
    timeout: int = Field(..., gt=0)

    @property
    def expires_at(self) -> int:
        return self.acquired_at + self.timeout * 1000

    def is_valid(self, now_ms: int, timeout: int | None = None) -> bool:
        """A lock is valid iff ``now - acquired_at < timeout``."""
        effective = timeout if timeout is not None else self.timeout
        return now_ms - self.acquired_at < effective * 1000


# ============================================================================
# Progress
# ============================================================================


class ProgressStatus(str, Enum):
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class ProgressMessage(BaseModel):
    time: int
    message: str
    context: dict[str, JsonValue] = Field(default_factory=dict)


class PerformanceMetrics(BaseModel):
    items_per_second: float = 0.0
    average_item_time: float = 0.0
    elapsed_time: float = 0.0
    remaining_time: float = 0.0
    total_time: float | None = None


class ProgressSession(BaseModel):
    id: str
    operation: str
    total: int = Field(..., ge=0)
    current: int = 0
    percentage: int = 0
    status: ProgressStatus = ProgressStatus.running
    started_at: int
    updated_at: int
    completed_at: int | None = None
    estimated_completion: int | None = None
    current_item: str = ""
    messages: list[ProgressMessage] = Field(default_factory=list)
    errors: list[ProgressMessage] = Field(default_factory=list)
    metadata: dict[str, JsonValue] = Field(default_factory=dict)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)

    @property
    def is_terminal(self) -> bool:
        return self.status is not ProgressStatus.running


# ============================================================================
# Batches
# ============================================================================


class BatchStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    cancelled = "cancelled"


class BatchJob(BaseModel):
    id: str
    operation: str
    items: list[str]
    chunk_size: int = Field(..., gt=0)
    current_chunk: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    # Keyed by the item's index in ``items``
    errors: dict[str, str] = Field(default_factory=dict)
    status: BatchStatus = BatchStatus.pending
    started_at: int
    completed_at: int | None = None
    args: dict[str, JsonValue] = Field(default_factory=dict)
    progress_session_id: str | None = None

    @field_validator("items", mode="before")
    @classmethod
    def coerce_item_ids(cls, v: list[object]) -> list[str]:
        return [str(item) for item in v]

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def progress_pct(self) -> float:
        return round(self.processed / self.total * 100, 2) if self.total > 0 else 0.0


class ChunkResult(BaseModel):
    success: bool
    batch_id: str
    chunk: int | None = None
    processed: int = 0
    total: int = 0
    progress_pct: float = 0.0
    status: BatchStatus | None = None
    successful: int = 0
    failed: int = 0
    errors: dict[str, str] = Field(default_factory=dict)
    error: str | None = None


# ============================================================================
# Notifications
# ============================================================================


class ErrorEvent(BaseModel):
    """Structured error record handed to the notifier."""

    context: str
    message: str
    severity: str = "error"
    timestamp: int
    data: dict[str, JsonValue] = Field(default_factory=dict)


# ============================================================================
# Recovery
# ============================================================================


class RecoveryTaskResult(BaseModel):
    status: str = "success"
    counts: dict[str, int] = Field(default_factory=dict)
    error: str | None = None


class RecoveryReport(BaseModel):
    """Outcome of one hourly or daily recovery run."""

    type: str
    started_at: int
    finished_at: int | None = None
    tasks: dict[str, RecoveryTaskResult] = Field(default_factory=dict)

    @property
    def failed_tasks(self) -> int:
        return sum(1 for task in self.tasks.values() if task.status != "success")
