"""Configuration for the static cache job services.

Usage:
    from static_cache_jobs.config import Config

    # Access config values
    database_url = Config.DATABASE_URL
    storage_dir = Config.ARTIFACT_STORAGE_DIR
"""

from .base_config import (
    get_bool_config,
    get_cache_dir,
    get_config_value,
    get_int_config,
    get_list_config,
)


class Config:
    """Centralized configuration for the queue, lock and storage services.

    All configuration values are class variables that can be accessed directly.
    Values are loaded from environment variables with sensible defaults.
    Managers only fall back to these values when a constructor argument is
    omitted.

    Example:
        from static_cache_jobs.config import Config

        print(Config.STATIC_CACHE_DIR)
        print(Config.LOCK_TIMEOUT)
    """

    # ========================================================================
    # Common Configuration
    # ========================================================================

    STATIC_CACHE_DIR: str = get_cache_dir()

    DATABASE_URL: str = get_config_value(
        "DATABASE_URL", f"sqlite:///{STATIC_CACHE_DIR}/static_cache.db"
    )
    ARTIFACT_STORAGE_DIR: str = get_config_value(
        "ARTIFACT_STORAGE_DIR", f"{STATIC_CACHE_DIR}/pages"
    )

    LOG_LEVEL: str = get_config_value("LOG_LEVEL", "INFO")

    # ========================================================================
    # Locking
    # ========================================================================

    LOCK_TIMEOUT: int = get_int_config("LOCK_TIMEOUT", 300)

    # ========================================================================
    # Atomic Operations
    # ========================================================================

    PRODUCER_MAX_ATTEMPTS: int = get_int_config("PRODUCER_MAX_ATTEMPTS", 2)
    PRODUCER_INITIAL_DELAY: int = get_int_config("PRODUCER_INITIAL_DELAY", 500)
    BULK_STOP_ON_FAILURE: bool = get_bool_config("BULK_STOP_ON_FAILURE", False)
    BULK_ROLLBACK_ON_FAILURE: bool = get_bool_config("BULK_ROLLBACK_ON_FAILURE", False)

    # ========================================================================
    # Queue Configuration
    # ========================================================================

    QUEUE_BATCH_SIZE: int = get_int_config("QUEUE_BATCH_SIZE", 5)
    QUEUE_TIME_LIMIT: int = get_int_config("QUEUE_TIME_LIMIT", 20)
    QUEUE_DEFAULT_PRIORITY: int = get_int_config("QUEUE_DEFAULT_PRIORITY", 10)
    QUEUE_MAX_ATTEMPTS: int = get_int_config("QUEUE_MAX_ATTEMPTS", 3)
    QUEUE_RETENTION_DAYS: int = get_int_config("QUEUE_RETENTION_DAYS", 7)
    QUEUE_STALE_AFTER: int = get_int_config("QUEUE_STALE_AFTER", 600)

    # ========================================================================
    # Batch / Progress Configuration
    # ========================================================================

    BATCH_CHUNK_SIZE: int = get_int_config("BATCH_CHUNK_SIZE", 3)
    BATCH_TTL: int = get_int_config("BATCH_TTL", 3600)
    PROGRESS_TTL: int = get_int_config("PROGRESS_TTL", 3600)
    PROGRESS_MAX_MESSAGES: int = get_int_config("PROGRESS_MAX_MESSAGES", 50)
    PROGRESS_MAX_ERRORS: int = get_int_config("PROGRESS_MAX_ERRORS", 100)

    # ========================================================================
    # Scheduler Configuration
    # ========================================================================

    SCHEDULER_TICK_INTERVAL: int = get_int_config("SCHEDULER_TICK_INTERVAL", 60)
    SCHEDULER_RECOVERY_INTERVAL: int = get_int_config("SCHEDULER_RECOVERY_INTERVAL", 3600)
    SCHEDULER_CLEANUP_INTERVAL: int = get_int_config("SCHEDULER_CLEANUP_INTERVAL", 86400)

    # ========================================================================
    # Notification (MQTT) Configuration
    # ========================================================================

    NOTIFY_TYPE: str = get_config_value("NOTIFY_TYPE", "none")
    NOTIFY_SEVERITIES: list[str] = get_list_config("NOTIFY_SEVERITIES", "error,critical")
    MQTT_BROKER: str = get_config_value("MQTT_BROKER", "localhost")
    MQTT_PORT: int = get_int_config("MQTT_PORT", 1883)
    MQTT_TOPIC: str = get_config_value("MQTT_TOPIC", "static-cache/events")
