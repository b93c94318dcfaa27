"""Common configuration validation utilities."""
import os


def get_cache_dir() -> str:
    """Get and validate STATIC_CACHE_DIR environment variable.

    Returns:
        Validated STATIC_CACHE_DIR path

    Raises:
        ValueError: If STATIC_CACHE_DIR not set or not writable
    """
    cache_dir = os.getenv("STATIC_CACHE_DIR")
    if not cache_dir:
        raise ValueError("STATIC_CACHE_DIR environment variable must be set")

    if not os.access(cache_dir, os.W_OK):
        raise ValueError(f"STATIC_CACHE_DIR does not exist or no write permission: {cache_dir}")

    return cache_dir


def get_config_value(key: str, default: str) -> str:
    """Get configuration value from environment with optional default."""
    return os.getenv(key, default)


def get_int_config(key: str, default: int) -> int:
    """Get integer configuration value."""
    return int(os.getenv(key, str(default)))


def get_bool_config(key: str, default: bool = False) -> bool:
    """Get boolean configuration value."""
    return os.getenv(key, str(default)).lower() in ("true", "1", "yes")


def get_list_config(key: str, default: str, separator: str = ",") -> list[str]:
    """Get list configuration value."""
    return [value.strip() for value in os.getenv(key, default).split(separator) if value.strip()]
