"""Shared database models."""

from .base import Base
from .kv import KeyValueEntry
from .metadata import ArtifactMetadata
from .queue import QueueItem

__all__ = ["Base", "ArtifactMetadata", "KeyValueEntry", "QueueItem"]
