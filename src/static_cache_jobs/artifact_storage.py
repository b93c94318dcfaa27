"""Filesystem storage for cached artifacts.

Owns the on-disk layout: canonical files, the temporary files an atomic write
renames into place, and the backups kept while a write or delete is in
flight. Resource ids are percent-encoded into file names so that distinct ids
never share a path.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Final
from urllib.parse import quote

from .errors import ValidationFailure, WriteFailure

logger = logging.getLogger(__name__)


class ArtifactStorageService:
    """File operations for cached artifacts.

    Layout: ``{base_dir}/page-{resource_id}.html``. Temporary files use the
    ``.atomic.<uuid>`` suffix and backups ``.backup.<uuid>``; both live in the
    same directory as the canonical file so that ``os.replace`` stays on one
    filesystem and is atomic for readers.
    """

    _CHUNK_SIZE: Final[int] = 1024 * 1024  # 1 MB
    TEMP_MARKER: Final[str] = ".atomic."
    BACKUP_MARKER: Final[str] = ".backup."

    def __init__(self, base_dir: str | None = None):
        """
        Initialize artifact storage service.

        Args:
            base_dir: Directory for artifacts. If None, uses ARTIFACT_STORAGE_DIR from config.
        """
        if base_dir is None:
            from .config import Config

            base_dir = Config.ARTIFACT_STORAGE_DIR

        self.base_dir: Path = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def artifact_path(self, resource_id: str) -> Path:
        """Canonical artifact path for a resource."""
        # Letters, digits and "_-~" pass through; "." is encoded so ".." stays inert
        safe_id = quote(str(resource_id), safe="").replace(".", "%2E")
        return self.base_dir / f"page-{safe_id}.html"

    def temp_path(self, resource_id: str) -> Path:
        path = self.artifact_path(resource_id)
        return path.with_name(f"{path.name}{self.TEMP_MARKER}{uuid.uuid4().hex}")

    def exists(self, resource_id: str) -> bool:
        return self.artifact_path(resource_id).is_file()

    def read(self, resource_id: str) -> bytes | None:
        path = self.artifact_path(resource_id)
        if not path.is_file():
            return None
        return path.read_bytes()

    # -------------------------------------------------------------------------
    # Mutations (called only by the atomic operation executor)
    # -------------------------------------------------------------------------

    def backup(self, resource_id: str) -> Path | None:
        """Copy the current artifact aside. The original is left in place.

        Returns:
            Backup path, or None if there is no artifact to back up

        Raises:
            WriteFailure: If the copy fails
        """
        path = self.artifact_path(resource_id)
        if not path.is_file():
            return None

        backup_path = path.with_name(f"{path.name}{self.BACKUP_MARKER}{uuid.uuid4().hex}")
        try:
            _ = shutil.copy2(path, backup_path)
        except OSError as e:
            raise WriteFailure(f"Failed to create backup of existing file: {e}") from e
        return backup_path

    def write_temp(self, resource_id: str, content: bytes) -> Path:
        """Write ``content`` to a fresh temporary file and fsync it.

        Raises:
            WriteFailure: If the write fails
            ValidationFailure: If the written file is empty
        """
        temp_path = self.temp_path(resource_id)
        try:
            with open(temp_path, "wb") as f:
                _ = f.write(content)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            self.discard(temp_path)
            raise WriteFailure(f"Failed to write temporary file: {e}") from e

        if temp_path.stat().st_size == 0:
            self.discard(temp_path)
            raise ValidationFailure("Generated file is invalid (empty)")
        return temp_path

    def atomic_replace(self, source: Path, resource_id: str) -> Path:
        """Atomically move ``source`` onto the canonical path.

        Raises:
            WriteFailure: If the rename fails
        """
        target = self.artifact_path(resource_id)
        try:
            os.replace(source, target)
        except OSError as e:
            raise WriteFailure(f"Failed to move temporary file to final location: {e}") from e
        return target

    def restore_backup(self, backup_path: Path, resource_id: str) -> None:
        """Put a backup back over the canonical path."""
        os.replace(backup_path, self.artifact_path(resource_id))

    def remove(self, resource_id: str) -> bool:
        """Delete the canonical artifact.

        Raises:
            WriteFailure: If the file exists but cannot be deleted
        """
        path = self.artifact_path(resource_id)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            raise WriteFailure(f"Failed to delete static file: {e}") from e
        return True

    @staticmethod
    def discard(path: Path | None) -> None:
        """Best-effort removal of a temp or backup file."""
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    # -------------------------------------------------------------------------
    # Inspection / maintenance
    # -------------------------------------------------------------------------

    @classmethod
    def calculate_hash(cls, file_path: Path, algorithm: str = "md5") -> str:
        """Calculate file hash.

        Args:
            file_path: Path to the file
            algorithm: Hash algorithm (default: md5, used as the artifact etag)

        Returns:
            Hexadecimal hash string
        """
        hash_obj = hashlib.new(algorithm)
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(cls._CHUNK_SIZE), b""):
                hash_obj.update(chunk)
        return hash_obj.hexdigest()

    def get_storage_size(self) -> dict[str, int]:
        """Calculate total size and count of canonical artifacts."""
        total_size = 0
        artifact_count = 0

        for file_path in self.base_dir.glob("page-*.html"):
            if file_path.is_file():
                artifact_count += 1
                total_size += file_path.stat().st_size

        return {
            "total_size": total_size,
            "artifact_count": artifact_count,
        }

    def cleanup_stale_files(self, temp_age: int = 3600, backup_age: int = 86400) -> int:
        """Delete orphaned temp and backup files left behind by a crash.

        Args:
            temp_age: Minimum age in seconds for temp files
            backup_age: Minimum age in seconds for backup files

        Returns:
            Number of files deleted
        """
        now = time.time()
        cleaned = 0

        for file_path in self.base_dir.iterdir():
            if not file_path.is_file():
                continue
            if self.TEMP_MARKER in file_path.name:
                max_age = temp_age
            elif self.BACKUP_MARKER in file_path.name:
                max_age = backup_age
            else:
                continue

            if file_path.stat().st_mtime < now - max_age:
                try:
                    file_path.unlink()
                    cleaned += 1
                except OSError as e:
                    logger.warning(f"Error deleting stale file {file_path.name}: {e}")

        if cleaned:
            logger.info(f"Cleaned {cleaned} stale temp/backup file(s)")
        return cleaned
