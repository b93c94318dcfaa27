"""Per-resource artifact metadata (generated time, size, etag)."""

from collections.abc import Iterable, Mapping
from typing import Final

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from .models import ArtifactMetadata

GENERATED_AT: Final[str] = "static_generated"
FILE_SIZE: Final[str] = "static_file_size"
ETAG: Final[str] = "static_etag"
ETAG_TIME: Final[str] = "static_etag_time"

TRACKED_KEYS: Final[tuple[str, ...]] = (GENERATED_AT, FILE_SIZE, ETAG, ETAG_TIME)


class MetadataStore:
    """Key/value metadata attached to a resource's artifact.

    ``snapshot`` records missing keys as ``None`` so that ``restore`` can put
    the resource back exactly as it was: present keys rewritten verbatim,
    absent keys deleted.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory: sessionmaker[Session] = session_factory

    def get(self, resource_id: str) -> dict[str, str]:
        with self.session_factory() as session:
            stmt = select(ArtifactMetadata).where(ArtifactMetadata.resource_id == resource_id)
            rows = session.execute(stmt).scalars().all()
            return {row.meta_key: row.meta_value for row in rows}

    def snapshot(
        self, resource_id: str, keys: Iterable[str] = TRACKED_KEYS
    ) -> dict[str, str | None]:
        current = self.get(resource_id)
        return {key: current.get(key) for key in keys}

    def resources_with(self, key: str = GENERATED_AT) -> list[str]:
        """Return ids of resources that carry ``key``."""
        with self.session_factory() as session:
            stmt = (
                select(ArtifactMetadata.resource_id)
                .where(ArtifactMetadata.meta_key == key)
                .order_by(ArtifactMetadata.resource_id)
            )
            return list(session.execute(stmt).scalars().all())

    def update(self, resource_id: str, values: Mapping[str, object]) -> None:
        """Write all ``values`` in one transaction."""
        with self.session_factory() as session:
            self._apply(session, resource_id, {k: str(v) for k, v in values.items()})
            session.commit()

    def delete(self, resource_id: str, keys: Iterable[str] = TRACKED_KEYS) -> int:
        with self.session_factory() as session:
            result = session.execute(
                delete(ArtifactMetadata).where(
                    ArtifactMetadata.resource_id == resource_id,
                    ArtifactMetadata.meta_key.in_(list(keys)),
                )
            )
            session.commit()
            return result.rowcount or 0

    def restore(self, resource_id: str, snapshot: Mapping[str, str | None]) -> None:
        """Restore a snapshot in one transaction (None deletes the key)."""
        with self.session_factory() as session:
            self._apply(session, resource_id, snapshot)
            session.commit()

    @staticmethod
    def _apply(session: Session, resource_id: str, values: Mapping[str, str | None]) -> None:
        stmt = select(ArtifactMetadata).where(
            ArtifactMetadata.resource_id == resource_id,
            ArtifactMetadata.meta_key.in_(list(values)),
        )
        existing = {row.meta_key: row for row in session.execute(stmt).scalars().all()}

        for key, value in values.items():
            row = existing.get(key)
            if value is None:
                if row is not None:
                    session.delete(row)
            elif row is None:
                session.add(ArtifactMetadata(resource_id=resource_id, meta_key=key, meta_value=value))
            else:
                row.meta_value = value
