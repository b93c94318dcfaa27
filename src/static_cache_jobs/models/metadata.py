"""Per-resource artifact metadata model."""

from typing import override

from sqlalchemy import Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ArtifactMetadata(Base):
    """One metadata key/value for the artifact of a resource."""

    __tablename__ = "artifact_metadata"  # pyright: ignore[reportUnannotatedClassAttribute]
    __table_args__ = (  # pyright: ignore[reportUnannotatedClassAttribute]
        UniqueConstraint("resource_id", "meta_key", name="uq_artifact_metadata_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    resource_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    meta_key: Mapped[str] = mapped_column(String(100), nullable=False)
    meta_value: Mapped[str] = mapped_column(Text, nullable=False)

    @override
    def __repr__(self) -> str:
        return f"<ArtifactMetadata(resource_id={self.resource_id}, key={self.meta_key})>"
