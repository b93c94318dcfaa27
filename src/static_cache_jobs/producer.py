"""Interface to the external collaborator that renders a resource."""

from collections.abc import Callable
from typing import Protocol, TypeAlias, runtime_checkable


@runtime_checkable
class ArtifactProducer(Protocol):
    """Captures and transforms the rendering of a resource.

    Implementations raise ``NotFound`` when the resource does not exist (or is
    not publishable) and any other exception for transient failures; the
    atomic executor retries ``capture`` and treats both steps as the
    producer stage.
    """

    def capture(self, resource_id: str) -> bytes:
        """Fetch the raw rendering of ``resource_id``."""
        ...

    def transform(self, content: bytes, resource_id: str) -> bytes:
        """Rewrite/optimise captured content."""
        ...


ShouldGenerate: TypeAlias = Callable[[str], bool]
"""Predicate deciding whether a resource may be generated at all."""


def always_generate(resource_id: str) -> bool:
    return True
