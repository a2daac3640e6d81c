"""Abstract record store client consumed by the backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

Resource = dict[str, Any]
SearchParams = Sequence[tuple[str, str]]


class RecordStoreClient(ABC):
    """CRUD and search over FHIR-shaped resources.

    Implementations own transport, authentication and retry policy. Search
    parameters are ordered ``(name, value)`` pairs; a repeated name is a
    separate constraint AND-ed with the others, and must reach the store as a
    repeated query parameter rather than being collapsed.
    """

    @abstractmethod
    async def create(self, resource: Resource) -> Resource:
        """Create a resource and return it with its store-assigned ``id`` and ``meta``."""
        ...

    @abstractmethod
    async def read(self, resource_type: str, resource_id: str) -> Resource:
        """Read one resource.

        Raises:
            NotFoundError: If no such resource exists.
        """
        ...

    @abstractmethod
    async def update(self, resource: Resource, *, version_id: str | None = None) -> Resource:
        """Replace a resource.

        Args:
            resource: The full resource, including ``id``.
            version_id: The ``meta.versionId`` observed on read. Stores with
                conditional writes should reject the update when it is stale.
        """
        ...

    @abstractmethod
    async def delete(self, resource_type: str, resource_id: str) -> None:
        """Delete one resource.

        Raises:
            NotFoundError: If no such resource exists.
        """
        ...

    @abstractmethod
    async def search(self, resource_type: str, params: SearchParams) -> list[Resource]:
        """Return every resource of ``resource_type`` matching ``params``."""
        ...
