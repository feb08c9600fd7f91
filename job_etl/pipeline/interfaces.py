"""
Collaborator interfaces consumed by the pipeline.

Each protocol names one capability, so a component's dependencies can be
listed and mocked individually. A single object may implement several
(``LocalJsonStore`` is a sink, a migrator, a role resolver and a
similar-role finder).
"""

from typing import AsyncIterator, List, Optional, Protocol, Sequence, runtime_checkable

from job_etl.models import EnrichedRecord, GeneralRoleLink, ListingDetail, ListingReference, SimilarRole


@runtime_checkable
class AcquisitionSource(Protocol):
    """Lists listing references and expands them into details."""

    def list_references(self, limit: Optional[int] = None) -> AsyncIterator[ListingReference]:
        """Lazily yield at most ``limit`` references (all when ``None``)."""
        ...

    async def fetch_detail(self, reference: ListingReference) -> ListingDetail:
        ...


@runtime_checkable
class Enricher(Protocol):
    async def enrich(self, detail: ListingDetail) -> EnrichedRecord:
        ...


@runtime_checkable
class BatchSink(Protocol):
    """Commits a batch of records to the staging store."""

    async def store_batch(self, records: Sequence[EnrichedRecord]) -> None:
        ...


@runtime_checkable
class LiveMigrator(Protocol):
    """Promotes a stored batch to the live store."""

    async def migrate_batch_to_live(self, records: Sequence[EnrichedRecord]) -> None:
        ...


@runtime_checkable
class RoleResolver(Protocol):
    """Get-or-create for canonical roles."""

    async def get_or_create_canonical_role(self, title: str, description: str = "") -> GeneralRoleLink:
        ...


@runtime_checkable
class SimilarRoleFinder(Protocol):
    """Nearest canonical roles to an embedding."""

    async def find_similar_canonical_roles(
        self, embedding: Sequence[float], limit: int = 5
    ) -> List[SimilarRole]:
        ...


@runtime_checkable
class SupportsClose(Protocol):
    async def close(self) -> None:
        ...
