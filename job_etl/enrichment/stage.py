"""
Enrichment stage: listing detail -> enriched record.

The stage asks the extraction model to map a listing onto the loaded
capability framework and taxonomy, links the listing to a canonical
general role, and attaches embeddings. Names the model returns that are
not in the loaded reference sets are dropped.
"""

from typing import Any, Dict, List, Optional

from job_etl.enrichment.embeddings import Embedder
from job_etl.enrichment.prompts import (
    ANALYSIS_ACTION,
    ANALYSIS_SYSTEM_PROMPT,
    build_analysis_instructions,
)
from job_etl.extraction.client import ExtractionClient
from job_etl.extraction.retry import compact_error, describe_error
from job_etl.models import (
    CapabilityAnalysis,
    CapabilityLevel,
    CapabilityMatch,
    EnrichedRecord,
    GeneralRoleLink,
    ListingDetail,
    RecordEmbeddings,
    ReferenceCapability,
    SimilarRole,
    SkillMatch,
    TaxonomyGroup,
    TaxonomyMatch,
)
from job_etl.pipeline.interfaces import RoleResolver, SimilarRoleFinder
from job_etl.utils.errors import ConfigurationError, EnrichmentError, ReferenceDataNotLoadedError
from job_etl.utils.logging import get_logger

logger = get_logger(__name__)


def _normalise(name: str) -> str:
    return " ".join(name.lower().split())


class EnrichmentStage:
    """Turns one listing into an ``EnrichedRecord``."""

    def __init__(
        self,
        client: ExtractionClient,
        role_resolver: Optional[RoleResolver] = None,
        similar_roles: Optional[SimilarRoleFinder] = None,
        embedder: Optional[Embedder] = None,
        similar_role_limit: int = 5,
    ) -> None:
        """
        Initialize the stage.

        Args:
            client: Extraction client; owns retries
            role_resolver: Get-or-create for canonical roles
            similar_roles: Similar-role lookup used to bias classification
            embedder: Embedding generator; no embeddings are attached without one
            similar_role_limit: Maximum similar roles offered to the model
        """
        self.client = client
        self.role_resolver = role_resolver
        self.similar_roles = similar_roles
        self.embedder = embedder
        self.similar_role_limit = similar_role_limit

        self._capabilities: Dict[str, ReferenceCapability] = {}
        self._taxonomies: Dict[str, TaxonomyGroup] = {}

    def load_reference_sets(
        self,
        capabilities: List[ReferenceCapability],
        taxonomies: List[TaxonomyGroup],
    ) -> None:
        """Load the capability framework and taxonomy used for mapping."""
        self._capabilities = {_normalise(c.name): c for c in capabilities}
        self._taxonomies = {_normalise(t.name): t for t in taxonomies}
        logger.info(
            f"Loaded {len(self._capabilities)} capabilities and {len(self._taxonomies)} taxonomy groups"
        )

    @property
    def is_loaded(self) -> bool:
        return bool(self._capabilities) and bool(self._taxonomies)

    def _require_reference_sets(self) -> None:
        missing = []
        if not self._capabilities:
            missing.append("capabilities")
        if not self._taxonomies:
            missing.append("taxonomies")
        if missing:
            raise ReferenceDataNotLoadedError(missing)

    async def enrich(self, detail: ListingDetail) -> EnrichedRecord:
        """
        Analyse one listing.

        Raises:
            ReferenceDataNotLoadedError: Reference sets were not loaded
            EnrichmentError: Extraction, role resolution or embedding failed
        """
        self._require_reference_sets()
        try:
            return await self._enrich(detail)
        except (ConfigurationError, EnrichmentError):
            raise
        except Exception as e:
            raise EnrichmentError(
                f"Enrichment failed for listing {detail.id}: {describe_error(e)}",
                item_id=detail.id,
            ) from e

    async def _enrich(self, detail: ListingDetail) -> EnrichedRecord:
        job_embedding = await self._job_embedding(detail)
        similar = await self._find_similar_roles(detail, job_embedding)

        instructions = build_analysis_instructions(
            list(self._capabilities.values()),
            list(self._taxonomies.values()),
            similar,
        )
        raw = await self.client.extract(
            detail.document_text(),
            instructions,
            action=ANALYSIS_ACTION,
            system_prompt=ANALYSIS_SYSTEM_PROMPT,
        )

        analysis = self._map_analysis(detail, raw)
        general_role = await self._resolve_general_role(raw.get("general_role"), similar)
        embeddings = await self._embeddings(job_embedding, analysis)

        logger.debug(
            f"Enriched listing {detail.id}",
            extra={
                "capabilities": len(analysis.capabilities),
                "taxonomies": len(analysis.taxonomies),
                "skills": len(analysis.skills),
            },
        )
        return EnrichedRecord(
            detail=detail,
            analysis=analysis,
            general_role=general_role,
            embeddings=embeddings,
        )

    # -------------------------------------------------------------------------
    # Similar roles & embeddings
    # -------------------------------------------------------------------------

    async def _job_embedding(self, detail: ListingDetail) -> Optional[List[float]]:
        if detail.embedding:
            return list(detail.embedding)
        if self.embedder is None:
            return None
        vectors = await self.embedder.embed([detail.document_text()])
        return vectors[0]

    async def _find_similar_roles(
        self, detail: ListingDetail, job_embedding: Optional[List[float]]
    ) -> List[SimilarRole]:
        if self.similar_roles is None or not job_embedding:
            return []
        try:
            roles = await self.similar_roles.find_similar_canonical_roles(
                job_embedding, limit=self.similar_role_limit
            )
        except Exception as e:
            logger.warning(f"Similar role lookup failed for listing {detail.id}: {compact_error(e)}")
            return []
        return roles[: self.similar_role_limit]

    async def _embeddings(
        self, job_embedding: Optional[List[float]], analysis: CapabilityAnalysis
    ) -> Optional[RecordEmbeddings]:
        if self.embedder is None:
            return None

        capability_vectors: Dict[str, List[float]] = {}
        texts: List[str] = []
        keys: List[tuple] = []
        for match in analysis.capabilities:
            reference = self._capabilities.get(_normalise(match.name))
            if reference is not None and reference.embedding:
                capability_vectors[match.capability_id] = list(reference.embedding)
            else:
                texts.append(f"{match.name}: {match.description}".strip(": "))
                keys.append(("capability", match.capability_id))
        for skill in analysis.skills:
            texts.append(f"{skill.name}: {skill.description}".strip(": "))
            keys.append(("skill", skill.name))

        skill_vectors: Dict[str, List[float]] = {}
        if texts:
            vectors = await self.embedder.embed(texts)
            for (kind, key), vector in zip(keys, vectors):
                if kind == "capability":
                    capability_vectors[key] = vector
                else:
                    skill_vectors[key] = vector

        return RecordEmbeddings(job=job_embedding, capabilities=capability_vectors, skills=skill_vectors)

    # -------------------------------------------------------------------------
    # Mapping model output
    # -------------------------------------------------------------------------

    def _map_analysis(self, detail: ListingDetail, raw: Dict[str, Any]) -> CapabilityAnalysis:
        for key in ("capabilities", "taxonomies", "skills"):
            if not isinstance(raw.get(key, []), list):
                raise EnrichmentError(
                    f"Malformed analysis for listing {detail.id}: '{key}' is not a list",
                    item_id=detail.id,
                )

        capabilities: Dict[str, CapabilityMatch] = {}
        dropped: List[str] = []
        for item in raw.get("capabilities", []):
            if not isinstance(item, dict):
                continue
            name = str(item.get("name", ""))
            reference = self._capabilities.get(_normalise(name))
            if reference is None:
                dropped.append(name)
                continue
            if reference.id in capabilities:
                continue
            capabilities[reference.id] = CapabilityMatch(
                capability_id=reference.id,
                name=reference.name,
                level=self._parse_level(item.get("level")),
                description=str(item.get("description") or ""),
                relevance=self._parse_relevance(item.get("relevance")),
            )

        taxonomies: Dict[str, TaxonomyMatch] = {}
        for item in raw.get("taxonomies", []):
            name = item.get("name", "") if isinstance(item, dict) else str(item)
            group = self._taxonomies.get(_normalise(name))
            if group is None:
                dropped.append(name)
                continue
            taxonomies.setdefault(group.id, TaxonomyMatch(taxonomy_id=group.id, name=group.name))

        skills: Dict[str, SkillMatch] = {}
        for item in raw.get("skills", []):
            if not isinstance(item, dict) or not str(item.get("name", "")).strip():
                continue
            name = str(item["name"]).strip()
            skills.setdefault(
                _normalise(name),
                SkillMatch(
                    name=name,
                    description=str(item.get("description") or ""),
                    category=str(item.get("category") or "Technical"),
                ),
            )

        if dropped:
            logger.debug(f"Dropped {len(dropped)} unknown names for listing {detail.id}: {dropped}")

        summary = raw.get("summary")
        return CapabilityAnalysis(
            capabilities=list(capabilities.values()),
            taxonomies=list(taxonomies.values()),
            skills=list(skills.values()),
            summary=summary if isinstance(summary, str) else "",
        )

    @staticmethod
    def _parse_level(value: Any) -> CapabilityLevel:
        try:
            return CapabilityLevel(_normalise(str(value)))
        except ValueError:
            return CapabilityLevel.INTERMEDIATE

    @staticmethod
    def _parse_relevance(value: Any) -> float:
        try:
            relevance = float(value)
        except (TypeError, ValueError):
            return 0.0
        return min(max(relevance, 0.0), 1.0)

    async def _resolve_general_role(
        self, proposal: Any, similar: List[SimilarRole]
    ) -> Optional[GeneralRoleLink]:
        if not isinstance(proposal, dict):
            return None

        role_id = str(proposal.get("id") or "").strip()
        title = str(proposal.get("title") or "").strip()
        description = str(proposal.get("description") or "").strip()

        if role_id:
            known = next((role for role in similar if role.id == role_id), None)
            return GeneralRoleLink(
                id=role_id,
                title=known.name if known else title,
                description=known.description if known else description,
            )

        if not title:
            return None

        known = next((role for role in similar if _normalise(role.name) == _normalise(title)), None)
        if known is not None:
            return GeneralRoleLink(id=known.id, title=known.name, description=known.description)

        if self.role_resolver is None:
            logger.debug(f"No role resolver configured; general role '{title}' left unlinked")
            return None

        return await self.role_resolver.get_or_create_canonical_role(title, description)

    async def close(self) -> None:
        await self.client.close()
        close = getattr(self.embedder, "close", None)
        if close is not None:
            await close()
