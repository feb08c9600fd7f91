"""
Core data models for the job ETL pipeline.

This module defines all the Pydantic models used throughout the application
for data validation and serialization.
"""

import hashlib
import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from job_etl.utils.errors import PipelineConfigurationError


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================


class PipelineStatus(str, Enum):
    """Lifecycle of a pipeline run."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.COMPLETED, PipelineStatus.STOPPED, PipelineStatus.FAILED)


class PipelineStage(str, Enum):
    """Phase of the pipeline an item or error belongs to."""

    ACQUISITION = "acquisition"
    ENRICHMENT = "enrichment"
    PERSISTENCE = "persistence"
    MIGRATION = "migration"


class CapabilityLevel(str, Enum):
    """Proficiency levels used by the capability framework."""

    FOUNDATIONAL = "foundational"
    INTERMEDIATE = "intermediate"
    ADEPT = "adept"
    ADVANCED = "advanced"
    HIGHLY_ADVANCED = "highly advanced"


class InvocationStatus(str, Enum):
    """Outcome of one extraction-model attempt."""

    SUCCESS = "success"
    ERROR = "error"


# =============================================================================
# Reference Sets
# =============================================================================


class ReferenceCapability(BaseModel):
    """A named capability from the controlled capability framework."""

    id: str
    name: str
    group_name: str = ""
    description: str = ""
    levels: List[CapabilityLevel] = Field(default_factory=lambda: list(CapabilityLevel))
    embedding: Optional[List[float]] = None


class TaxonomyGroup(BaseModel):
    """A named classification group."""

    id: str
    name: str
    description: str = ""


class SimilarRole(BaseModel):
    """A canonical role returned by a similarity lookup."""

    id: str
    name: str
    description: str = ""
    similarity: float = Field(0.0, ge=-1.0, le=1.0)


# =============================================================================
# Listing Models
# =============================================================================


class ListingReference(BaseModel):
    """Minimal identity and URL needed to fetch a listing's details."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Source-specific listing identifier")
    url: str = Field(..., description="Where the full listing lives")
    title: str = ""
    organization: Optional[str] = None
    location: Optional[str] = None
    posted_date: Optional[date] = None


class ListingDetail(BaseModel):
    """Full scraped record for one listing."""

    model_config = ConfigDict(frozen=True)

    id: str
    url: str
    title: str = ""
    organization: Optional[str] = None
    location: Optional[str] = None
    posted_date: Optional[date] = None
    description: str = ""
    responsibilities: List[str] = Field(default_factory=list)
    requirements: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None
    role_id: Optional[str] = Field(None, description="Role entity this listing belongs to")
    error: Optional[str] = Field(None, description="Set only on acquisition placeholders")

    @classmethod
    def placeholder(cls, reference: ListingReference, error: str) -> "ListingDetail":
        """Empty stand-in for a listing whose details could not be fetched."""
        return cls(
            id=reference.id,
            url=reference.url,
            title=reference.title,
            organization=reference.organization,
            location=reference.location,
            posted_date=reference.posted_date,
            error=error,
        )

    def to_reference(self) -> ListingReference:
        """Identity needed to fetch this listing again."""
        return ListingReference(
            id=self.id,
            url=self.url,
            title=self.title,
            organization=self.organization,
            location=self.location,
            posted_date=self.posted_date,
        )

    def document_text(self) -> str:
        """Render the listing's text sections as one document."""
        parts = [
            f"Job Title: {self.title}",
            f"Organization: {self.organization or 'Not specified'}",
            f"Location: {self.location or 'Not specified'}",
        ]
        if self.description:
            parts.extend(["Description:", self.description])
        for heading, items in (
            ("Responsibilities:", self.responsibilities),
            ("Requirements:", self.requirements),
            ("Notes:", self.notes),
        ):
            if items:
                parts.append(heading)
                parts.extend(f"- {item}" for item in items)
        return "\n\n".join(parts)


# =============================================================================
# Enrichment Models
# =============================================================================


class CapabilityMatch(BaseModel):
    """A capability the model found, mapped back onto the framework."""

    model_config = ConfigDict(frozen=True)

    capability_id: str
    name: str
    level: CapabilityLevel = CapabilityLevel.INTERMEDIATE
    description: str = ""
    relevance: float = Field(0.0, ge=0.0, le=1.0)


class TaxonomyMatch(BaseModel):
    """A classification group the model assigned."""

    model_config = ConfigDict(frozen=True)

    taxonomy_id: str
    name: str


class SkillMatch(BaseModel):
    """A free-form skill the model extracted."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    category: str = "Technical"


class GeneralRoleLink(BaseModel):
    """The canonical role a listing's role was linked to."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str = ""
    created: bool = Field(False, description="True when the role was minted for this record")


class CapabilityAnalysis(BaseModel):
    """Structured result of analysing one listing."""

    model_config = ConfigDict(frozen=True)

    capabilities: List[CapabilityMatch] = Field(default_factory=list)
    taxonomies: List[TaxonomyMatch] = Field(default_factory=list)
    skills: List[SkillMatch] = Field(default_factory=list)
    summary: str = ""


class RecordEmbeddings(BaseModel):
    """Embedding vectors attached to an enriched record."""

    model_config = ConfigDict(frozen=True)

    job: Optional[List[float]] = None
    capabilities: Dict[str, List[float]] = Field(default_factory=dict)
    skills: Dict[str, List[float]] = Field(default_factory=dict)


class EnrichedRecord(BaseModel):
    """A listing plus everything enrichment derived from it."""

    model_config = ConfigDict(frozen=True)

    detail: ListingDetail
    analysis: Optional[CapabilityAnalysis] = None
    general_role: Optional[GeneralRoleLink] = None
    embeddings: Optional[RecordEmbeddings] = None
    processed_at: datetime = Field(default_factory=utcnow)

    @property
    def id(self) -> str:
        return self.detail.id

    @property
    def is_raw(self) -> bool:
        """True when enrichment was bypassed for this record."""
        return self.analysis is None

    @classmethod
    def raw(cls, detail: ListingDetail) -> "EnrichedRecord":
        """Wrap an acquired listing without enrichment."""
        return cls(detail=detail)


# =============================================================================
# Run Options
# =============================================================================


class PipelineRunOptions(BaseModel):
    """Configuration for one pipeline run."""

    model_config = ConfigDict(frozen=True)

    max_records: Optional[int] = Field(None, description="<= 0 means unlimited")
    skip_processing: bool = False
    skip_storage: bool = False
    migrate_to_live: bool = False
    continue_on_error: bool = False
    scrape_only: bool = False
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    organizations: List[str] = Field(default_factory=list)
    locations: List[str] = Field(default_factory=list)

    @field_validator("organizations", "locations")
    @classmethod
    def strip_blank(cls, v: List[str]) -> List[str]:
        """Drop blank filter values."""
        return [item.strip() for item in v if item and item.strip()]

    def validate_combination(self) -> None:
        """Reject contradictory stage flags before any work starts."""
        if self.skip_processing and not self.skip_storage:
            raise PipelineConfigurationError(
                "skip_processing requires skip_storage: storage consumes processing output",
                {"skip_processing": True, "skip_storage": False},
            )
        if self.migrate_to_live and (self.skip_processing or self.skip_storage):
            raise PipelineConfigurationError(
                "migrate_to_live requires both processing and storage",
                {
                    "migrate_to_live": True,
                    "skip_processing": self.skip_processing,
                    "skip_storage": self.skip_storage,
                },
            )
        if self.scrape_only and self.skip_processing:
            raise PipelineConfigurationError(
                "scrape_only and skip_processing are mutually exclusive",
                {"scrape_only": True, "skip_processing": True},
            )
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise PipelineConfigurationError(
                "start_date must not be after end_date",
                {"start_date": str(self.start_date), "end_date": str(self.end_date)},
            )

    @property
    def record_cap(self) -> int:
        """Effective cap on references consumed; 0 means unlimited."""
        if self.max_records is None or self.max_records <= 0:
            return 0
        return self.max_records


# =============================================================================
# Metrics & State
# =============================================================================


class PipelineError(BaseModel):
    """One entry of the run's error ledger."""

    stage: PipelineStage
    error: str
    item_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class StageSummary(BaseModel):
    """Totals for one stage."""

    total: int = 0
    successful: int = 0
    failed: int = 0

    def add(self, successful: int, failed: int) -> None:
        self.successful += successful
        self.failed += failed
        self.total += successful + failed


class PipelineMetrics(BaseModel):
    """Running counters and error ledger for one run."""

    scraped: int = 0
    processed: int = 0
    stored: int = 0
    failed_scrapes: int = 0
    failed_processes: int = 0
    failed_storage: int = 0
    migrated_to_live: int = 0
    failed_migrations: int = 0
    batches_completed: int = 0
    errors: List[PipelineError] = Field(default_factory=list)
    acquisition: StageSummary = Field(default_factory=StageSummary)
    enrichment: StageSummary = Field(default_factory=StageSummary)
    persistence: StageSummary = Field(default_factory=StageSummary)
    migration: StageSummary = Field(default_factory=StageSummary)
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    total_duration: Optional[float] = Field(None, description="Seconds from start to end")

    def finish(self) -> None:
        """Stamp the end time and total duration."""
        self.end_time = utcnow()
        self.total_duration = (self.end_time - self.start_time).total_seconds()

    def snapshot(self) -> "PipelineMetrics":
        """Deep copy with a live duration when the run has not finished."""
        copy = self.model_copy(deep=True)
        if copy.end_time is None:
            copy.total_duration = (utcnow() - copy.start_time).total_seconds()
        return copy


class PipelineState(BaseModel):
    """Orchestrator-private run state."""

    run_id: Optional[str] = None
    status: PipelineStatus = PipelineStatus.IDLE
    current_batch: int = 0
    total_batches: Optional[int] = Field(None, description="Known only when a record cap is set")
    current_stage: PipelineStage = PipelineStage.ACQUISITION
    options: Optional[PipelineRunOptions] = None
    metrics: PipelineMetrics = Field(default_factory=PipelineMetrics)
    last_error: Optional[PipelineError] = None


# =============================================================================
# Results
# =============================================================================


class FailedItem(BaseModel):
    """A failed item with enough identity to re-run it."""

    item_id: str
    stage: PipelineStage
    error: str
    reference: Optional[ListingReference] = None
    detail: Optional[ListingDetail] = Field(None, description="Acquisition placeholder or the detail that failed")
    record: Optional[EnrichedRecord] = None


T = TypeVar("T")


class StageOutcome(BaseModel, Generic[T]):
    """Succeeded and failed items of one stage."""

    succeeded: List[T] = Field(default_factory=list)
    failed: List[FailedItem] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


class PipelineResult(BaseModel):
    """Consolidated result of one run."""

    status: PipelineStatus
    metrics: PipelineMetrics
    acquisition: StageOutcome[ListingDetail] = Field(default_factory=StageOutcome[ListingDetail])
    enrichment: StageOutcome[EnrichedRecord] = Field(default_factory=StageOutcome[EnrichedRecord])
    persistence: StageOutcome[EnrichedRecord] = Field(default_factory=StageOutcome[EnrichedRecord])
    migration: StageOutcome[EnrichedRecord] = Field(default_factory=StageOutcome[EnrichedRecord])


# =============================================================================
# Extraction Invocations
# =============================================================================


class InvocationRequest(BaseModel):
    """One logical request to the extraction model."""

    model_config = ConfigDict(frozen=True)

    action: str
    model: str
    system_prompt: str
    user_prompt: str
    temperature: float = 0.0
    max_tokens: Optional[int] = None

    def key(self) -> str:
        """Deterministic identity used for replay lookups."""
        payload = json.dumps(
            {
                "action": self.action,
                "model": self.model,
                "system_prompt": self.system_prompt,
                "user_prompt": self.user_prompt,
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class ModelResponse(BaseModel):
    """Raw model output plus transport metadata."""

    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    token_usage: Optional[Dict[str, Any]] = None
    replayed: bool = False


class InvocationRecord(BaseModel):
    """Audit record of one extraction attempt."""

    request_key: str
    action: str
    model_provider: str = "openai"
    model_name: str
    temperature: float = 0.0
    max_tokens: Optional[int] = None
    system_prompt: str
    user_prompt: str
    response_text: str = ""
    response_metadata: Dict[str, Any] = Field(default_factory=dict)
    token_usage: Optional[Dict[str, Any]] = None
    status: InvocationStatus
    error_message: Optional[str] = None
    latency_ms: int = 0
    attempt: int = 1
    replayed: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_attempt(
        cls,
        request: InvocationRequest,
        *,
        attempt: int,
        latency_ms: int,
        response: Optional[ModelResponse] = None,
        error: Optional[BaseException] = None,
    ) -> "InvocationRecord":
        """Build the audit record for a finished attempt."""
        return cls(
            request_key=request.key(),
            action=request.action,
            model_name=request.model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            system_prompt=request.system_prompt,
            user_prompt=request.user_prompt,
            response_text=response.text if response else "",
            response_metadata=response.metadata if response else {},
            token_usage=response.token_usage if response else None,
            status=InvocationStatus.ERROR if error else InvocationStatus.SUCCESS,
            error_message=str(error) if error else None,
            latency_ms=latency_ms,
            attempt=attempt,
            replayed=bool(response and response.replayed),
        )

    def to_response(self) -> ModelResponse:
        """Rebuild the model response this record captured."""
        return ModelResponse(
            text=self.response_text,
            metadata=self.response_metadata,
            token_usage=self.token_usage,
            replayed=True,
        )
