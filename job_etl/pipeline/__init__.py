"""Batch pipeline orchestration."""

from job_etl.pipeline.control import RunControl
from job_etl.pipeline.filters import ListingFilters
from job_etl.pipeline.orchestrator import OrchestratorConfig, PipelineOrchestrator

__all__ = ["ListingFilters", "OrchestratorConfig", "PipelineOrchestrator", "RunControl"]
