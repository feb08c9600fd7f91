"""Listing enrichment: capability, taxonomy and general-role analysis."""

from job_etl.enrichment.embeddings import Embedder, OpenAIEmbedder
from job_etl.enrichment.stage import EnrichmentStage

__all__ = ["Embedder", "EnrichmentStage", "OpenAIEmbedder"]
