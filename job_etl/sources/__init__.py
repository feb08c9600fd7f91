"""Acquisition sources."""

from job_etl.sources.fixtures import JsonFixtureSource, load_capabilities, load_taxonomies

__all__ = ["JsonFixtureSource", "load_capabilities", "load_taxonomies"]
