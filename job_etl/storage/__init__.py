"""Persistence backends."""

from job_etl.storage.local import LocalJsonStore

__all__ = ["LocalJsonStore"]
