"""Structured extraction through a language model."""

from job_etl.extraction.callers import LiveCaller, ModelCaller, ReplayCaller
from job_etl.extraction.client import ExtractionClient
from job_etl.extraction.invocations import InMemoryInvocationLog, InvocationLog, JsonInvocationLog
from job_etl.extraction.retry import RetryPolicy, compact_error, describe_error

__all__ = [
    "ExtractionClient",
    "InMemoryInvocationLog",
    "InvocationLog",
    "JsonInvocationLog",
    "LiveCaller",
    "ModelCaller",
    "ReplayCaller",
    "RetryPolicy",
    "compact_error",
    "describe_error",
]
