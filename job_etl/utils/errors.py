"""
Custom exceptions for the job ETL pipeline.

This module defines all custom exceptions used throughout the application
for better error handling and debugging.
"""

from typing import Any, Optional


class JobETLException(Exception):
    """Base exception for all job-ETL-specific errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# =============================================================================
# Configuration Exceptions
# =============================================================================


class ConfigurationError(JobETLException):
    """Configuration error."""

    pass


class MissingConfigurationError(ConfigurationError):
    """Required configuration missing."""

    def __init__(self, config_name: str) -> None:
        """Initialize with config name."""
        message = f"Required configuration '{config_name}' is missing"
        super().__init__(message, {"config_name": config_name})


class PipelineConfigurationError(ConfigurationError):
    """Run options are contradictory or a required collaborator is absent."""

    pass


class ReferenceDataNotLoadedError(ConfigurationError):
    """Enrichment was attempted before its reference sets were loaded."""

    def __init__(self, missing: list[str]) -> None:
        """Initialize with the names of the missing reference sets."""
        message = f"Reference sets not loaded: {', '.join(missing)}"
        super().__init__(message, {"missing": missing})


# =============================================================================
# Run Control Exceptions
# =============================================================================


class PipelineStateError(JobETLException):
    """Unsupported run-control transition."""

    def __init__(self, operation: str, status: str) -> None:
        """Initialize with the rejected operation and the current status."""
        message = f"Cannot {operation} pipeline while it is '{status}'"
        super().__init__(message, {"operation": operation, "status": status})


# =============================================================================
# Stage Exceptions
# =============================================================================


class StageError(JobETLException):
    """Failure of one item (or one batch) within a pipeline stage."""

    stage: str = "unknown"

    def __init__(
        self,
        message: str,
        item_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Initialize with the failing item identifier, when known."""
        merged = dict(details or {})
        if item_id is not None:
            merged.setdefault("item_id", item_id)
        super().__init__(message, merged)
        self.item_id = item_id


class AcquisitionError(StageError):
    """Fetching a listing's details failed."""

    stage = "acquisition"


class EnrichmentError(StageError):
    """Turning a listing into an enriched record failed."""

    stage = "enrichment"


class PersistenceError(StageError):
    """Writing a batch to the staging store failed."""

    stage = "persistence"


class MigrationError(StageError):
    """Promoting a stored batch to the live store failed."""

    stage = "migration"


STAGE_ERRORS: dict[str, type[StageError]] = {
    cls.stage: cls
    for cls in (AcquisitionError, EnrichmentError, PersistenceError, MigrationError)
}


# =============================================================================
# Extraction Exceptions
# =============================================================================


class ExtractionError(JobETLException):
    """Structured extraction failed after every permitted attempt."""

    def __init__(self, action: str, attempts: int, last_error: BaseException) -> None:
        """Initialize with the attempt count and the last underlying error."""
        message = f"Extraction '{action}' failed after {attempts} attempt(s): {last_error}"
        super().__init__(message, {"action": action, "attempts": attempts})
        self.attempts = attempts
        self.last_error = last_error


class ExtractionTimeoutError(JobETLException):
    """A single extraction attempt exceeded its time ceiling."""

    def __init__(self, action: str, timeout: float) -> None:
        """Initialize with timeout information."""
        message = f"Extraction '{action}' timed out after {timeout} seconds"
        super().__init__(message, {"action": action, "timeout": timeout})


class ExtractionResponseError(JobETLException):
    """The model answered with something that is not a JSON object."""

    pass


class ReplayMissError(JobETLException):
    """No recorded invocation matches a replay request."""

    def __init__(self, request_key: str) -> None:
        """Initialize with the request key that was looked up."""
        message = f"No recorded invocation for request '{request_key}'"
        super().__init__(message, {"request_key": request_key})
