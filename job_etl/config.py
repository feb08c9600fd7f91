# Config
"""
Configuration for the job ETL pipeline.

Values come from keyword arguments, then environment variables, then a
``.env`` file in the working directory.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseModel):
    """Runtime settings shared by the CLI and the pipeline components."""

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    dev_mode: bool = False

    # Extraction model
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = Field(0.0, ge=0.0, le=2.0)
    openai_max_tokens: int = Field(2000, ge=1)
    embedding_model: str = "text-embedding-3-small"

    # Retry / timeout
    max_retries: int = Field(3, ge=1)
    retry_base_delay: float = Field(1.0, ge=0.0)
    request_timeout: float = Field(30.0, gt=0.0)

    # Batching
    batch_size: int = Field(10, ge=1)
    max_concurrency: int = Field(5, ge=1)
    batch_delay: float = Field(0.0, ge=0.0)
    max_records: int = 0

    # Invocation audit / replay
    invocation_log_dir: Path = Path(".cache/invocations")
    replay_invocations: bool = False

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and check the log level name."""
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return level

    @classmethod
    def from_env(cls, env_file: Union[str, Path, None] = ".env", **overrides: Any) -> "Settings":
        """
        Build settings from the environment.

        Each field reads the upper-cased variable of the same name
        (``BATCH_SIZE`` -> ``batch_size``). Empty values count as unset.

        Args:
            env_file: dotenv file consulted for variables missing from the
                environment; skipped when it does not exist
            **overrides: Explicit values that win over both sources
        """
        file_values: Dict[str, Optional[str]] = {}
        if env_file and Path(env_file).is_file():
            file_values = dotenv_values(env_file)

        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            key = name.upper()
            raw = os.getenv(key)
            if raw in (None, ""):
                raw = file_values.get(key)
            if raw not in (None, ""):
                values[name] = raw.strip()

        values.update(overrides)
        return cls(**values)

    def retry_policy(self):
        """Build the extraction retry policy from these settings."""
        from job_etl.extraction.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.max_retries,
            base_delay=self.retry_base_delay,
            timeout=self.request_timeout,
        )

    def orchestrator_config(self):
        """Build the orchestrator configuration from these settings."""
        from job_etl.pipeline.orchestrator import OrchestratorConfig

        return OrchestratorConfig(
            batch_size=self.batch_size,
            max_concurrency=self.max_concurrency,
            batch_delay=self.batch_delay,
            default_max_records=self.max_records,
        )


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reset_settings() -> None:
    """Forget the cached settings so the next call reloads them."""
    global _settings
    _settings = None
