"""
Runtime configuration.

Every field can be overridden by an environment variable named after it with the
``BATCHKEEPER_`` prefix (``min_batch_size`` -> ``BATCHKEEPER_MIN_BATCH_SIZE``).
The OpenAI key keeps its conventional unprefixed ``OPENAI_API_KEY`` name.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "BATCHKEEPER_"
_UNPREFIXED_FIELDS = {"openai_api_key": "OPENAI_API_KEY"}


class Settings(BaseModel):
    database_url: str | None = None
    mock_mode: bool = False
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com"
    default_model: str = "gpt-4o-mini"

    # batching policy
    min_batch_size: int = Field(default=10, gt=0)
    max_wait_minutes: float = Field(default=30.0, ge=0)
    max_requests_per_batch: int = Field(default=1000, gt=0)

    # cadences, in seconds
    create_batches_interval_seconds: float = Field(default=300.0, gt=0)
    check_status_interval_seconds: float = Field(default=120.0, gt=0)
    process_results_interval_seconds: float = Field(default=60.0, gt=0)
    retry_failed_interval_seconds: float = Field(default=600.0, gt=0)

    # scheduler circuit breaker
    max_consecutive_errors: int = Field(default=5, gt=0)
    error_pause_seconds: float = Field(default=15 * 60.0, ge=0)

    # fan-out
    max_concurrent_tenants: int = Field(default=5, gt=0)
    failed_requests_per_tenant: int = Field(default=10, gt=0)
    tenant_cache_ttl_seconds: float = Field(default=5 * 60.0, ge=0)

    # provider calls
    max_retries: int = Field(default=3, ge=0)
    base_retry_delay_seconds: float = Field(default=1.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    max_retry_delay_seconds: float = Field(default=30.0, ge=0)
    circuit_breaker_threshold: int = Field(default=5, gt=0)
    circuit_breaker_timeout_seconds: float = Field(default=5 * 60.0, ge=0)
    request_timeout_seconds: float = Field(default=60.0, gt=0)

    # individual fallback path
    max_individual_attempts: int = Field(default=5, gt=0)

    # batches left non-terminal longer than this are reported as stale
    batch_timeout_hours: float = Field(default=24.0, gt=0)

    @classmethod
    def from_env(cls, *, env_file: str | Path | None = None, **overrides) -> Settings:
        """
        Build settings from the process environment and an optional dotenv file.

        Parameters
        ----------
        env_file : str | Path | None
            Dotenv file to load. Defaults to a ``.env`` discovered from the
            working directory. Variables already set in the environment win.
        **overrides
            Explicit field values taking precedence over the environment.

        Returns
        -------
        Settings
            Validated settings.
        """
        load_dotenv(dotenv_path=env_file, override=False)
        values: dict[str, str] = {}
        for name in cls.model_fields:
            env_name = _UNPREFIXED_FIELDS.get(name, f"{ENV_PREFIX}{name.upper()}")
            raw = os.getenv(env_name)
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)
