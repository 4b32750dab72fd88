"""
Application configuration models and helpers.

Centralizes settings management so the FastAPI app, the continuation worker and
the Lambda driver share a consistent configuration surface.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


class GeminiSettings(BaseSettings):
    """Configuration for Gemini vision model access."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    api_key: str = Field(..., validation_alias="GEMINI_API_KEY")
    vision_model_name: str = Field(
        "gemini-2.5-pro", validation_alias="GEMINI_VISION_MODEL_NAME"
    )
    fallback_models: str = Field(
        "gemini-2.5-flash,gemini-2.0-flash",
        validation_alias="GEMINI_FALLBACK_MODELS",
        description="Comma-separated models tried after the primary one.",
    )
    degradation_ttl_seconds: int = Field(
        1800,
        validation_alias="GEMINI_DEGRADATION_TTL",
        description="How long a rate-limited or timed-out model is skipped.",
    )

    @property
    def fallback_model_list(self) -> tuple[str, ...]:
        return tuple(
            name.strip() for name in self.fallback_models.split(",") if name.strip()
        )


class AWSSettings(BaseSettings):
    """Settings for AWS services used when running outside local mode."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    region_name: str = Field("us-east-1", validation_alias="AWS_REGION")
    dynamodb_table_name: Optional[str] = Field(
        None,
        validation_alias="DYNAMODB_TABLE_NAME",
        description="Record table used when STORAGE_BACKEND=dynamodb.",
    )
    continuation_queue_url: Optional[str] = Field(
        None,
        validation_alias="CONTINUATION_QUEUE_URL",
        description="SQS queue feeding the continuation Lambda.",
    )


class SecuritySettings(BaseSettings):
    """Security-related configuration."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    service_role_key: str = Field(
        ...,
        validation_alias="SERVICE_ROLE_KEY",
        description="Bearer credential identifying trusted internal callers.",
    )
    caller_token_secret: str = Field(
        ...,
        validation_alias="CALLER_TOKEN_SECRET",
        description="Secret used to sign and verify caller tokens.",
    )


class AnalysisSettings(BaseSettings):
    """Tuning knobs for the threshold-driven analysis loop."""

    model_config = SettingsConfigDict(env_prefix="ANALYSIS_", extra="ignore")

    min_items_floor: int = 20
    items_per_image: int = 4
    max_attempts: int = 3
    initial_max_tokens: int = 8192
    max_tokens_ceiling: int = 16384
    token_growth_factor: float = 1.5
    timeout_ms: int = 60000
    temperature: float = 0.2
    provider_backoff_seconds: float = 2.0
    max_images_per_call: int = 5
    default_confidence: float = 0.8


class OrchestratorSettings(BaseSettings):
    """Limits and defaults for batched takeoff jobs."""

    model_config = SettingsConfigDict(env_prefix="TAKEOFF_", extra="ignore")

    batch_size: int = 5
    max_pages: int = 200
    max_concurrent_jobs: int = 3
    admin_only: bool = True
    default_max_batches: int = 3
    default_timeout_ms: int = 10000
    minutes_per_batch: float = 0.5
    lease_grace_seconds: int = 120
    batch_max_retries: int = 2
    batch_retry_base_seconds: float = 1.0
    batch_retry_max_seconds: float = 30.0


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application and workers."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    environment: str = Field("development", validation_alias="APP_ENV")
    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    database_path: str = Field("data/takeoff.db", validation_alias="TAKEOFF_DB_PATH")
    storage_backend: Literal["sqlite", "dynamodb"] = Field(
        "sqlite", validation_alias="STORAGE_BACKEND"
    )
    queue_backend: Literal["sqlite", "sqs"] = Field(
        "sqlite", validation_alias="QUEUE_BACKEND"
    )
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    gemini: GeminiSettings = Field(default_factory=GeminiSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AnalysisSettings",
    "AppSettings",
    "AWSSettings",
    "GeminiSettings",
    "OrchestratorSettings",
    "SecuritySettings",
    "get_settings",
]
