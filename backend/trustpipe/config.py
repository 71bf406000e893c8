"""Worker configuration using pydantic-settings."""

import os
import socket
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SPAM_WEIGHTS = {
    "duplicate_content": 0.25,
    "suspicious_keywords": 0.15,
    "unrealistic_salary": 0.20,
    "description_quality": 0.15,
    "company_reputation": 0.15,
    "contact_information": 0.10,
}

DEFAULT_QUALITY_WEIGHTS = {
    "description_quality": 0.25,
    "company_information": 0.20,
    "salary_transparency": 0.15,
    "requirements_clarity": 0.20,
    "contact_information": 0.10,
    "application_process": 0.10,
}

WEIGHT_SUM_TOLERANCE = 1e-6


def _check_weights(value: dict[str, float], expected: dict[str, float], label: str) -> dict[str, float]:
    if set(value) != set(expected):
        missing = sorted(set(expected) - set(value))
        extra = sorted(set(value) - set(expected))
        raise ValueError(f"{label} weights must name exactly {sorted(expected)} (missing={missing}, extra={extra})")
    if any(weight < 0 for weight in value.values()):
        raise ValueError(f"{label} weights cannot be negative")
    total = sum(value.values())
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        raise ValueError(f"{label} weights must sum to 1.0, got {total:.4f}")
    return value


def default_consumer_name() -> str:
    """Unique per worker process; set CONSUMER_NAME to a stable id to replay after restarts."""
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    """Worker settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TRUST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = Field(default="INFO", description="Root log level")

    # Database (in-memory repository when unset)
    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL connection URL (asyncpg)",
    )

    # Redis (task streams, result topics, cache, locks, dramatiq broker)
    redis_url: RedisDsn = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for queues and caching",
    )

    # OpenAI (text-reasoning oracle)
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openai_model: str = Field(default="gpt-4o-mini", description="OpenAI model to use")

    # Market data and probes
    market_data_url: str = Field(
        default="https://api.glassdoor.com/salary",
        description="Salary statistics endpoint",
    )
    probe_user_agent: str = Field(
        default="TrustPipeline/1.0 (+https://jobs.example.com/bot)",
        description="User agent for website and profile probes",
    )

    # Sentry
    sentry_dsn: str = Field(default="", description="Sentry DSN for error tracking")

    # External calls
    external_call_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for every Subject Store / Oracle / Market-Data call",
    )

    # Retry policy
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=1.0, gt=0)
    retry_backoff_factor: float = Field(default=2.0, ge=1)
    retry_max_delay_seconds: float = Field(default=30.0, gt=0)

    # Queue
    task_stream_prefix: str = Field(default="quality_tasks", description="Partitioned task stream prefix")
    task_partitions: int = Field(default=10, ge=1)
    consumer_group: str = Field(default="trust-pipeline")
    consumer_name: str = Field(default_factory=default_consumer_name)
    fetch_batch_size: int = Field(default=10, ge=1)
    fetch_block_ms: int = Field(default=2000, ge=0)
    max_backoff_seconds: float = Field(default=15.0)
    drain_timeout_seconds: float = Field(default=30.0)

    # Topics
    result_topic: str = Field(default="quality_results")
    dead_letter_topic: str = Field(default="quality_dead_letters")

    # Advisory locks for expensive strategies
    subject_locks_enabled: bool = Field(default=True)
    subject_lock_ttl_seconds: int = Field(default=60, ge=1)
    subject_lock_wait_seconds: float = Field(default=10.0, ge=0)
    subject_lock_poll_seconds: float = Field(default=0.5, gt=0)

    # Metrics
    metrics_flush_interval_seconds: float = Field(default=60.0)

    # Product constants
    spam_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_SPAM_WEIGHTS))
    quality_weights: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_QUALITY_WEIGHTS))
    spam_threshold: float = Field(default=0.7, ge=0, le=1)
    company_pass_ratio: float = Field(default=0.6, gt=0, le=1)
    spam_description_min_score: float = Field(
        default=40.0,
        ge=0,
        le=100,
        description="Description-quality score below which the spam check flags the posting",
    )
    duplicate_window_hours: int = Field(default=24, ge=1)

    @field_validator("spam_weights")
    @classmethod
    def _validate_spam_weights(cls, value: dict[str, float]) -> dict[str, float]:
        return _check_weights(value, DEFAULT_SPAM_WEIGHTS, "spam")

    @field_validator("quality_weights")
    @classmethod
    def _validate_quality_weights(cls, value: dict[str, float]) -> dict[str, float]:
        return _check_weights(value, DEFAULT_QUALITY_WEIGHTS, "quality")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
