"""
Configuration management using Pydantic Settings.

Every tunable of the engine (SLA tiers, cache sizing, text-generation
endpoint, circuit breaker, logging) is read from ``FACET_*`` environment
variables or a ``.env`` file.
"""
import logging
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="FACET_",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="FACET Orchestrator", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment: development, staging, production")

    # API
    api_host: str = Field(default="127.0.0.1", description="API host")
    api_port: int = Field(default=8000, ge=1024, le=65535, description="API port")
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed CORS origins",
    )

    # SLA targets (milliseconds, end-to-end)
    sla_simple_ms: int = Field(default=1500, ge=100, description="Simple check-in SLA")
    sla_supportive_ms: int = Field(default=3000, ge=100, description="Emotional support SLA")
    sla_crisis_ms: int = Field(default=2000, ge=100, description="Crisis SLA")
    sla_deep_ms: int = Field(default=8000, ge=100, description="Deep support SLA")
    sla_safety_buffer_ms: int = Field(default=200, ge=200, description="Buffer kept free before the SLA target")
    sla_history_size: int = Field(default=1000, ge=10, description="SLA records kept for statistics")

    # Planner deadlines (SLA target minus synthesis headroom)
    plan_simple_deadline_ms: int = Field(default=1300, ge=100)
    plan_supportive_deadline_ms: int = Field(default=2800, ge=100)
    plan_crisis_deadline_ms: int = Field(default=1800, ge=100)
    plan_deep_deadline_ms: int = Field(default=7500, ge=100)
    fast_deadline_factor: float = Field(default=0.7, ge=0.6, le=1.0, description="Deadline multiplier for speed=fast")

    # Cache
    cache_local_capacity: int = Field(default=1000, ge=1, description="Tier 1 entry capacity")
    cache_base_ttl_seconds: int = Field(default=3600, ge=1, description="Base TTL before adaptive scaling")
    cache_min_ttl_seconds: int = Field(default=300, ge=1, description="Adaptive TTL floor")
    cache_max_ttl_seconds: int = Field(default=86400, ge=1, description="Adaptive TTL ceiling")
    cache_confidence_floor: float = Field(default=0.6, ge=0.0, le=1.0, description="Results below this are never cached")
    cache_durable_confidence: float = Field(default=0.8, ge=0.0, le=1.0, description="Confidence that qualifies for tier 2")
    cache_key_prefix: str = Field(default="facet:", description="Shared-store key prefix")
    cache_prediction_ttl_seconds: int = Field(default=3600, ge=60, description="Predictive tier entry lifetime")
    cache_shared_timeout_ms: int = Field(default=150, ge=10, le=5000, description="Per-call budget for the shared store")

    # Text generation collaborator
    text_generation_url: Optional[str] = Field(default=None, description="OpenAI-compatible base URL; unset uses keyword task bodies")
    text_generation_model: str = Field(default="gpt-4o-mini", description="Model name sent to the endpoint")
    text_generation_api_key: Optional[str] = Field(default=None, description="Bearer token for the endpoint")
    text_generation_timeout: float = Field(default=10.0, gt=0, description="Per-call HTTP timeout in seconds")
    text_generation_max_tokens: int = Field(default=512, ge=1)
    text_generation_temperature: float = Field(default=0.7, ge=0.0, le=2.0)

    # Circuit Breaker
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1, description="Failures before opening")
    circuit_breaker_success_threshold: int = Field(default=3, ge=1, description="Half-open successes before closing")
    circuit_breaker_timeout: int = Field(default=60, ge=1, description="Seconds before a recovery probe")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")

    # Responses
    default_transparency: str = Field(default="minimal", description="Transparency when the request omits it")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of allowed values."""
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"log_level must be one of {sorted(valid)}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    @field_validator("default_transparency")
    @classmethod
    def validate_transparency(cls, v: str) -> str:
        if v not in ("minimal", "standard", "detailed"):
            raise ValueError("default_transparency must be minimal, standard or detailed")
        return v

    @field_validator("cache_max_ttl_seconds")
    @classmethod
    def validate_ttl_bounds(cls, v: int, info) -> int:
        floor = info.data.get("cache_min_ttl_seconds", 0)
        if v < floor:
            raise ValueError("cache_max_ttl_seconds must not be below cache_min_ttl_seconds")
        return v

    @property
    def sla_targets(self) -> Dict[str, int]:
        """SLA target per scenario label."""
        return {
            "simple": self.sla_simple_ms,
            "supportive": self.sla_supportive_ms,
            "crisis": self.sla_crisis_ms,
            "deep": self.sla_deep_ms,
        }

    @property
    def plan_deadlines(self) -> Dict[str, int]:
        """Planner deadline per scenario label."""
        return {
            "simple": self.plan_simple_deadline_ms,
            "supportive": self.plan_supportive_deadline_ms,
            "crisis": self.plan_crisis_deadline_ms,
            "deep": self.plan_deep_deadline_ms,
        }

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
