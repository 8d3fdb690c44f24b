"""
Configuration Management for SessionLens
========================================

Every tunable of the orchestrator lives on one pydantic-settings model:
per-pipeline defaults, retry backoff, smart action scoring, the Ollama
upstream, the audit store and the API surface.

Values resolve in this order (first wins):
    1. Keyword arguments (tests, see ``get_settings_for_testing``)
    2. SESSIONLENS_* environment variables
    3. A local .env file
    4. The defaults below

``get_settings`` caches the resolved object for the process.
"""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from models import InsightSeverity, PipelineConfig, PipelineKind


def _default_pipelines() -> Dict[PipelineKind, PipelineConfig]:
    return {
        PipelineKind.SAFETY: PipelineConfig(enabled=True, priority=10, max_retries=3, timeout_seconds=30),
        PipelineKind.BILLING: PipelineConfig(enabled=True, priority=8, max_retries=2, timeout_seconds=25),
        PipelineKind.PROGRESS: PipelineConfig(enabled=True, priority=6, max_retries=2, timeout_seconds=20),
        PipelineKind.NOTE: PipelineConfig(enabled=True, priority=4, max_retries=2, timeout_seconds=35),
    }


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables are prefixed with SESSIONLENS_ to avoid conflicts.
    Example: SESSIONLENS_OLLAMA_MODEL=llama3.2

    Nested values (the per-pipeline table) are given as JSON:
        SESSIONLENS_PIPELINES='{"safety": {"priority": 10, "max_retries": 3}}'

    Priority order (highest to lowest):
    1. Environment variables
    2. .env file
    3. Default values defined here
    """

    # =================================================================
    # Pipeline Configuration
    # =================================================================
    pipelines: Dict[PipelineKind, PipelineConfig] = Field(
        default_factory=_default_pipelines,
        description="""
        Default per-pipeline configuration, used when a request does not
        supply its own.

        - safety: priority 10, 3 retries, 30s
        - billing: priority 8, 2 retries, 25s
        - progress: priority 6, 2 retries, 20s
        - note: priority 4, 2 retries, 35s
        """
    )

    # =================================================================
    # Retry Configuration
    # =================================================================
    retry_base_delay_seconds: float = Field(
        default=1.0,
        gt=0,
        description="""
        Base of the exponential backoff. Delay before retry n is
        base * 2**n seconds (1s, 2s, 4s, ...).
        """
    )

    retry_max_delay_seconds: Optional[float] = Field(
        default=None,
        description="Upper bound for a single backoff delay. None = uncapped"
    )

    retry_jitter: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Random jitter as a fraction of the delay (0.0 = deterministic)"
    )

    # =================================================================
    # Smart Actions Configuration
    # =================================================================
    high_confidence_threshold: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Billing codes at or above this are bundled into the approve action"
    )

    medium_confidence_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Billing codes in [medium, high) are bundled into the review action"
    )

    action_type_priorities: Dict[str, int] = Field(
        default={"safety": 8, "billing": 5, "progress": 4, "note": 3},
        description="Base priority per action type before multipliers"
    )

    severity_multipliers: Dict[InsightSeverity, float] = Field(
        default={
            InsightSeverity.CRITICAL: 1.5,
            InsightSeverity.HIGH: 1.3,
            InsightSeverity.MEDIUM: 1.1,
            InsightSeverity.LOW: 1.0,
        },
        description="Priority multiplier per severity"
    )

    max_actions_per_type: int = Field(
        default=5,
        ge=1,
        description="Maximum actions emitted by one rule set"
    )

    action_grouping_threshold: int = Field(
        default=2,
        ge=1,
        description="Group a type's actions when more than this many share it"
    )

    action_grouping_types: list[str] = Field(
        default=["billing"],
        description="""
        Action types eligible for grouping.

        Safety actions are never grouped: each one names a distinct clinical
        response and has to stay individually visible.
        """
    )

    action_urgency_threshold: int = Field(
        default=7,
        ge=1,
        le=10,
        description="Actions at or above this priority are reported as urgent"
    )

    action_cache_max_runs: int = Field(
        default=256,
        ge=1,
        description="Number of runs whose derived actions are cached"
    )

    # =================================================================
    # Ollama Configuration
    # =================================================================
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server URL. Default is local installation."
    )

    ollama_model: str = Field(
        default="llama3.2",
        description="""
        Ollama model used for every analysis pipeline.

        All four pipelines ask for a JSON object, so pick a model that
        follows format instructions reliably (llama3.2 and mistral do).
        A tag such as "llama3.2:3b" is allowed.
        """
    )

    ollama_temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=2.0,
        description="""
        Temperature for generation (0.0 - 2.0)

        Lower is better: the pipelines expect stable, parseable JSON.
        """
    )

    ollama_timeout: int = Field(
        default=120,
        description="HTTP timeout in seconds for Ollama requests"
    )

    ollama_context_window: int = Field(
        default=8192,
        description="Context window size for Ollama model (tokens)"
    )

    use_mock_analysis: bool = Field(
        default=False,
        description="Serve canned analysis results instead of calling Ollama (demos, offline work)"
    )

    # =================================================================
    # Audit Store Configuration
    # =================================================================
    audit_backend: str = Field(
        default="memory",
        description="""
        Where execution records and safety alerts are written.

        - memory: process-local, lost on restart (development, tests)
        - redis: durable, falls back to memory if Redis does not answer
        """
    )

    redis_host: str = Field(default="localhost", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_db: int = Field(default=0, description="Redis database number")
    redis_password: Optional[str] = Field(default=None, description="Redis password")

    audit_record_ttl_seconds: int = Field(
        default=30 * 24 * 3600,
        description="How long audit records live in Redis (default 30 days)"
    )

    # =================================================================
    # API Configuration
    # =================================================================
    api_host: str = Field(default="0.0.0.0", description="API bind host")
    api_port: int = Field(default=8000, description="API bind port")
    api_debug: bool = Field(
        default=False,
        description="Expose exception details in 500 responses. Never enable in production."
    )

    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Origins allowed to call the API"
    )

    cors_allow_credentials: bool = Field(default=True, description="Allow CORS credentials")

    rate_limit_start: str = Field(
        default="30/minute",
        description="Rate limit for starting analysis runs (slowapi syntax)"
    )

    stream_poll_interval_seconds: float = Field(
        default=0.5,
        gt=0,
        description="How often the WebSocket stream checks for a newer snapshot"
    )

    # =================================================================
    # Logging Configuration
    # =================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL"
    )

    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Python logging format string"
    )

    @field_validator("audit_backend")
    @classmethod
    def validate_audit_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("memory", "redis"):
            raise ValueError("audit_backend must be 'memory' or 'redis'")
        return value

    class Config:
        """Pydantic configuration for Settings."""
        env_prefix = "SESSIONLENS_"  # All env vars start with SESSIONLENS_
        env_file = ".env"  # Load from .env file if present
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached singleton).

    For testing, you can clear the cache:
        get_settings.cache_clear()

    Returns:
        Settings: Application settings instance
    """
    return Settings()


def get_settings_for_testing(**overrides) -> Settings:
    """
    Create a Settings instance with custom values for testing.

    Example:
        settings = get_settings_for_testing(
            retry_base_delay_seconds=0.01,
            audit_backend="memory"
        )

    Args:
        **overrides: Setting values to override

    Returns:
        Settings: New Settings instance with overrides applied
    """
    return Settings(**overrides)
