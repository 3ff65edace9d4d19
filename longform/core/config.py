"""Application configuration with validation."""

from enum import Enum
from typing import Dict

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Pipeline settings with validation.

    Policy constants (unit sizing, memory budget, inter-unit delays) live
    here so a deployment can tune them without touching the pipeline code.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./longform.db",
        description="Database connection URL for persisted job records"
    )

    # LLM Configuration
    # Provider ids are what callers pass around ("openai", "anthropic", ...).
    # Each maps to a LiteLLM model string. Unknown ids are passed to LiteLLM as-is.
    default_provider: str = Field(
        default="openai",
        description="Provider id used when a job does not name one"
    )
    provider_models: Dict[str, str] = Field(
        default={
            "openai": "openai/gpt-4o",
            "anthropic": "anthropic/claude-3-5-sonnet-20241022",
            "deepseek": "deepseek/deepseek-chat",
            "perplexity": "perplexity/sonar",
            "grok": "xai/grok-2-latest",
        },
        description="Provider id -> LiteLLM model string"
    )
    llm_api_key: str = Field(
        default="",
        description="API key for the generation provider (empty = provider env vars)"
    )
    llm_api_base: str = Field(
        default="",
        description="Base URL for the generation provider (optional)"
    )
    llm_timeout_seconds: int = Field(
        default=180,
        description="Wall-clock limit for a single generation call"
    )
    llm_max_tokens: int = Field(
        default=8192,
        description="Max completion tokens per generation call"
    )
    llm_temperature: float = Field(default=0.7)
    breaker_failure_threshold: int = Field(
        default=3,
        description="Consecutive failures before a provider is short-circuited"
    )
    breaker_cooldown_seconds: float = Field(
        default=60.0,
        description="Seconds before a short-circuited provider gets a trial call"
    )

    # Memory (rolling context window)
    memory_budget_chars: int = Field(
        default=4000,
        description="Character budget B for the rolling memory passed to each unit"
    )
    compress_every_units: int = Field(
        default=5,
        description="Compress memory every K completed units (0 = only on overflow)"
    )

    # Unit sizing, in words
    generate_min_units: int = Field(default=8)
    generate_max_unit_words: int = Field(default=4000)
    analysis_min_units: int = Field(default=1)
    analysis_max_unit_words: int = Field(default=2000)
    min_target_words: int = Field(default=2000)
    max_target_words: int = Field(default=100000)
    plan_preview_chars: int = Field(
        default=6000,
        description="How much of the source is shown to the planner"
    )

    # Progress and live job handles
    progress_max_events: int = Field(
        default=500,
        description="Progress events kept per job; older ones are dropped"
    )
    max_cached_jobs: int = Field(
        default=64,
        description="Idle job handles kept in memory; evicted ones reload from the database"
    )

    # Rate limiting between units
    interactive_unit_delay_seconds: float = Field(default=0.3)
    batch_unit_delay_seconds: float = Field(default=2.0)

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('interactive_unit_delay_seconds', 'batch_unit_delay_seconds')
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Inter-unit delay cannot be negative")
        return v

    @field_validator(
        'memory_budget_chars', 'generate_min_units', 'generate_max_unit_words',
        'analysis_min_units', 'analysis_max_unit_words', 'llm_timeout_seconds',
        'breaker_failure_threshold', 'progress_max_events', 'max_cached_jobs',
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    def model_for(self, provider_id: str) -> str:
        """Resolve a provider id to a LiteLLM model string."""
        return self.provider_models.get(provider_id, provider_id)

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "LONGFORM_"
        case_sensitive = False


# Global settings instance
settings = Settings()
