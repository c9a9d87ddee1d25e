"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
Pairing thresholds are exposed as flat PAIR_* variables here and
assembled into a PairingConfig by config.pairing.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # SUPABASE
    # ===================
    supabase_url: Optional[str] = Field(
        None,
        description="Supabase project URL"
    )
    supabase_key: Optional[str] = Field(
        None,
        description="Supabase anon/public key"
    )
    supabase_service_key: Optional[str] = Field(
        None,
        description="Supabase service role key (for admin operations)"
    )
    job_store_backend: str = Field(
        default="supabase",
        pattern="^(supabase|memory)$",
        description="Where pairing jobs and chunk locks are stored"
    )

    # ===================
    # ANTHROPIC
    # ===================
    anthropic_api_key: Optional[str] = Field(
        None,
        description="API key for the vision classifier and tie-break judge"
    )
    classifier_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model used to classify product photos"
    )
    tiebreak_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Model used to break ambiguous front/back matches"
    )

    # ===================
    # JOB ORCHESTRATION
    # ===================
    job_ttl_seconds: int = Field(
        default=3600,
        ge=60,
        le=86400,
        description="Retention window for pairing job records"
    )
    chunk_size: int = Field(
        default=8,
        ge=1,
        le=50,
        description="Images per lockable chunk"
    )
    parallel_chunks: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Chunks processed concurrently per invocation"
    )
    chunk_lock_ttl_seconds: int = Field(
        default=60,
        ge=5,
        le=900,
        description="Chunk lock expiry (fallback release)"
    )
    max_chunk_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Failures tolerated per chunk before the job fails"
    )
    invocation_budget_seconds: float = Field(
        default=20.0,
        gt=0,
        le=900,
        description="Time budget for one orchestrator invocation"
    )
    classify_concurrency: int = Field(
        default=2,
        ge=1,
        le=20,
        description="Classifier calls allowed in flight process-wide"
    )
    insight_cache_ttl_seconds: int = Field(
        default=900,
        ge=0,
        le=86400,
        description="Lifetime of cached classifications"
    )

    # ===================
    # PAIRING THRESHOLDS
    # ===================
    pair_candidates_per_front: int = Field(default=8, ge=1, le=50)
    pair_min_pre_score: float = Field(default=2.0)
    pair_auto_score: float = Field(default=3.0)
    pair_auto_gap: float = Field(default=1.0, ge=0)
    pair_auto_hair_score: float = Field(default=2.4)
    pair_auto_hair_gap: float = Field(default=0.8, ge=0)
    pair_disable_tiebreak: bool = Field(
        default=False,
        description="Leave ambiguous fronts as singletons instead of asking the judge"
    )
    pair_tiebreak_max_calls: int = Field(default=25, ge=0, le=500)
    pair_tiebreak_text_chars: int = Field(default=400, ge=50, le=4000)
    pair_tiebreak_max_attempts: int = Field(default=3, ge=1, le=10)
    pair_max_extras_per_product: int = Field(default=4, ge=0, le=20)
    pair_min_extra_score: float = Field(default=2.0)
    pair_max_candidate_build_ms: int = Field(default=5000, ge=1)
    pair_max_back_front_ratio: int = Field(default=5, ge=2)
    pair_pkg_boost_dropper: float = Field(default=2.0, ge=0)
    pair_pkg_boost_pouch: float = Field(default=1.5, ge=0)
    pair_pkg_boost_default: float = Field(default=1.0, ge=0)

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def supabase_configured(self) -> bool:
        """Check if Supabase credentials are present."""
        return bool(self.supabase_url and self.supabase_key)

    @property
    def anthropic_configured(self) -> bool:
        return bool(self.anthropic_api_key)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If env vars are invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
