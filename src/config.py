"""
Centralized Configuration System
Environment-aware settings for the guardrails, retrieval, scoring and generation pipeline.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="allow"
    )
    """
    Production-grade configuration management.
    Loads from environment variables with sensible defaults.
    """

    # ============================================
    # GENERATIVE BACKEND
    # ============================================
    openai_api_key: Optional[str] = None  # Missing key => generator unavailable, static fallbacks only

    # ============================================
    # MODEL SELECTION (by pipeline role)
    # ============================================
    response_model: str = "openai:gpt-4o-mini"
    analysis_model: str = "openai:gpt-4o"
    transition_model: str = "openai:gpt-4o"

    response_max_tokens: int = 300
    analysis_max_tokens: int = 1000
    transition_max_tokens: int = 500
    generation_temperature: float = 0.7

    # ============================================
    # RESILIENCE
    # ============================================
    generator_timeout_seconds: float = 8.0
    max_retries: int = 2
    retry_min_wait_seconds: float = 1.0
    retry_max_wait_seconds: float = 4.0
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_recovery_timeout: float = 60.0
    circuit_breaker_half_open_max_calls: int = 1

    # ============================================
    # CONFIDENCE SCORING
    # ============================================
    confidence_threshold: float = 0.7
    weight_relevance: float = 0.3
    weight_completeness: float = 0.25
    weight_source_quality: float = 0.2
    weight_semantic_match: float = 0.25
    recommendation_threshold: float = 0.5  # Components below this get a recommendation
    template_source_bonus: float = 0.1

    # ============================================
    # CONTEXT RETRIEVAL
    # ============================================
    retrieval_max_results: int = 20  # Hard cap regardless of requested limit
    retrieval_default_limit: int = 5
    retrieval_default_threshold: float = 0.3
    retrieval_semantic_weight: float = 0.6
    retrieval_timeout_seconds: float = 5.0
    max_grounding_sources: int = 5

    # ============================================
    # COMPLIANCE & SECURITY
    # ============================================
    input_max_length: int = 2000
    output_max_length: int = 1000
    block_unsafe_input: bool = True
    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: int = 60

    # ============================================
    # LEAD FUNNEL
    # ============================================
    enable_lead_tracking: bool = True
    history_window_size: int = 10   # Prior messages given to analysis prompts

    # ============================================
    # PERSISTENCE
    # ============================================
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "leadflow"
    mongodb_max_pool_size: int = 10
    mongodb_min_pool_size: int = 1
    mongodb_server_selection_timeout_ms: int = 5000

    # ============================================
    # LOGGING
    # ============================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    enable_structured_logging: bool = False  # Set to True for production JSON logs

    # ============================================
    # ENVIRONMENT
    # ============================================
    environment: Literal["development", "staging", "production"] = "development"

    @property
    def generator_configured(self) -> bool:
        return bool(self.openai_api_key)


@lru_cache()
def get_settings() -> Settings:
    """
    Singleton pattern for settings.
    Uses LRU cache to ensure only one Settings instance exists.
    """
    return Settings()


# Convenience accessor for common use
settings = get_settings()
