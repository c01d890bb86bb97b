"""
Configuration settings for the venue discovery engine.

Uses Pydantic Settings to load environment variables for persistence, budget
limits, credential rotation, strategy learning, run pacing and the external
services the engine talks to. Every field can be overridden through its
upper-case alias or a local `.env` file.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_VENUE_FACTOR_WEIGHTS: Dict[str, float] = {
    "brand_mention": 35.0,
    "url_pattern": 20.0,
    "strategy_quality": 20.0,
    "menu_evidence": 15.0,
    "description_completeness": 10.0,
}

DEFAULT_DISH_FACTOR_WEIGHTS: Dict[str, float] = {
    "brand_mention": 40.0,
    "product_match": 25.0,
    "price_visibility": 15.0,
    "description_completeness": 20.0,
}


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("discovery_engine", alias="DB_NAME")
    db_pool_min: int = Field(1, alias="DB_POOL_MIN")
    db_pool_max: int = Field(5, alias="DB_POOL_MAX")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")
    store_backend: str = Field("memory", alias="STORE_BACKEND")

    # Budget
    budget_daily_limit_usd: float = Field(50.0, alias="BUDGET_DAILY_LIMIT_USD")
    budget_monthly_limit_usd: float = Field(1000.0, alias="BUDGET_MONTHLY_LIMIT_USD")
    budget_throttle_fraction: float = Field(0.8, alias="BUDGET_THROTTLE_FRACTION")
    cost_free_search_usd: float = Field(0.0, alias="COST_FREE_SEARCH_USD")
    cost_paid_search_usd: float = Field(0.005, alias="COST_PAID_SEARCH_USD")
    cost_ai_call_usd: Dict[str, float] = Field(
        default_factory=lambda: {"gemini": 0.0005, "claude": 0.003},
        alias="COST_AI_CALL_USD",
    )
    ai_provider: str = Field("claude", alias="AI_PROVIDER")
    ai_calls_per_venue: int = Field(5, alias="AI_CALLS_PER_VENUE")
    ai_calls_per_query: int = Field(0, alias="AI_CALLS_PER_QUERY")

    # Search credentials
    search_api_keys: str = Field("", alias="SEARCH_API_KEYS")
    search_engine_id: str = Field("", alias="SEARCH_ENGINE_ID")
    search_free_daily_quota: int = Field(100, alias="SEARCH_FREE_DAILY_QUOTA")
    search_reset_hour_utc: int = Field(0, alias="SEARCH_RESET_HOUR_UTC")
    serpapi_key: str = Field("", alias="SERPAPI_KEY")
    search_timeout_seconds: float = Field(30.0, alias="SEARCH_TIMEOUT_SECONDS")

    # Query dedup
    dedup_positive_ttl_hours: int = Field(24, alias="DEDUP_POSITIVE_TTL_HOURS")
    dedup_negative_ttl_days: int = Field(7, alias="DEDUP_NEGATIVE_TTL_DAYS")

    # Strategy learning
    strategy_min_success_rate: float = Field(20.0, alias="STRATEGY_MIN_SUCCESS_RATE")
    strategy_deprecation_min_uses: int = Field(10, alias="STRATEGY_DEPRECATION_MIN_USES")
    strategy_recency_weight: float = Field(0.3, alias="STRATEGY_RECENCY_WEIGHT")
    strategy_recency_half_life_days: float = Field(14.0, alias="STRATEGY_RECENCY_HALF_LIFE_DAYS")
    strategy_neutral_prior: float = Field(50.0, alias="STRATEGY_NEUTRAL_PRIOR")
    strategy_prior_weight: float = Field(2.0, alias="STRATEGY_PRIOR_WEIGHT")
    strategies_per_target: int = Field(5, alias="STRATEGIES_PER_TARGET")
    evolve_min_success_rate: float = Field(60.0, alias="EVOLVE_MIN_SUCCESS_RATE")
    evolve_min_uses: int = Field(5, alias="EVOLVE_MIN_USES")
    query_batch_size: int = Field(3, alias="QUERY_BATCH_SIZE")

    # Run execution
    max_concurrency_per_platform: int = Field(2, alias="MAX_CONCURRENCY_PER_PLATFORM")
    request_delay_seconds: float = Field(2.0, alias="REQUEST_DELAY_SECONDS")
    item_timeout_seconds: float = Field(60.0, alias="ITEM_TIMEOUT_SECONDS")
    item_max_retries: int = Field(3, alias="ITEM_MAX_RETRIES")
    retry_backoff_seconds: float = Field(1.0, alias="RETRY_BACKOFF_SECONDS")
    platform_failure_threshold: int = Field(5, alias="PLATFORM_FAILURE_THRESHOLD")
    run_log_ring_size: int = Field(200, alias="RUN_LOG_RING_SIZE")
    heartbeat_interval_seconds: float = Field(15.0, alias="HEARTBEAT_INTERVAL_SECONDS")
    cancellation_poll_seconds: float = Field(0.5, alias="CANCELLATION_POLL_SECONDS")
    candidate_min_confidence: float = Field(40.0, alias="CANDIDATE_MIN_CONFIDENCE")

    # Browser
    browser_pool_size: int = Field(1, alias="BROWSER_POOL_SIZE")
    browser_headless: bool = Field(True, alias="BROWSER_HEADLESS")
    navigation_timeout_ms: int = Field(60_000, alias="NAVIGATION_TIMEOUT_MS")

    # Content analysis
    anthropic_api_key: str = Field("", alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field("claude-3-5-haiku-latest", alias="ANTHROPIC_MODEL")
    analysis_max_tokens: int = Field(2048, alias="ANALYSIS_MAX_TOKENS")
    analysis_max_page_chars: int = Field(20_000, alias="ANALYSIS_MAX_PAGE_CHARS")

    # Confidence scoring
    brand_terms: List[str] = Field(default_factory=lambda: ["planted"], alias="BRAND_TERMS")
    generic_terms: List[str] = Field(
        default_factory=lambda: [
            "plant-based chicken",
            "vegan chicken",
            "veganes hähnchen",
            "pflanzliches hähnchen",
            "poulet végétal",
            "vegan kebab",
        ],
        alias="GENERIC_TERMS",
    )
    product_names: List[str] = Field(
        default_factory=lambda: [
            "planted.chicken",
            "planted.kebab",
            "planted.pulled",
            "planted.schnitzel",
            "planted.steak",
            "planted.duck",
        ],
        alias="PRODUCT_NAMES",
    )
    venue_factor_weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_VENUE_FACTOR_WEIGHTS),
        alias="VENUE_FACTOR_WEIGHTS",
    )
    dish_factor_weights: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_DISH_FACTOR_WEIGHTS),
        alias="DISH_FACTOR_WEIGHTS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def search_api_key_list(self) -> List[str]:
        """Free-tier search keys, one credential slot per key."""
        return [key.strip() for key in self.search_api_keys.split(",") if key.strip()]

    def ai_call_cost(self, provider: str | None = None) -> float:
        return self.cost_ai_call_usd.get(provider or self.ai_provider, 0.0)

    def validate_runtime(self) -> List[str]:
        """Check that the external services the engine needs are configured."""
        warnings: List[str] = []
        if not self.search_api_key_list:
            warnings.append("SEARCH_API_KEYS is not set; every query will use the paid channel")
        if self.search_api_key_list and not self.search_engine_id:
            warnings.append("SEARCH_ENGINE_ID is not set; free search credentials cannot be used")
        if not self.serpapi_key:
            warnings.append("SERPAPI_KEY is not set; no paid fallback once free quota is exhausted")
        if not self.anthropic_api_key:
            warnings.append("ANTHROPIC_API_KEY is not set; extraction runs will yield zero dishes")
        if not 0 < self.budget_throttle_fraction <= 1:
            warnings.append("BUDGET_THROTTLE_FRACTION should be in (0, 1]")
        return warnings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
