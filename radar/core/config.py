from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "engagement-radar"
    environment: str = "dev"
    worker_id: str | None = None

    store_backend: Literal["memory", "postgres"] = "memory"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    discovery_base_url: str = "https://api.apify.com/v2"
    discovery_api_token: str | None = None
    discovery_timeout_seconds: float = 180.0
    discovery_platforms: list[str] = ["indeed", "linkedin"]
    discovery_max_concurrent: int = 1
    discovery_min_interval_seconds: float = 5.0
    discovery_max_per_minute: int = 10

    classifier_base_url: str = "https://api.openai.com/v1"
    classifier_api_key: str | None = None
    classifier_model: str = "gpt-5-mini"
    classifier_timeout_seconds: float = 60.0
    classifier_max_concurrent: int = 5
    classifier_min_interval_seconds: float = 0.1
    classifier_max_per_minute: int = 30

    dedupe_similarity_threshold: float = 0.7
    dedupe_cache_ttl_seconds: int = 1800
    dedupe_cache_seed_limit: int = 500
    dedupe_cache_seed_min_signal: float = 0.5

    classification_daily_budget: float = 10.0
    classification_batch_size: int = 10
    classification_batch_cost: float = 0.002
    classification_prefilter_accept: float = 0.9
    classification_cache_ttl_seconds: int = 7 * 24 * 3600
    classification_cache_max_entries: int = 10000
    classification_cache_sweep_interval_seconds: float = 3600.0

    scheduler_min_interval_minutes: float = 60.0
    scheduler_max_interval_minutes: float = 10080.0
    scheduler_default_interval_minutes: float = 1440.0
    scheduler_platform_cooldown_seconds: int = 1800
    scheduler_max_consecutive_failures: int = 3
    scheduler_min_success_rate: float = 0.3
    scheduler_high_yield_threshold: float = 0.3
    scheduler_low_yield_threshold: float = 0.1
    scheduler_inter_platform_delay_seconds: float = 5.0
    scheduler_max_items_per_platform: int = 50
    scheduler_high_value_terms: list[str] = ["Revenue Operations", "Sales Development Manager", "Sales Manager"]

    queue_max_concurrent: int = 5
    queue_max_size: int = 1000
    queue_default_priority: int = 50
    queue_default_max_retries: int = 3
    queue_lock_timeout_seconds: int = 60
    queue_poll_interval_seconds: float = 1.0
    queue_backoff_base_seconds: float = 1.0
    queue_backoff_multiplier: float = 2.0
    queue_max_backoff_seconds: float = 60.0
    queue_circuit_breaker_threshold: int = 5
    queue_circuit_breaker_timeout_seconds: float = 300.0
    queue_shutdown_timeout_seconds: float = 30.0
    queue_max_memory_percent: float = 90.0
    queue_max_error_rate: float = 0.5
    queue_max_depth_ratio: float = 0.9
    queue_high_value_terms: list[str] = ["Revenue Operations", "Sales Manager", "SDR Manager"]
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100

    engine_continuous_interval_minutes: float = 30.0
    engine_confidence_threshold: float = 0.7
    engine_cost_threshold: float = 0.05

    otel_enabled: bool = True
    otel_service_name: str = "engagement-radar"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: dict[str, str] = {}
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RADAR_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
