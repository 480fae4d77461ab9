from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_HIVE_RPC_NODES = [
    "https://api.hive.blog",
    "https://rpc.podping.org",
    "https://api.openhive.network",
    "https://hive-api.web3telekom.xyz",
    "https://hive-api.arcange.eu",
    "https://rpc.mahdiyari.info",
]


class Settings(BaseSettings):
    app_name: str = "podping-ingest"
    environment: str = "dev"
    worker_id: str | None = None
    log_level: str = "INFO"

    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    admin_api_key_hashes: str | None = None
    viewer_api_key_hashes: str | None = None

    hive_rpc_nodes: list[str] = Field(default_factory=lambda: list(DEFAULT_HIVE_RPC_NODES))
    hive_rpc_timeout_seconds: float = 3.0
    hive_user_agent: str = "podping-ingest/1.0 (+https://podping.org)"
    ledger_max_blocks_per_poll: int = 50
    ledger_initial_lag_blocks: int = 10
    sync_lease_seconds: int = 60
    poll_interval_seconds: float = 3.0
    max_backoff_seconds: float = 60.0

    scheduler_concurrency: int = 8
    scheduler_cycle_interval_seconds: float = 5.0
    scheduler_cycle_deadline_seconds: float = 120.0
    rate_limit_per_second: float = 4.0
    rate_limit_capacity: int = 8
    rate_limit_acquire_timeout_seconds: float = 10.0

    parse_max_attempts: int = 5
    parse_retry_base_seconds: int = 30
    parse_retry_max_seconds: int = 3600
    retry_promotion_batch_size: int = 100
    low_priority_debounce_seconds: int = 180

    stale_claim_timeout_seconds: int = 900
    reaper_interval_seconds: float = 60.0
    reaper_batch_size: int = 100

    capture_retention_days: int = 7
    podping_retention_days: int = 30
    cleanup_interval_seconds: float = 3600.0
    cleanup_batch_size: int = 100

    refresh_interval_hours: int = 24
    refresh_enqueue_interval_seconds: float = 300.0
    refresh_enqueue_batch_size: int = 100

    fetch_timeout_seconds: float = 20.0
    fetch_user_agent: str = "podping-ingest-feed-fetcher/1.0"

    otel_enabled: bool = True
    otel_service_name: str = "podping-ingest"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="PPI_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
