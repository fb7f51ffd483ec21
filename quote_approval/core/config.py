from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "quote-approval-api"
    environment: str = "dev"
    local_domain: str = "localhost"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    fetch_timeout_seconds: float = 10.0
    fetch_max_body_bytes: int = 1_048_576
    fetch_user_agent: str = "quote-approval-fetcher/1.0"
    allow_insecure_fetch: bool = False
    fetch_max_redirect_hops: int = 5
    instance_actor_username: str = "instance.actor"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 120
    claim_batch_size: int = 5
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    otel_enabled: bool = True
    otel_service_name: str = "quote-approval"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="QA_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
