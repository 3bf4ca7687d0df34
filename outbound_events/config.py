from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    internal_scheduler_secret: str | None = None
    lemlist_webhook_secret: str | None = None
    postmark_webhook_secret: str | None = None
    phantombuster_webhook_secret: str | None = None
    generic_webhook_secret: str | None = None
    webhook_signature_tolerance_seconds: int = 300
    webhook_processing_timeout_seconds: float = 10.0
    webhook_rate_limit_requests: int = 100
    webhook_rate_limit_window_seconds: int = 60
    webhook_trusted_proxy_hops: int = 0
    redis_url: str | None = None
    orphan_max_retries: int = 6
    orphan_sweep_interval_seconds: int = 60
    orphan_sweep_batch_size: int = 50
    orphan_sweep_workers: int = 4
    orphan_candidate_timeout_seconds: float = 5.0
    orphan_retry_delays_seconds: list[float] = [5, 15, 60, 300, 900, 3600]
    orphan_retry_jitter_seconds: float = 1.0
    orphan_max_pending: int = 10000
    dead_letter_replay_max_events: int = 200
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
