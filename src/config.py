from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    supabase_url: str
    supabase_service_role_key: str
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 60
    app_base_url: str = "http://localhost:3000"
    internal_scheduler_secret: str | None = None
    observability_export_url: str | None = None
    observability_export_bearer_token: str | None = None
    observability_export_timeout_seconds: float = 3.0
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_webhook_tolerance_seconds: int = 300
    stripe_timeout_seconds: float = 10.0
    stripe_currency: str = "usd"
    lob_api_key: str | None = None
    lob_base_url: str | None = None
    lob_timeout_seconds: float = 12.0
    lob_webhook_secret: str | None = None
    lob_webhook_signature_mode: str = "permissive_audit"  # permissive_audit | enforce
    lob_webhook_signature_tolerance_seconds: int = 300
    transition_max_attempts: int = 3
    reconciliation_batch_limit: int = 200
    reconciliation_max_workers: int = 4
    bulk_delete_max_items: int = 50

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
