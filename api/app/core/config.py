from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "certificate-tracker-api"
    environment: str = "dev"
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    supabase_anon_key: str | None = None
    supabase_schema: str = "public"
    postgrest_timeout_seconds: float = 10.0
    default_page_size: int = 50
    max_page_size: int = 200
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "certificate-tracker-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CT_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
