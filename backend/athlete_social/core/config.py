from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "athlete-social"
    environment: str = "dev"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    storage_timeout_seconds: float = 30.0
    media_buckets: str = "avatars,uploads,post-media"
    media_max_bytes: int = 5 * 1024 * 1024
    media_allowed_content_types: str = "image/jpeg,image/png,image/webp,image/gif,image/avif"
    reserved_handles_path: str | None = None
    handle_max_length: int = 20
    otel_enabled: bool = True
    otel_service_name: str = "athlete-social"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="AS_", extra="ignore")

    def get_media_buckets(self) -> set[str]:
        return {bucket.strip() for bucket in self.media_buckets.split(",") if bucket.strip()}

    def get_media_allowed_content_types(self) -> set[str]:
        return {
            content_type.strip().lower()
            for content_type in self.media_allowed_content_types.split(",")
            if content_type.strip()
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
