from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    rhinestone_api_key: str | None = None
    orchestrator_profile_path: str | None = None
    upstream_connect_timeout_seconds: float = 3.0
    upstream_read_timeout_seconds: float = 20.0
    upstream_write_timeout_seconds: float = 20.0
    upstream_pool_timeout_seconds: float = 3.0
    upstream_keepalive_expiry_seconds: float = 4.0
    proxy_audit_log_enabled: bool = False
    proxy_audit_log_path: str = "logs/proxy_attempts.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def api_key(self) -> str | None:
        if self.rhinestone_api_key is None:
            return None
        return self.rhinestone_api_key.strip() or None


@lru_cache
def get_settings() -> Settings:
    return Settings()
