from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    accounts_config_path: str = "accounts.yaml"
    listen_host: str = "127.0.0.1"
    listen_port: int = 8000
    upstream_connect_timeout_seconds: float = 10.0
    upstream_idle_timeout_seconds: float = 300.0
    upstream_pool_timeout_seconds: float = 10.0
    upstream_max_connections: int = 512
    upstream_max_keepalive_connections: int = 128
    upstream_http2_enabled: bool = True
    rate_limit_default_cooldown_seconds: float = 60.0
    rate_limit_max_cooldown_seconds: float = 3600.0
    unauthorized_cooldown_seconds: float = 900.0
    unreachable_cooldown_seconds: float = 30.0
    health_reconcile_interval_seconds: float = 5.0
    accounts_reload_enabled: bool = True
    request_body_replay_max_bytes: int = 10 * 1024 * 1024
    client_disconnect_poll_seconds: float = 0.5
    balancer_audit_log_enabled: bool = True
    balancer_audit_log_path: str = "logs/balancer_events.jsonl"
    metrics_enabled: bool = True

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
