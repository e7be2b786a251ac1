# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    enable_request_logging: bool = True

    # Storage
    # "postgres" - asyncpg-backed tasks/webhooks tables
    # "memory"   - in-process dicts (dev, tests, demos)
    storage_backend: Literal["postgres", "memory"] = "memory"
    database_url: str | None = None
    pg_pool_min: int = 2
    pg_pool_max: int = 10
    memory_seed_path: str | None = None  # JSON with "groups" and "webhooks" rows for the memory backend

    # Delivery
    # "relay"  - POST to relay_url, which forwards to the group bot webhook
    # "direct" - POST straight to each group bot webhook
    delivery_mode: Literal["relay", "direct"] = "direct"
    relay_url: str | None = None  # e.g. https://push.example.com/api/wecom-webhook
    send_timeout_seconds: int = 30

    # Images
    image_max_file_size_mb: int = 10   # hard ceiling, larger images are rejected
    image_target_size_kb: int = 1024   # group bots reject images above ~1 MB

    # Caching (list and dashboard reads)
    cache_ttl_seconds: int = 300  # 5 minutes

    # API
    api_token: str | None = None
    allowed_origins: list[str] = ["*"]
    task_list_limit: int = 100

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def image_max_file_size_bytes(self) -> int:
        return self.image_max_file_size_mb * 1024 * 1024

    @property
    def image_target_size_bytes(self) -> int:
        return self.image_target_size_kb * 1024

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [("api_token", self.api_token)]

        if self.storage_backend == "postgres":
            required_fields.append(("database_url", self.database_url))
        if self.delivery_mode == "relay":
            required_fields.append(("relay_url", self.relay_url))

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.api_token:
        warnings.append("api_token is not set (task API accepts unauthenticated requests).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.storage_backend == "memory":
        warnings.append("storage_backend=memory: tasks are lost on restart.")
    elif not s.database_url:
        warnings.append("storage_backend=postgres but database_url is missing.")

    if s.delivery_mode == "relay" and not s.relay_url:
        warnings.append("delivery_mode=relay but relay_url is missing (every send will fail).")

    if s.image_target_size_kb * 1024 > s.image_max_file_size_bytes:
        warnings.append("image_target_size_kb exceeds image_max_file_size_mb; compression never triggers.")

    if s.cache_ttl_seconds <= 0:
        warnings.append("cache_ttl_seconds<=0: every read goes to the store.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
