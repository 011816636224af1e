from pydantic_settings import BaseSettings, SettingsConfigDict


class PermissionSettings(BaseSettings):
    # Cache lifetimes
    user_cache_ttl_seconds: float = 300  # 5 minutes
    hierarchy_cache_ttl_seconds: float = 600  # 10 minutes

    # Background sweep of expired cache entries
    eviction_interval_seconds: float = 60

    # Store calls; None waits for the store's own timeout
    store_timeout_seconds: float | None = None

    # Hierarchy walk bound; None derives it from the hierarchy size
    max_hierarchy_depth: int | None = None

    model_config = SettingsConfigDict(
        env_prefix="PERMISSION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
