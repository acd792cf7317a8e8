from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./profilesync.db"
    api_base_url: str = "https://mybusiness.googleapis.com"
    request_timeout_seconds: float = 30.0

    # Retry policy (applies to API calls and batch writes alike)
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000

    batch_size: int = 50
    heartbeat_interval_seconds: float = 15.0
    error_log_limit: int = 50
    error_rate_threshold: float = 0.5
    error_rate_min_units: int = 10
    max_concurrent_locations: int = 1

    # Fetch windows
    performance_windows_days: List[int] = [7, 30, 60, 90]
    keyword_lookback_months: int = 3

    # Run retention / sweep
    run_retention_hours: int = 72
    sweep_interval_minutes: int = 60

    # Dedup tie-break policy
    # Legacy full-path names and the current "Store locations/{id}" fallback
    placeholder_name_prefixes: List[str] = ["Store accounts/", "Store locations/"]
    dedup_prefer_recent: bool = True

    owner_id: str = "default"  # single-tenant default; multi-tenant: session claim

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
