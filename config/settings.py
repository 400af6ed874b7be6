"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


DEFAULT_BUCKET_LIMITS: Dict[str, int] = {
    "scoreboard": 300,
    "game_summary": 600,
    "standings": 1,
    "schedule": 0,
    "reserve": 1099,
}

DEFAULT_PROTECTED_BUCKETS = ["scoreboard", "game_summary", "standings"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream provider
    upstream_base_url: str = "http://localhost:8080"
    upstream_timeout_seconds: float = 10.0
    upstream_user_agent: str = "BoxScore/1.0"

    # Token bucket (per-minute rate)
    token_bucket_capacity: int = 60
    token_refill_per_second: int = 1

    # Daily budget
    daily_soft_cap: int = 2000
    daily_hard_cap: int = 2200
    daily_warning_threshold: int = 1800

    # Named budget buckets
    bucket_limits: Dict[str, int] = dict(DEFAULT_BUCKET_LIMITS)
    protected_buckets: List[str] = list(DEFAULT_PROTECTED_BUCKETS)

    # Adaptive backoff (milliseconds)
    backoff_rate_limited_initial_ms: int = 30_000
    backoff_rate_limited_max_ms: int = 300_000
    backoff_forbidden_initial_ms: int = 60_000
    backoff_forbidden_max_ms: int = 600_000
    backoff_timeout_initial_ms: int = 15_000
    backoff_timeout_max_ms: int = 120_000
    backoff_server_error_initial_ms: int = 30_000
    backoff_server_error_max_ms: int = 300_000
    backoff_consecutive_initial_ms: int = 60_000
    backoff_consecutive_max_ms: int = 600_000
    consecutive_error_threshold: int = 3
    successes_to_halve_backoff: int = 5
    backoff_full_reset_after_ms: int = 600_000

    # Request coalescing
    dedup_window_seconds: float = 30.0
    dedup_cleanup_grace_seconds: float = 0.1

    # Ephemeral tier: empty redis_url disables Redis
    redis_url: Optional[str] = None
    redis_connect_timeout_seconds: float = 3.0
    ephemeral_memory_fallback: bool = True

    # Durable tier
    storage_directory: Path = Path("./data/artifacts")
    quota_state_file: Optional[Path] = Path("./data/quota_state.json")
    permanent_backup_ttl_seconds: int = 30 * 24 * 60 * 60
    integrity_retry_ttl_seconds: int = 60
    stale_grace_seconds: int = 6 * 60 * 60

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
