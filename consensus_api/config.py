"""
Configuration settings for the Plan Acceptance Consensus Service.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class FailMode(str, Enum):
    """What the bot-challenge gate does when the adjudication service is down."""
    OPEN = "open"      # Allow, but apply the fallback rate limit
    CLOSED = "closed"  # Reject with 503


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    app_name: str = "Plan Acceptance Consensus API"
    app_version: str = "0.1.0"
    environment: str = "production"  # development | test | production
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./consensus.db"

    # Shared rate-limit store (process-local memory when unset)
    redis_url: Optional[str] = None

    # Use the first X-Forwarded-For hop as the origin fingerprint
    trust_proxy_headers: bool = False

    # Rate limits (requests per window, window in seconds)
    submit_rate_limit: int = 10
    submit_rate_window_seconds: int = 3600
    vote_rate_limit: int = 10
    vote_rate_window_seconds: int = 3600
    search_rate_limit: int = 100
    search_rate_window_seconds: int = 3600
    default_rate_limit: int = 200
    default_rate_window_seconds: int = 3600

    # Bot challenge (reCAPTCHA v3 compatible)
    challenge_secret: Optional[str] = None
    challenge_verify_url: str = "https://www.google.com/recaptcha/api/siteverify"
    challenge_min_score: float = 0.5
    challenge_timeout_seconds: float = 5.0
    challenge_fail_mode: FailMode = FailMode.OPEN
    challenge_fallback_rate_limit: int = 3
    challenge_fallback_window_seconds: int = 3600

    # Consensus thresholds
    min_verifications_for_consensus: int = 3
    min_confidence_for_status_change: int = 60
    consensus_majority_ratio: float = 2.0

    # Lifetimes
    verification_ttl_days: int = 180  # 6 months
    duplicate_window_days: int = 30

    # Maintenance
    sweeper_batch_size: int = 1000
    recalculation_batch_size: int = 100
    enable_scheduler: bool = False
    sweep_interval_minutes: int = 24 * 60
    recalculation_interval_minutes: int = 24 * 60
    abuse_report_threshold: int = 5

    # API Security
    api_key: Optional[str] = None  # Required for maintenance endpoints when set
    allowed_origins: str = "http://localhost:8000,http://localhost:3000"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "CV_"

    @property
    def challenge_enabled(self) -> bool:
        """The bot challenge is skipped in development and test environments."""
        return self.environment not in ("development", "test")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
