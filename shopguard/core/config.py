# shopguard/core/config.py
import logging
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings for the storefront session & security core"""
    APP_NAME: str = "shopguard"
    DEBUG: bool = False

    # Backend (BaaS) settings
    SUPABASE_URL: Optional[str] = Field(default=None)
    SUPABASE_ANON_KEY: Optional[str] = Field(default=None, alias="SUPABASE_KEY")

    # Session settings
    SESSION_MAX_AGE_HOURS: float = 24.0
    SESSION_CHECK_INTERVAL_SECONDS: float = 300.0
    SESSION_REFRESH_THRESHOLD_SECONDS: float = 300.0

    # Profile resolution
    PROFILE_FETCH_ATTEMPTS: int = 3
    PROFILE_RETRY_DELAY_SECONDS: float = 1.0

    # Rate limiting (sliding window with escalating block)
    RATE_LIMIT_MAX_ATTEMPTS: int = 5
    RATE_LIMIT_WINDOW_MINUTES: float = 15.0
    RATE_LIMIT_BLOCK_MINUTES: float = 30.0
    RATE_LIMIT_EXEMPT_OPERATIONS: List[str] = Field(default_factory=lambda: ["UPDATE_ADMIN_SETTINGS"])
    RATE_LIMIT_EXEMPT_PREFIXES: List[str] = Field(default_factory=lambda: ["HERO_"])

    # Cart / favorites writes are frequent, so they get their own budget
    COLLECTION_WRITE_MAX_ATTEMPTS: int = 30
    COLLECTION_WRITE_WINDOW_MINUTES: float = 1.0
    COLLECTION_WRITE_BLOCK_MINUTES: float = 5.0

    # CSRF
    CSRF_TOKEN_LIFETIME_MINUTES: float = 30.0
    CSRF_REFRESH_THRESHOLD_MINUTES: float = 5.0

    # Remote calls
    REMOTE_TIMEOUT_SECONDS: float = 8.0

    # Background security sweep
    CLEANUP_INTERVAL_MINUTES: float = 30.0
    CLEANUP_INITIAL_DELAY_SECONDS: float = 30.0

    # HTTP surface
    ALLOWED_ORIGINS: List[str] = Field(default_factory=lambda: [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])
    API_RATE_LIMIT: str = "100/minute"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "populate_by_name": True,
    }

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_ANON_KEY)


# Settings singleton
settings = Settings()


def validate_required_settings(current: Optional[Settings] = None) -> bool:
    """Check that the backend settings are present"""
    current = current or settings
    missing = []

    if not current.SUPABASE_URL:
        missing.append("SUPABASE_URL")

    if not current.SUPABASE_ANON_KEY:
        missing.append("SUPABASE_ANON_KEY/SUPABASE_KEY")

    if missing:
        logger = logging.getLogger(__name__)
        logger.warning(f"Missing environment variables: {', '.join(missing)}")
        logger.warning("Falling back to in-memory collaborators (development mode).")
        return False

    return True
