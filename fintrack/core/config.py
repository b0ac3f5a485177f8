import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = "sqlite:///./fintrack.db"
    TEST_DATABASE_URL: Optional[str] = None

    # Admin pseudo-session identity (matched locally, never against the auth provider)
    ADMIN_USERNAME: Optional[str] = None
    ADMIN_PASSWORD: Optional[str] = None
    # Header key for the admin API (X-Admin-Key)
    ADMIN_KEY: Optional[str] = None

    # Access window policy
    ACCESS_DEFAULT_GRANT_DAYS: int = 30
    ACCESS_WARNING_WINDOW_DAYS: int = 3
    ACCESS_POLL_INTERVAL_SECONDS: float = 60.0
    ACCESS_MAX_POLL_FAILURES: int = 5
    ACCESS_EXPIRED_SIGNOUT_GRACE_SECONDS: int = 0
    ACCESS_TIMEZONE: str = "UTC"  # calendar-day boundary for the renewal prompt

    # Auth provider
    AUTH_MAX_FAILED_ATTEMPTS_PER_MINUTE: int = 5

    # Payments
    PAYMENT_WEBHOOK_TOKEN: Optional[str] = None
    PAYMENT_LINK_30D: str = "#"
    PAYMENT_LINK_180D: str = "#"
    PAYMENT_LINK_365D: str = "#"

    # HTTP sessions
    SESSION_POLL_ENABLED: bool = True
    LOCAL_STATE_DIR: Optional[str] = None  # JSON local state per session (and per user) when set
    SESSION_IDLE_TTL_SECONDS: int = 86400  # 0 keeps idle sessions forever

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("fintrack")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "ADMIN_USERNAME",
        "ADMIN_PASSWORD",
        "ADMIN_KEY",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
