"""
Application configuration.

All configuration is loaded from environment variables.
Never hardcode secrets or connection strings in code.

Risk thresholds, retention and export limits are deployment
policy, so they live here rather than as constants in the
services that apply them.
"""

import os
from functools import lru_cache

from dotenv import load_dotenv

# Load .env file into environment variables
load_dotenv()


DEFAULT_SENSITIVE_FIELDS = (
    "password",
    "token",
    "secret",
    "recovery_email",
    "phone",
    "api_key",
    "authorization",
)


POSITIVE_SETTINGS = (
    "RETENTION_DAYS",
    "PENDING_CEILING_SECONDS",
    "REAPER_INTERVAL_SECONDS",
    "RISK_WINDOW_SECONDS",
    "FINALIZER_WORKERS",
    "EXPORT_ROW_CAP",
)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(p.strip() for p in raw.split(",") if p.strip())


class Settings:
    """
    Application settings loaded from environment variables.

    Keyword arguments override individual values, which lets tests
    and embedding applications inject their own policy without
    touching the environment.
    """

    def __init__(self, **overrides):
        # Application
        self.APP_NAME: str = "Activity Audit Service"
        self.APP_VERSION: str = "0.1.0"
        self.DEBUG: bool = _env_bool("DEBUG", False)
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

        # Server
        self.HOST: str = os.getenv("HOST", "0.0.0.0")
        self.PORT: int = _env_int("PORT", 8000)

        # Database
        self.DATABASE_URL: str = os.getenv(
            "DATABASE_URL",
            "postgresql://localhost:5432/activity_audit"
        )

        # Environment
        self.ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

        # Retention
        self.RETENTION_DAYS: int = _env_int("RETENTION_DAYS", 730)
        self.PENDING_CEILING_SECONDS: int = _env_int("PENDING_CEILING_SECONDS", 3600)
        self.REAPER_ENABLED: bool = _env_bool("REAPER_ENABLED", False)
        self.REAPER_INTERVAL_SECONDS: int = _env_int("REAPER_INTERVAL_SECONDS", 300)

        # Sanitization
        self.SENSITIVE_FIELDS: tuple[str, ...] = _env_list(
            "SENSITIVE_FIELDS", DEFAULT_SENSITIVE_FIELDS
        )

        # Risk scoring
        self.RISK_WINDOW_SECONDS: int = _env_int("RISK_WINDOW_SECONDS", 300)
        self.RISK_RAPID_CREATION_THRESHOLD: int = _env_int("RISK_RAPID_CREATION_THRESHOLD", 5)
        self.RISK_RAPID_CREATION_SCORE: int = _env_int("RISK_RAPID_CREATION_SCORE", 70)
        self.RISK_FAILURE_THRESHOLD: int = _env_int("RISK_FAILURE_THRESHOLD", 10)
        self.RISK_FAILURE_SCORE: int = _env_int("RISK_FAILURE_SCORE", 60)
        self.RISK_SOURCE_THRESHOLD: int = _env_int("RISK_SOURCE_THRESHOLD", 3)
        self.RISK_SOURCE_SCORE: int = _env_int("RISK_SOURCE_SCORE", 50)
        self.RISK_FLAG_THRESHOLD: int = _env_int("RISK_FLAG_THRESHOLD", 70)
        self.SCORE_ON_WRITE: bool = _env_bool("SCORE_ON_WRITE", True)

        # Performance
        self.SLOW_OPERATION_MS: int = _env_int("SLOW_OPERATION_MS", 1000)
        self.RISK_SLOW_OPERATION_SCORE: int = _env_int("RISK_SLOW_OPERATION_SCORE", 40)
        self.FINALIZER_WORKERS: int = _env_int("FINALIZER_WORKERS", 4)

        # Query surface
        self.EXPORT_ROW_CAP: int = _env_int("EXPORT_ROW_CAP", 10_000)
        self.SECURITY_MIN_RISK_SCORE: int = _env_int("SECURITY_MIN_RISK_SCORE", 70)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting '{key}'")
            setattr(self, key, value)

        self._validate()

    def _validate(self) -> None:
        # RETENTION_DAYS >= 1 keeps expires_at after occurred_at
        for key in POSITIVE_SETTINGS:
            value = getattr(self, key)
            if value < 1:
                raise ValueError(f"{key} must be at least 1, got {value}")
        if not 0 <= self.RISK_FLAG_THRESHOLD <= 100:
            raise ValueError(
                f"RISK_FLAG_THRESHOLD must be between 0 and 100, "
                f"got {self.RISK_FLAG_THRESHOLD}"
            )


@lru_cache()
def get_settings() -> Settings:
    """
    Return cached settings instance.

    Using lru_cache means the Settings object is created once
    and reused for all subsequent calls. This avoids reading
    environment variables repeatedly.
    """
    return Settings()
