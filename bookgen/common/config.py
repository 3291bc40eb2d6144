import os
from dataclasses import dataclass


def _get_bool(env_name: str, default: bool = False) -> bool:
    val = os.getenv(env_name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass
class Settings:
    # App
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = int(os.getenv("PORT", "5000"))
    # Anything but the literal "false" keeps auto-start on
    AUTO_START_MONITOR: bool = os.getenv("AUTO_START_MONITOR", "true") != "false"
    SHUTDOWN_GRACE: float = float(os.getenv("SHUTDOWN_GRACE", "5"))

    # Database (SQLite file next to the app by default)
    DB_URL: str = os.getenv("DB_URL", "sqlite+aiosqlite:///./bookgen.db")

    # Redis (generation status events)
    REDIS_HOST: str = os.getenv("REDIS_HOST", "redis")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))
    REDIS_USERNAME: str = os.getenv("REDIS_USERNAME", "")
    REDIS_PASSWORD: str = os.getenv("REDIS_PASSWORD", "")
    REDIS_SSL: bool = _get_bool("REDIS_SSL", False)
    REDIS_EVENTS_CHANNEL: str = os.getenv("REDIS_EVENTS_CHANNEL", "generation-events")
    EVENTS_ENABLED: bool = _get_bool("EVENTS_ENABLED", True)

    # Order monitor
    POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "10"))
    MONITOR_BATCH_SIZE: int = int(os.getenv("MONITOR_BATCH_SIZE", "5"))
    GENERATION_CONCURRENCY: int = int(os.getenv("GENERATION_CONCURRENCY", "2"))
    GENERATION_TIMEOUT: float = float(os.getenv("GENERATION_TIMEOUT", "120"))
    PAGE_BATCH_SIZE: int = int(os.getenv("PAGE_BATCH_SIZE", "3"))

    # Generation provider
    GENERATION_PROVIDER: str = os.getenv("GENERATION_PROVIDER", "mock")
    GENERATION_PROVIDER_URL: str = os.getenv("GENERATION_PROVIDER_URL", "")
    PROVIDER_MAX_RETRIES: int = int(os.getenv("PROVIDER_MAX_RETRIES", "3"))
    PROVIDER_REQUEST_TIMEOUT: float = float(os.getenv("PROVIDER_REQUEST_TIMEOUT", "60"))

    # Artifact storage and signed URLs
    STORAGE_DIR: str = os.getenv("STORAGE_DIR", "./uploads")
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:5000")
    SIGNING_SECRET: str = os.getenv("SIGNING_SECRET", "change-me")
    SIGNED_URL_TTL: int = int(os.getenv("SIGNED_URL_TTL", "604800"))  # 7 days
    REFRESH_MARGIN: int = int(os.getenv("REFRESH_MARGIN", "3600"))
    STORAGE_ALERT_THRESHOLD: int = int(os.getenv("STORAGE_ALERT_THRESHOLD", "3"))
    STORAGE_BACKOFF_MAX: float = float(os.getenv("STORAGE_BACKOFF_MAX", "300"))
    MAX_PDF_SIZE: int = int(os.getenv("MAX_PDF_SIZE", str(50 * 1024 * 1024)))


settings = Settings()
