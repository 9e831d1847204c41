from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Hub Connector"
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = ""  # Must be set via environment variable
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 10080  # 7 days

    # Database (falls back to PG* variables, then a local SQLite file)
    DATABASE_URL: str = ""

    # Identity reported to the Hub and to managers
    SITE_URL: str = "http://localhost:8000"
    SITE_NAME: str = "Hub Connector Site"

    # Background jobs
    RUN_SCHEDULER: bool = True
    HUB_SYNC_INTERVAL_MINUTES: int = 15
    HUB_SYNC_BATCH_SIZE: int = 100
    HEARTBEAT_INTERVAL_MINUTES: int = 60
    RETENTION_DAYS: int = 90
    RETENTION_CRON_HOUR: int = 3  # UTC

    # Sync run coordination
    SYNC_LEASE_SECONDS: int = 600
    SYNC_NOW_POLICY: str = "drop"  # "drop" or "queue"
    SYNC_REQUEST_POLL_SECONDS: int = 30
    SYNC_RETRY_BASE_SECONDS: int = 60
    SYNC_RETRY_MAX_SECONDS: int = 3600

    # Outbound Hub timeouts (seconds)
    HUB_PUSH_TIMEOUT: float = 30.0
    HUB_HEARTBEAT_TIMEOUT: float = 15.0
    HUB_VERIFY_TIMEOUT: float = 15.0
    HUB_POPUP_TIMEOUT: float = 10.0
    HUB_CONNECT_TIMEOUT: float = 30.0

    # Error tracking
    SENTRY_DSN: str = ""
    ENVIRONMENT: str = "production"

    # Comma-separated list of extra CORS origins for the tracking script
    CORS_ORIGINS: str = ""

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
