from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite+aiosqlite:///./playsync.db"
    SQL_ECHO: bool = False

    # BoardGameGeek endpoints
    BGG_API_BASE_URL: str = "https://boardgamegeek.com/xmlapi2"
    BGG_API_TOKEN: Optional[str] = None
    BGG_LOGIN_URL: str = "https://boardgamegeek.com/login/api/v1"
    BGG_PLAY_SUBMISSION_URL: str = "https://boardgamegeek.com/geekplay.php"
    USER_AGENT: str = "playsync/1.0 (+https://boardgamegeek.com)"
    BGG_HTTP_TIMEOUT_SECONDS: float = 30.0

    # Rate limiting / retries (shared by every task talking to BGG)
    BGG_MIN_SECONDS_BETWEEN_REQUESTS: float = 2.0
    BGG_MAX_IDS_PER_REQUEST: int = 20
    BGG_MAX_RETRY_ATTEMPTS: int = 5
    BGG_RETRY_AFTER_202_SECONDS: float = 3.0
    BGG_EXPONENTIAL_BACKOFF_MAX_SECONDS: float = 60.0
    BGG_RATE_LIMIT_WAIT_TIMEOUT_SECONDS: float = 300.0
    BGG_PLAYS_PAGE_SIZE: int = 100

    BGG_CATALOG_STALE_MONTHS: int = 3
    SYNC_ERROR_MAX_LENGTH: int = 500

    # Job substrate
    JOB_MAX_ATTEMPTS: int = 5
    JOB_BACKOFF_SECONDS: float = 3.0
    JOB_TIMEOUT_SECONDS: float = 600.0
    WORKER_CONCURRENCY: int = 4

    # Outbound credentials
    BGG_CREDENTIAL_PRECEDENCE: Literal["play", "user"] = "play"
    BGG_GENERIC_USERNAME: Optional[str] = None
    BGG_GENERIC_PASSWORD: Optional[str] = None
    CREDENTIALS_ENCRYPTION_KEY: Optional[str] = None
    BGG_SESSION_CACHE_TTL_SECONDS: int = 28800  # 8h
    REDIS_URL: Optional[str] = None

    # Scheduler
    PLAYS_SYNC_HOURS: int = 6
    PLAYS_SYNC_DAYS: int = 30
    CATALOG_REFRESH_HOURS: int = 24
    PENDING_SUBMISSION_MINUTES: int = 15


settings = Settings()
