from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from pydantic import field_validator


class Settings(BaseSettings):
    # Database settings
    DATABASE_URL: Optional[str] = None  # Overrides the POSTGRES_* parts (e.g. sqlite for tests)
    POSTGRES_USER: str = 'jewelry_user'
    POSTGRES_PASSWORD: str = 'jewelry_pass'
    POSTGRES_DB: str = 'jewelry_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432

    # Redis settings (broker, result backend and single-flight locks)
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # Business identity
    BUSINESS_NAME: str = 'Jewelry ERP'
    DEFAULT_LANGUAGE: str = 'en'

    # Queue names
    QUEUE_INVOICES: str = 'invoices'
    QUEUE_BATCHES: str = 'batches'
    QUEUE_COMMUNICATIONS: str = 'communications'

    # Recurring invoice cycle
    RECURRING_CYCLE_HOUR: int = 6
    RECURRING_CYCLE_MINUTE: int = 0
    RECURRING_JOB_TIMEOUT: int = 300  # seconds
    RECURRING_MAX_WORKERS: int = 1
    INVOICE_DUE_DAYS: int = 30
    NOTIFICATION_DELAY_SECONDS: int = 5 * 60

    # Batch operations
    BATCH_RETRY_DELAYS: List[int] = [30, 60, 120]
    BATCH_MAX_RETRIES: int = 3
    BATCH_DEADLINE_SECONDS: int = 2 * 60 * 60
    BATCH_JOB_TIMEOUT: int = 30 * 60
    BATCH_EXPIRY_SWEEP_SECONDS: float = 600.0

    # External collaborators
    COLLABORATOR_TIMEOUT_SECONDS: float = 5 * 60
    DOCUMENTS_DIR: str = "storage/invoices"

    # Locks outlive the job timeout by this margin
    LOCK_TTL_SLACK_SECONDS: int = 60

    # Email settings
    EMAIL_SMTP_SERVER: str = 'smtp.gmail.com'
    EMAIL_SMTP_PORT: int = 587
    EMAIL_USE_TLS: bool = True
    EMAIL_USERNAME: str = ''
    EMAIL_PASSWORD: str = ''
    EMAIL_FROM: str = ''
    EMAIL_FROM_NAME: str = 'Jewelry ERP'

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("EMAIL_USE_TLS", mode="before")
    @classmethod
    def parse_email_tls(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("BATCH_RETRY_DELAYS")
    @classmethod
    def validate_retry_delays(cls, v):
        if any(delay < 0 for delay in v):
            raise ValueError("BATCH_RETRY_DELAYS must not contain negative delays")
        return v

settings = Settings()
