from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./billflow.db"

    # Database Connection Pool Settings (ignored for SQLite)
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes
    SQLITE_BUSY_TIMEOUT: int = 30  # Seconds a SQLite writer waits on a locked database

    # App Settings
    APP_NAME: str = "Billflow Invoicing API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Invoice Defaults
    DEFAULT_CURRENCY: str = "TWD"
    DEFAULT_TAX_RATE: Decimal = Decimal("0.05")
    DEFAULT_PAYMENT_TERMS: int = 14  # Days between issue date and due date
    DEFAULT_LANGUAGE: str = "en"

    # Invoice Numbering
    INVOICE_NUMBER_PADDING: int = 4  # INV-2026-0042
    ALLOCATOR_MAX_RETRIES: int = 3  # Attempts after the first failed allocation
    ALLOCATOR_BACKOFF_SECONDS: float = 0.05  # Doubled on every retry

    # Reject fixed discounts larger than the subtotal instead of clamping them
    REJECT_EXCESS_FIXED_DISCOUNT: bool = False

    # Background Jobs
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "Asia/Taipei"
    OVERDUE_SWEEP_HOUR: int = 1
    OVERDUE_SWEEP_MINUTE: int = 0

    # Email/SMTP Settings
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""  # Sender email (defaults to SMTP_USER)
    SMTP_FROM_NAME: str = "Billflow"
    SMTP_TIMEOUT: int = 10

    # Frontend URL for email links
    FRONTEND_URL: str = "http://localhost:3000"

    # Optional override for the invoice document renderer's footer
    DOCUMENT_FOOTER: Optional[str] = None

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('DEFAULT_CURRENCY', mode='before')
    @classmethod
    def normalize_currency(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return list(self.CORS_ORIGINS)

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
