from pathlib import Path
from typing import List, Tuple, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Database
    DB_URL: str = "postgresql://postgres:password@db:5432/tourdb"
    DB_ECHO: bool = False  # Set to True for SQL query logging in development

    # Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Number of connections to maintain in pool
    DB_MAX_OVERFLOW: int = 20  # Maximum overflow connections beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Timeout in seconds to get connection from pool
    DB_POOL_RECYCLE: int = 3600  # Recycle connections after 1 hour
    DB_BUSY_TIMEOUT: float = 30.0  # SQLite only: seconds a writer waits for the lock

    # Booking rules
    TAX_RATE: float = 0.10
    DEFAULT_CURRENCY: str = "USD"
    # days_before:percent pairs, evaluated from the longest lead time down
    REFUND_TIERS: Union[List[Tuple[int, int]], str] = [(30, 100), (14, 75), (7, 50), (3, 25)]
    MAX_WRITE_RETRIES: int = 3

    # Review rules
    REVIEW_EDIT_WINDOW_DAYS: int = 30
    REVIEW_REPORT_THRESHOLD: int = 5

    # Notifications
    NOTIFICATION_WEBHOOK_URL: str = ""
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    # Rate Limiting
    ENABLE_RATE_LIMITING: bool = True
    RATE_LIMIT_WRITE: str = "30/minute"
    RATE_LIMIT_READ: str = "120/minute"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "app.log"

    # CORS
    ALLOWED_ORIGINS: Union[list, str] = ["http://localhost:3000", "http://localhost:3001"]

    @field_validator('ALLOWED_ORIGINS', mode='before')
    @classmethod
    def parse_allowed_origins(cls, v):
        """Parse ALLOWED_ORIGINS from comma-separated string or list"""
        if isinstance(v, str):
            # Split by comma and strip whitespace
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator('REFUND_TIERS', mode='before')
    @classmethod
    def parse_refund_tiers(cls, v):
        """Parse REFUND_TIERS from '30:100,14:75' style strings"""
        if isinstance(v, str):
            tiers = []
            for pair in v.split(','):
                if not pair.strip():
                    continue
                days, percent = pair.split(':')
                tiers.append((int(days), int(percent)))
            v = tiers
        tiers = sorted(((int(d), int(p)) for d, p in v), key=lambda t: t[0], reverse=True)
        for days, percent in tiers:
            if days < 0 or not 0 <= percent <= 100:
                raise ValueError(f"Invalid refund tier {days}:{percent}")
        return tiers

    # Security
    JWT_SECRET: str = "change_me"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Password Security
    PASSWORD_MIN_LENGTH: int = 6
    PASSWORD_REQUIRE_UPPERCASE: bool = True
    PASSWORD_REQUIRE_NUMBER: bool = True

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).parents[3] / ".env"),
        env_file_encoding="utf-8",
    )
