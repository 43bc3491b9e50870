"""
config.py — UMID Registry Global Configuration
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import List


class Settings(BaseSettings):

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    APP_NAME: str = "UMID Registry"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # API Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    ALLOWED_HOSTS: List[str] = ["umid.example.org", "*.umid.example.org"]   # enforced in production only

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./umid.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Cryptography
    ENCRYPTION_KEY: str = ""                 # Fernet key for TOTP secrets at rest
    JWT_SECRET_KEY: str = "change-me-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRY_MINUTES: int = 30

    # TOTP
    TOTP_ISSUER: str = "UMID Registry"
    TOTP_SECRET_BYTES: int = 20              # 160 bits
    TOTP_DIGITS: int = 6
    TOTP_PERIOD_SECONDS: int = 30
    TOTP_ALGORITHM: str = "SHA1"
    TOTP_EXPIRED_LOOKBACK_STEPS: int = 10
    DEFAULT_TOLERANCE_STEPS: int = 1
    QR_ROTATION_SECONDS: int = 300

    # Access policy
    ADMIN_ROLES: List[str] = ["admin", "hospital_management"]
    CLINICAL_ROLES: List[str] = ["doctor", "nurse", "lab"]
    ACCESS_LOG_DEFAULT_LIMIT: int = 20
    ACCESS_LOG_MAX_LIMIT: int = 100
    SCAN_HISTORY_DEFAULT_LIMIT: int = 50
    ADMIN_LIST_MAX_LIMIT: int = 200

    # Failed-verification throttle, keyed by (umid_id, accessor_id)
    RATE_LIMIT_MAX_FAILURES: int = 5
    RATE_LIMIT_WINDOW_SECONDS: int = 300

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "umid.log"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
