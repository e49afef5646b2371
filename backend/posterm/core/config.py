"""Application configuration settings."""
from __future__ import annotations
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "POS Terminal Core"
    DEBUG: bool = False
    VERSION: str = "1.0.0"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./posterm.db"

    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:3030",
        "http://localhost:5173",
        "http://127.0.0.1:3030",
    ]

    # Money (amounts are in kopecks)
    DEFAULT_CURRENCY: str = "RUB"
    SUPPORTED_CURRENCIES: list[str] = ["RUB"]
    MAX_AMOUNT: int = 10_000_000            # 100 000 RUB
    DEFAULT_DETECTED_AMOUNT: int = 1000     # terminal-initiated taps without an amount

    # Bank simulator
    BANK_SUCCESS_RATE: float = 0.9
    BANK_RESPONSE_DELAY_MS: int = 500
    BANK_CAPTURE_DELAY_MS: int = 200
    BANK_VOID_DELAY_MS: int = 300
    BANK_CALL_TIMEOUT_SECONDS: float = 10.0

    # Terminal display
    ERROR_DISPLAY_TIMEOUT_MS: int = 5000

    # QR payloads (signed, valid for QR_TTL_SECONDS after the session is created)
    QR_SIGNING_SECRET: str = "posterm-qr-secret-change-in-production"
    QR_TTL_SECONDS: int = 300


@lru_cache
def get_settings() -> Settings:
    return Settings()
