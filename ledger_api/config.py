"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. The .env file is gitignored; .env.example provides a safe template.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from ledger_api.config import settings
    print(settings.PENDING_TIMEOUT_SECONDS)
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the Ledger Transfer API.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Used to sign JWT tokens
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "Ledger Transfer API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # --- Database ---
    # SQLite for local use; swap to a postgresql+asyncpg URL for production
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/ledger.db"

    # --- Authentication ---
    # REQUIRED: No default — forces the developer to set a real secret
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- Money ---
    # ISO 4217 code -> number of minor-unit digits. Amounts are stored as
    # integers in minor units, so every supported currency needs an exponent.
    SUPPORTED_CURRENCIES: dict[str, int] = {
        "USD": 2,
        "EUR": 2,
        "GBP": 2,
        "GHS": 2,
        "NGN": 2,
        "KES": 2,
    }
    # Currency of the default account opened at signup
    DEFAULT_CURRENCY: str = "USD"

    # --- Idempotency ---
    # How long a replayed request waits for an in-flight original to finish
    IDEMPOTENCY_WAIT_SECONDS: float = 2.0
    IDEMPOTENCY_POLL_INTERVAL_SECONDS: float = 0.1
    # Idempotency records older than this are purged by the reconciliation sweep
    IDEMPOTENCY_RETENTION_HOURS: int = 72

    # --- Reconciliation ---
    # PENDING ledger rows older than this are finalized to FAILED by the sweep
    PENDING_TIMEOUT_SECONDS: int = 300

    # --- Payment requests ---
    # An unpaid request expires this long after it was created
    PAYMENT_REQUEST_EXPIRY_HOURS: int = 24

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    # Optional path of a rotating log file; console-only when unset
    LOG_FILE: str | None = None

    # --- CORS ---
    # Origins allowed to make cross-origin requests (frontend URLs)
    ALLOWED_ORIGINS: list[str] = ["http://localhost:8081"]


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
