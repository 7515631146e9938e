"""
Pricing Engine — Configuration
Centralises all environment-driven settings with sensible defaults.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All config sourced from environment / .env file."""

    # ── Billing database ─────────────────────────────────────────────────
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "billing"
    DB_USER: str = "billing"
    DB_PASSWORD: str = "changeme"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    # ── Pricing defaults ─────────────────────────────────────────────────
    DEFAULT_CURRENCY: str = "TRY"
    DEFAULT_TAX_RATE: Decimal = Decimal("18")   # percent, applied when a contract has none
    DEFAULT_PAYMENT_TERMS_DAYS: int = 30

    # ── Invoice numbering ────────────────────────────────────────────────
    NUMBERING_MAX_ATTEMPTS: int = 3
    NUMBERING_RETRY_DELAY: float = 0.05   # seconds, doubled per attempt

    # ── Store retries (transient failures only) ──────────────────────────
    PERSISTENCE_MAX_ATTEMPTS: int = 3
    PERSISTENCE_RETRY_DELAY: float = 0.1

    # ── Batch invoicing ──────────────────────────────────────────────────
    BATCH_MAX_CONCURRENCY: int = 8   # contracts invoiced in parallel

    # ── Invoice branding (PDF) ───────────────────────────────────────────
    BRAND_COMPANY: str = "Logistics Billing Services"
    BRAND_TAGLINE: str = "Usage-based logistics billing"
    BRAND_EMAIL: str = "billing@example.com"
    BRAND_WEBSITE: str = "www.example.com"

    # ── Observability ────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
