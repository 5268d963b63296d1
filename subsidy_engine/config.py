"""Subsidy Engine — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class SubsidySettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # ── PostgreSQL (Project / Milestone ledger) ────────────────
    postgres_user: str = "subsidy"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "subsidy_ledger"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    ledger_database_url: str = ""

    @property
    def database_url_sync(self) -> str:
        if self.ledger_database_url:
            return self.ledger_database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── Payment rails ──────────────────────────────────────────
    default_currency: str = "USD"

    ach_api_url: str = "https://api.ach.com/v1"
    ach_api_key: str = ""
    ach_timeout_seconds: float = 45.0

    card_api_url: str = "https://api.stripe.com/v1"
    card_api_key: str = ""
    card_timeout_seconds: float = 30.0

    wire_api_url: str = "https://api.wire.com/v1"
    wire_api_key: str = ""
    wire_timeout_seconds: float = 60.0

    crypto_api_url: str = "https://api.crypto.com/v1"
    crypto_api_key: str = ""
    crypto_timeout_seconds: float = 30.0

    # ── Payment retry ──────────────────────────────────────────
    payment_max_attempts: int = 3
    payment_base_delay_seconds: float = 1.0
    payment_max_delay_seconds: float = 30.0
    deferred_retry_delay_seconds: int = 300
    deferred_retry_max_attempts: int = 3

    # ── Measurement sources ────────────────────────────────────
    iot_platform_url: str = "https://iot.greenhydrogen.com"
    iot_platform_api_key: str = ""
    iot_timeout_seconds: float = 15.0

    government_api_url: str = "https://data.energy.gov"
    government_api_key: str = ""
    government_timeout_seconds: float = 30.0

    third_party_verifier_url: str = "https://api.verifier.com"
    third_party_api_key: str = ""
    third_party_timeout_seconds: float = 20.0

    aggregation_cache_ttl_seconds: int = 3600

    # ── Service loop ───────────────────────────────────────────
    retry_poll_seconds: int = 60
    bootstrap_government_id: str = ""

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = SubsidySettings()
