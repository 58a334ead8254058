"""
Configuration settings for the prepaid meter ledger.

Uses Pydantic Settings to load environment variables for the unit rate,
the consumption simulator, the Daraja gateway and logging.
"""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")
    frontend_url: str = Field("http://localhost:5173", alias="FRONTEND_URL")
    api_key: str = Field("default-key", alias="API_KEY")

    # Units
    ksh_per_unit: Decimal = Field(Decimal("25"), alias="KSH_PER_UNIT", gt=0)

    # Consumption simulator
    consumption_rate: Decimal = Field(Decimal("0.1"), alias="CONSUMPTION_RATE", gt=0)
    consumption_interval_seconds: float = Field(15.0, alias="CONSUMPTION_INTERVAL_SECONDS", gt=0)
    consumption_enabled: bool = Field(False, alias="CONSUMPTION_ENABLED")

    # Daraja gateway
    daraja_base_url: str = Field("https://sandbox.safaricom.co.ke", alias="DARAJA_BASE_URL")
    daraja_consumer_key: str = Field("", alias="DARAJA_CONSUMER_KEY")
    daraja_consumer_secret: str = Field("", alias="DARAJA_CONSUMER_SECRET")
    daraja_shortcode: str = Field("", alias="DARAJA_SHORTCODE")
    daraja_test_msisdn: str = Field("", alias="DARAJA_TEST_MSISDN")
    daraja_timeout_seconds: float = Field(30.0, alias="DARAJA_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "get_settings"]
