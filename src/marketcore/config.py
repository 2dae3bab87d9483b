"""Runtime configuration for marketcore.

Values come from the environment (or a ``.env`` file in the working
directory). Field names map to upper-case variables, e.g. ``database_url``
reads ``DATABASE_URL``.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: Literal["development", "production", "test"] = "development"
    log_level: str = "INFO"
    log_json: bool = False

    database_url: str = "file://./data"

    # Payment gateway
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    gateway_timeout_s: float = 10.0
    currency: str = "INR"

    shipment_webhook_secret: str = ""

    # Bearer tokens
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_ttl_seconds: int = 7 * 24 * 3600

    # Fraud gate
    fraud_ip_limit: int = Field(default=10, ge=1)
    fraud_ip_window_seconds: int = Field(default=24 * 3600, ge=1)
    fraud_user_limit: int = Field(default=5, ge=1)
    fraud_user_window_seconds: int = Field(default=3600, ge=1)

    # Staging and payments
    temp_order_ttl_seconds: int = Field(default=3600, ge=1)
    payment_retry_window_seconds: int = Field(default=30 * 60, ge=1)

    # Catalog
    low_stock_threshold: int = 50
    product_cache_ttl_seconds: float = 60.0

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings (read once)."""
    return Settings()
