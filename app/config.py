"""Application configuration via environment variables."""

from typing import Optional

from pydantic_settings import BaseSettings

PESAPAL_SANDBOX_URL = "https://cybqa.pesapal.com/pesapalv3"
PESAPAL_PRODUCTION_URL = "https://pay.pesapal.com/v3"


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./payments.db"
    log_level: str = "INFO"

    # Gateway selection: "pesapal" or "mock" (local development)
    gateway_backend: str = "pesapal"
    pesapal_environment: str = "sandbox"
    pesapal_base_url: Optional[str] = None
    pesapal_consumer_key: str = ""
    pesapal_consumer_secret: str = ""
    pesapal_ipn_id: str = ""  # Pre-registered IPN (notification channel) id

    credential_cache_seconds: int = 240  # Kept below the gateway's real token TTL
    auth_timeout_seconds: float = 10.0
    submit_timeout_seconds: float = 15.0
    status_timeout_seconds: float = 10.0

    base_url: str = "http://localhost:3001"  # Public URL of this service
    frontend_url: str = "http://localhost:3000"  # Landing pages
    default_currency: str = "KES"
    billing_country_code: str = "KE"
    merchant_reference_prefix: str = "BIPS"

    mock_failure_rate: float = 0.05  # 5% simulated failure rate
    mock_latency_ms: int = 100  # Simulated gateway latency

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def resolved_pesapal_base_url(self) -> str:
        if self.pesapal_base_url:
            return self.pesapal_base_url.rstrip("/")
        if self.pesapal_environment == "production":
            return PESAPAL_PRODUCTION_URL
        return PESAPAL_SANDBOX_URL

    @property
    def callback_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/payments/callback"

    @property
    def cancellation_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/payments/cancel"


settings = Settings()
