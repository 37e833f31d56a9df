"""Central environment-driven settings for the payment service.

The process loads this once at startup. Provider credentials, callback URLs
and infrastructure endpoints are controlled by environment variables (see
`.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "payments"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    idempotency_ttl_seconds: int = 86400

    # Public URLs handed to providers for callbacks and card redirects.
    app_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    provider_timeout_seconds: float = 30.0
    default_country_code: str = "225"
    min_payment_amount: int = 100
    reconcile_interval_seconds: float = 60.0
    reconcile_after_seconds: int = 300

    mtn_money_base_url: str = "https://api.mtn.com/v1"
    mtn_money_api_key: str = ""
    mtn_merchant_code: str = ""
    mtn_secret_key: str = ""
    mtn_webhook_secret: str = ""

    orange_money_base_url: str = "https://api.orange.com/orangemoney"
    orange_money_api_key: str = ""
    orange_merchant_code: str = ""
    orange_secret_key: str = ""
    orange_webhook_secret: str = ""

    wave_base_url: str = "https://api.wave.com/v1"
    wave_api_key: str = ""
    wave_merchant_code: str = ""
    wave_secret_key: str = ""
    wave_webhook_secret: str = ""

    stripe_base_url: str = "https://api.stripe.com"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_version: str = "2023-10-16"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
