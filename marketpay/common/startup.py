"""Startup checks logged once when the payment service boots."""

from marketpay.common.config import CommonSettings
from marketpay.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")

# provider -> settings fields that must be non-empty to take live traffic
PROVIDER_CREDENTIALS = {
    "mtn_money": ("mtn_money_api_key", "mtn_merchant_code", "mtn_webhook_secret"),
    "orange_money": ("orange_money_api_key", "orange_merchant_code", "orange_webhook_secret"),
    "wave": ("wave_api_key", "wave_merchant_code", "wave_webhook_secret"),
    "stripe": ("stripe_secret_key", "stripe_webhook_secret"),
}


def _display(settings: CommonSettings, field: str) -> str:
    value = getattr(settings, field, None)
    if value in (None, ""):
        return "<unset>"
    if any(marker in field for marker in SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def unconfigured_providers(settings: CommonSettings) -> dict[str, list[str]]:
    """Providers missing any credential, with the missing field names."""

    missing: dict[str, list[str]] = {}
    for provider, fields in PROVIDER_CREDENTIALS.items():
        empty = [field for field in fields if not getattr(settings, field)]
        if empty:
            missing[provider] = empty
    return missing


def log_startup_config(settings: CommonSettings, fields: list[str]) -> None:
    """Log selected settings (secrets redacted) and warn about half-configured providers.

    A provider without its webhook secret rejects every webhook, so payments
    through it only settle by polling.
    """

    config = {"service": settings.service_name}
    for field in fields:
        config[field] = _display(settings, field)
    logger.info("startup_config=%s", config)
    for provider, empty in unconfigured_providers(settings).items():
        logger.warning("provider_not_configured provider=%s missing=%s", provider, ",".join(empty))
