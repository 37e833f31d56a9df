"""Provider selection and static payment-method eligibility.

`Provider` is the closed set of integrated providers. `ProviderRegistry`
must be given exactly one adapter per member, so a provider added to the
enum without an adapter fails at startup instead of at the first payment.
"""

from enum import Enum
from typing import Any

import httpx
import stripe

from marketpay.common.config import CommonSettings
from marketpay.services.providers.base import ProviderAdapter, ProviderConfig
from marketpay.services.providers.mtn import MTNMoneyAdapter
from marketpay.services.providers.orange import OrangeMoneyAdapter
from marketpay.services.providers.stripe_card import StripeCardAdapter
from marketpay.services.providers.wave import WaveAdapter


class Provider(str, Enum):
    MTN_MONEY = "mtn_money"
    ORANGE_MONEY = "orange_money"
    WAVE = "wave"
    STRIPE = "stripe"


class PaymentMethod(str, Enum):
    CASH = "cash"
    MTN_MONEY = "mtn_money"
    ORANGE_MONEY = "orange_money"
    WAVE = "wave"
    STRIPE = "stripe"
    VISA = "visa"
    MASTERCARD = "mastercard"


MOBILE_MONEY_METHODS = {PaymentMethod.MTN_MONEY, PaymentMethod.ORANGE_MONEY, PaymentMethod.WAVE}
CARD_METHODS = {PaymentMethod.STRIPE, PaymentMethod.VISA, PaymentMethod.MASTERCARD}


def parse_method(payment_method: str | None) -> PaymentMethod | None:
    try:
        return PaymentMethod(payment_method)
    except ValueError:
        return None


def is_mobile_money(payment_method: str | None) -> bool:
    return parse_method(payment_method) in MOBILE_MONEY_METHODS


def is_card(payment_method: str | None) -> bool:
    return parse_method(payment_method) in CARD_METHODS


def provider_for_method(payment_method: str | None) -> Provider | None:
    """Resolve which provider charges a payment method; `None` for cash/unknown."""

    method = parse_method(payment_method)
    if method is None or method is PaymentMethod.CASH:
        return None
    if method is PaymentMethod.MTN_MONEY:
        return Provider.MTN_MONEY
    if method is PaymentMethod.ORANGE_MONEY:
        return Provider.ORANGE_MONEY
    if method is PaymentMethod.WAVE:
        return Provider.WAVE
    if method in CARD_METHODS:
        return Provider.STRIPE
    raise AssertionError(f"unhandled payment method {method!r}")


def methods_for_provider(provider: Provider | str) -> set[str]:
    return {method.value for method in PaymentMethod if provider_for_method(method.value) == Provider(provider)}


# Eligibility rules per method, from the storefront checkout configuration.
PAYMENT_METHOD_RULES: list[dict[str, Any]] = [
    {
        "id": "cash",
        "name": "Cash on delivery",
        "type": "cash",
        "countries": None,
        "currencies": None,
        "fees": 0,
        "limits": {"min": 0, "max": 1_000_000},
    },
    {
        "id": "mtn_money",
        "name": "MTN Money",
        "type": "mobile_money",
        "operator": "MTN",
        "countries": {"CI"},
        "currencies": {"XOF"},
        "fees": 1.5,
        "limits": {"min": 100, "max": 500_000},
    },
    {
        "id": "orange_money",
        "name": "Orange Money",
        "type": "mobile_money",
        "operator": "Orange",
        "countries": {"CI", "SN", "CM"},
        "currencies": {"XOF", "XAF"},
        "fees": 1.5,
        "limits": {"min": 100, "max": 500_000},
    },
    {
        "id": "wave",
        "name": "Wave",
        "type": "mobile_money",
        "operator": "Wave",
        "countries": {"CI", "SN"},
        "currencies": {"XOF"},
        "fees": 1,
        "limits": {"min": 100, "max": 1_000_000},
    },
    {
        "id": "stripe",
        "name": "Bank card",
        "type": "card",
        "processors": ["Visa", "Mastercard"],
        "countries": None,
        "currencies": {"XOF", "XAF", "EUR", "USD"},
        "fees": 2.9,
        "limits": {"min": 100, "max": 10_000_000},
    },
]

DEFAULT_METHOD_BY_COUNTRY = {"CI": "cash", "SN": "cash", "CM": "cash", "FR": "stripe", "US": "stripe"}


def list_available_methods(country: str = "CI", amount: int = 0, currency: str = "XOF") -> list[dict[str, Any]]:
    """Return the methods whose static country/currency/amount rules allow this checkout."""

    country = country.upper()
    currency = currency.upper()
    methods = []
    for rule in PAYMENT_METHOD_RULES:
        if rule["countries"] is not None and country not in rule["countries"]:
            continue
        if rule["currencies"] is not None and currency not in rule["currencies"]:
            continue
        limits = rule["limits"]
        if not limits["min"] <= amount <= limits["max"]:
            continue
        method = {key: value for key, value in rule.items() if key not in {"countries", "currencies"}}
        method["available"] = True
        methods.append(method)
    return methods


def default_method(country: str) -> str:
    return DEFAULT_METHOD_BY_COUNTRY.get(country.upper(), "cash")


class ProviderRegistry:
    """Process-wide adapter set, built once at the composition root."""

    def __init__(self, adapters: dict[Provider, ProviderAdapter]) -> None:
        missing = [provider.value for provider in Provider if provider not in adapters]
        if missing:
            raise ValueError(f"missing adapters for providers: {', '.join(missing)}")
        self._adapters = dict(adapters)

    def get(self, provider: Provider | str) -> ProviderAdapter | None:
        try:
            return self._adapters[Provider(provider)]
        except ValueError:
            return None

    def select(self, payment_method: str | None, currency: str = "XOF", country: str | None = None) -> ProviderAdapter | None:
        """Pick the adapter for a payment method, or `None` (cash and unsupported methods)."""

        provider = provider_for_method(payment_method)
        if provider is None:
            return None
        return self._adapters[provider]

    def all(self) -> list[ProviderAdapter]:
        return [self._adapters[provider] for provider in Provider]


def build_registry(
    settings: CommonSettings,
    transport: httpx.AsyncBaseTransport | None = None,
    stripe_client: stripe.StripeClient | None = None,
) -> ProviderRegistry:
    """Construct every adapter from settings.

    `transport` replaces the HTTP transport of the mobile-money adapters and
    `stripe_client` the SDK client of the card adapter.
    """

    timeout = settings.provider_timeout_seconds
    country_code = settings.default_country_code
    return ProviderRegistry(
        {
            Provider.MTN_MONEY: MTNMoneyAdapter(
                ProviderConfig(
                    base_url=settings.mtn_money_base_url,
                    api_key=settings.mtn_money_api_key,
                    merchant_code=settings.mtn_merchant_code,
                    secret_key=settings.mtn_secret_key,
                    webhook_secret=settings.mtn_webhook_secret,
                    timeout_seconds=timeout,
                    default_country_code=country_code,
                ),
                transport=transport,
            ),
            Provider.ORANGE_MONEY: OrangeMoneyAdapter(
                ProviderConfig(
                    base_url=settings.orange_money_base_url,
                    api_key=settings.orange_money_api_key,
                    merchant_code=settings.orange_merchant_code,
                    secret_key=settings.orange_secret_key,
                    webhook_secret=settings.orange_webhook_secret,
                    timeout_seconds=timeout,
                    default_country_code=country_code,
                ),
                transport=transport,
            ),
            Provider.WAVE: WaveAdapter(
                ProviderConfig(
                    base_url=settings.wave_base_url,
                    api_key=settings.wave_api_key,
                    merchant_code=settings.wave_merchant_code,
                    secret_key=settings.wave_secret_key,
                    webhook_secret=settings.wave_webhook_secret,
                    timeout_seconds=timeout,
                    default_country_code=country_code,
                ),
                transport=transport,
            ),
            Provider.STRIPE: StripeCardAdapter(
                ProviderConfig(
                    base_url=settings.stripe_base_url,
                    secret_key=settings.stripe_secret_key,
                    webhook_secret=settings.stripe_webhook_secret,
                    timeout_seconds=timeout,
                    api_version=settings.stripe_api_version,
                ),
                client=stripe_client,
            ),
        }
    )
