"""Error taxonomy surfaced to API callers.

Adapters translate provider failures into these types before they cross the
adapter boundary; the API layer renders every `PaymentError` as
`{"success": false, "message": ..., "code": ...}` with `status_code`.
"""

from typing import Any


class PaymentError(Exception):
    """Base class for errors with a caller-facing status code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code


class ValidationError(PaymentError):
    """Malformed or missing caller input. Never retried."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(PaymentError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidSignatureError(PaymentError):
    status_code = 401
    code = "INVALID_SIGNATURE"


class AuthenticationError(PaymentError):
    status_code = 401
    code = "UNAUTHORIZED"


class InternalError(PaymentError):
    """Unmapped failure. The message shown to callers stays generic."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "Payment could not be processed", detail: str | None = None) -> None:
        super().__init__(message)
        self.detail = detail


class ProviderError(PaymentError):
    """Failure reported by (or while talking to) a payment provider.

    `status_code` carries the http status hint from the provider error map.
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        provider: str,
        code: str,
        message: str,
        status_code: int = 500,
        raw: Any = None,
    ) -> None:
        super().__init__(message, status_code=status_code, code=code)
        self.provider = provider
        self.raw = raw


class ProviderUnavailableError(ProviderError):
    """Network failure, timeout or throttling. Retryable by the caller.

    `ambiguous` is set when the request may have reached the provider (read
    timeout), so the outcome is unknown until a webhook or poll resolves it.
    """

    def __init__(
        self,
        provider: str,
        code: str,
        message: str,
        status_code: int = 503,
        raw: Any = None,
        ambiguous: bool = False,
    ) -> None:
        super().__init__(provider, code, message, status_code=status_code, raw=raw)
        self.ambiguous = ambiguous


class ProviderDeclinedError(ProviderError):
    """Business decline (insufficient funds, declined card). Terminal."""

    def __init__(self, provider: str, code: str, message: str, status_code: int = 402, raw: Any = None) -> None:
        super().__init__(provider, code, message, status_code=status_code, raw=raw)


UNAVAILABLE_STATUS_HINTS = {408, 429, 502, 503, 504}


def provider_error(provider: str, code: str, message: str, status_code: int, raw: Any = None) -> ProviderError:
    """Build the typed error matching an error-map entry's status hint."""

    if status_code == 402:
        return ProviderDeclinedError(provider, code, message, raw=raw)
    if status_code in UNAVAILABLE_STATUS_HINTS:
        return ProviderUnavailableError(provider, code, message, status_code=status_code, raw=raw)
    return ProviderError(provider, code, message, status_code=status_code, raw=raw)


class StateConflictError(PaymentError):
    """A concurrent writer changed the payment between read and write."""

    status_code = 409
    code = "STATE_CONFLICT"


class DuplicatePaymentError(PaymentError):
    """The order already has a payment that is live or succeeded."""

    status_code = 409
    code = "DUPLICATE_PAYMENT"
