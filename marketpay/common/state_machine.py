"""Canonical payment statuses and the transitions the orchestrator enforces.

Every provider signal, whether it comes back synchronously from `pay`, from a
status poll or from a webhook, goes through `map_provider_status` so that all
three paths agree on what a provider status means.
"""

INITIATED = "initiated"
PENDING = "pending"
PROCESSING = "processing"
REQUIRES_ACTION = "requires_action"
REQUIRES_CONFIRMATION = "requires_confirmation"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"
PENDING_CASH = "pending_cash"

CANONICAL_STATUS_MAP: dict[str, str] = {
    "pending": PENDING,
    "processing": PROCESSING,
    "succeeded": SUCCEEDED,
    "failed": FAILED,
    "cancelled": CANCELLED,
    "requires_action": REQUIRES_ACTION,
    "requires_confirmation": REQUIRES_CONFIRMATION,
}

IN_FLIGHT_STATUSES = {PENDING, PROCESSING, REQUIRES_ACTION, REQUIRES_CONFIRMATION}
# `refunded` never comes from a provider; it is kept for rows written before
# refunds were tracked in `refund_status`.
TERMINAL_STATUSES = {SUCCEEDED, FAILED, CANCELLED, REFUNDED}

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    INITIATED: IN_FLIGHT_STATUSES | {SUCCEEDED, FAILED, CANCELLED, PENDING_CASH},
    PENDING: (IN_FLIGHT_STATUSES - {PENDING}) | {SUCCEEDED, FAILED, CANCELLED},
    PROCESSING: (IN_FLIGHT_STATUSES - {PROCESSING}) | {SUCCEEDED, FAILED, CANCELLED},
    REQUIRES_ACTION: (IN_FLIGHT_STATUSES - {REQUIRES_ACTION}) | {SUCCEEDED, FAILED, CANCELLED},
    REQUIRES_CONFIRMATION: (IN_FLIGHT_STATUSES - {REQUIRES_CONFIRMATION}) | {SUCCEEDED, FAILED, CANCELLED},
    PENDING_CASH: {SUCCEEDED, FAILED, CANCELLED},
    SUCCEEDED: set(),
    FAILED: set(),
    CANCELLED: set(),
    REFUNDED: set(),
}


class InvalidTransition(ValueError):
    """Raised when a status change would move a payment backwards."""


def map_provider_status(provider_status: str | None) -> str:
    """Translate a provider status into the canonical vocabulary.

    Unknown or missing statuses resolve to `failed`; an unrecognized signal is
    never read as success.
    """

    if not provider_status:
        return FAILED
    return CANONICAL_STATUS_MAP.get(provider_status.strip().lower(), FAILED)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(current, new):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
