"""API request/response schemas for the payment endpoints."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CustomerInfo(BaseModel):
    """Method-specific customer details; which fields are needed depends on the method."""

    model_config = ConfigDict(extra="allow")

    phone: str | None = None
    payment_method_id: str | None = None
    email: str | None = None
    name: str | None = None
    delivery_address: dict[str, Any] | str | None = None
    country: str = "CI"


class PaymentRequest(BaseModel):
    """Payment payload accepted from the storefront.

    Amount and method rules are enforced by the orchestrator so that every
    rejection renders through the same error shape.
    """

    order_id: str = Field(min_length=1)
    amount: int
    currency: str = Field(default="XOF", min_length=3, max_length=3)
    payment_method: str | None = None
    customer_info: CustomerInfo = Field(default_factory=CustomerInfo)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentResult(BaseModel):
    success: bool
    payment_id: str
    order_id: str
    status: str
    processor_reference: str | None = None
    next_action: dict[str, Any] | None = None
    verification_required: bool = False
    message: str = ""


class PaymentStatusResponse(BaseModel):
    payment_id: str
    order_id: str
    status: str
    payment_method: str
    amount: int
    currency: str
    processor_reference: str | None = None
    refund_status: str = "none"
    total_refunded: int = 0
    error_message: str | None = None


class RefundRequest(BaseModel):
    """`amount` defaults to the remaining refundable balance."""

    amount: int | None = None
    reason: str = "Refund request"


class RefundResult(BaseModel):
    success: bool
    refund_id: str
    payment_id: str
    amount: int
    status: str
    processor_reference: str | None = None
    refund_status: str
    total_refunded: int
    message: str = ""


class WebhookAck(BaseModel):
    received: bool = True


class PaymentMethodsResponse(BaseModel):
    country: str
    currency: str
    amount: int
    default_method: str
    methods: list[dict[str, Any]]
