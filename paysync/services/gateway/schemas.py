"""Gateway request/result schemas and the gateway-to-internal status table."""

from typing import Any, Protocol

from pydantic import BaseModel, Field

from paysync.common.state_machine import PaymentStatus, RefundStatus


class ChargeRequest(BaseModel):
    idempotency_key: str = Field(min_length=5)
    amount_minor: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    customer_email: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    payment_reference: str = Field(min_length=1)
    idempotency_key: str = Field(min_length=5)
    amount_minor: int = Field(gt=0)


class GatewayResult(BaseModel):
    """Normalized answer of any gateway capability."""

    success: bool
    reference: str | None = None
    status: str
    raw_payload: dict[str, Any] = Field(default_factory=dict)


class GatewayTransport(Protocol):
    """Raw, unprotected gateway capabilities; `GatewayClient` wraps each one."""

    async def charge(self, request: ChargeRequest) -> GatewayResult: ...

    async def refund(self, request: RefundRequest) -> GatewayResult: ...

    async def query_status(self, reference: str) -> GatewayResult: ...


GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PENDING,
    "ongoing": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "authorized": PaymentStatus.AUTHORIZED,
    "requires_capture": PaymentStatus.AUTHORIZED,
    "success": PaymentStatus.SUCCEEDED,
    "succeeded": PaymentStatus.SUCCEEDED,
    "failed": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
    "abandoned": PaymentStatus.CANCELLED,
    "reversed": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "partially_refunded": PaymentStatus.PARTIALLY_REFUNDED,
}


REFUND_STATUS_MAP: dict[str, RefundStatus] = {
    "pending": RefundStatus.PENDING,
    "processing": RefundStatus.PENDING,
    "queued": RefundStatus.PENDING,
    "processed": RefundStatus.SUCCEEDED,
    "success": RefundStatus.SUCCEEDED,
    "succeeded": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
    "declined": RefundStatus.FAILED,
}


def map_gateway_status(raw_status: str | None) -> PaymentStatus:
    """Translate a gateway wire status; unknown values stay PENDING."""

    if not raw_status:
        return PaymentStatus.PENDING
    return GATEWAY_STATUS_MAP.get(raw_status.strip().lower(), PaymentStatus.PENDING)


def map_refund_status(raw_status: str | None) -> RefundStatus:
    if not raw_status:
        return RefundStatus.PENDING
    return REFUND_STATUS_MAP.get(raw_status.strip().lower(), RefundStatus.PENDING)
