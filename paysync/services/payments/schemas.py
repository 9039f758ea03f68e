"""API request/response schemas for payment endpoints."""

from pydantic import BaseModel, Field


class RefundCreateRequest(BaseModel):
    amount_minor: int = Field(gt=0)
    idempotency_key: str = Field(min_length=5)


class PaymentResponse(BaseModel):
    """Current view of one payment returned to clients."""

    payment_id: str
    status: str
    amount_minor: int
    currency: str
    gateway_reference: str | None = None
    state_version: int


class RefundResponse(BaseModel):
    refund_id: str
    payment_id: str
    status: str
    amount_minor: int
    payment_status: str


class HistoryEntry(BaseModel):
    from_status: str | None
    to_status: str
    source: str
    reason: str | None = None
    event_id: str | None = None
