"""Normalization of inbound webhook messages into one canonical envelope.

Transports and gateways deliver several wire shapes:

- internal: `{"eventType", "payload", "metadata"}`
- nested internal: `{"payload": {"eventType", "payload"}, "metadata"}`
- Paystack: `{"event", "data"}`
- Stripe-like: `{"id", "type", "data": {"object"}}`

All tolerance for those shapes lives here. Anything downstream only sees a
`WebhookEnvelope`; a message that fits none of the shapes is a
`ValidationError`.
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from paysync.common.config import settings
from paysync.common.errors import ValidationError


class WebhookEventKind(StrEnum):
    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELLED = "payment_cancelled"
    PAYMENT_UPDATED = "payment_updated"
    REFUND_PROCESSED = "refund_processed"
    REFUND_FAILED = "refund_failed"
    REFUND_PENDING = "refund_pending"


WIRE_EVENT_KINDS: dict[str, WebhookEventKind] = {
    "payment_authorized": WebhookEventKind.PAYMENT_AUTHORIZED,
    "charge.authorized": WebhookEventKind.PAYMENT_AUTHORIZED,
    "payment_intent.amount_capturable_updated": WebhookEventKind.PAYMENT_AUTHORIZED,
    "payment_succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
    "charge.success": WebhookEventKind.PAYMENT_SUCCEEDED,
    "charge.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
    "payment_intent.succeeded": WebhookEventKind.PAYMENT_SUCCEEDED,
    "payment_failed": WebhookEventKind.PAYMENT_FAILED,
    "charge.failed": WebhookEventKind.PAYMENT_FAILED,
    "payment_intent.payment_failed": WebhookEventKind.PAYMENT_FAILED,
    "payment_cancelled": WebhookEventKind.PAYMENT_CANCELLED,
    "charge.reversed": WebhookEventKind.PAYMENT_CANCELLED,
    "payment_intent.canceled": WebhookEventKind.PAYMENT_CANCELLED,
    "payment_updated": WebhookEventKind.PAYMENT_UPDATED,
    "charge.pending": WebhookEventKind.PAYMENT_UPDATED,
    "charge.updated": WebhookEventKind.PAYMENT_UPDATED,
    "payment_intent.processing": WebhookEventKind.PAYMENT_UPDATED,
    "refund_processed": WebhookEventKind.REFUND_PROCESSED,
    "refund.processed": WebhookEventKind.REFUND_PROCESSED,
    "refund.succeeded": WebhookEventKind.REFUND_PROCESSED,
    "refund_failed": WebhookEventKind.REFUND_FAILED,
    "refund.failed": WebhookEventKind.REFUND_FAILED,
    "refund_pending": WebhookEventKind.REFUND_PENDING,
    "refund.pending": WebhookEventKind.REFUND_PENDING,
}

REFUND_KINDS = frozenset(
    {WebhookEventKind.REFUND_PROCESSED, WebhookEventKind.REFUND_FAILED, WebhookEventKind.REFUND_PENDING}
)


class WebhookEnvelope(BaseModel):
    """Canonical inbound webhook, whatever shape it arrived in."""

    event_type: WebhookEventKind
    raw_payload: dict[str, Any]
    dedup_key: str
    correlation_id: str
    gateway_event_id: str | None = None
    reference: str | None = None
    idempotency_key: str | None = None
    amount_minor: int | None = None
    status_hint: str | None = None
    refund_key: str | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def parse_message(body: bytes) -> dict[str, Any]:
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"webhook body is not valid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise ValidationError("webhook body must be a JSON object")
    return message


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_str(*values: Any) -> str | None:
    for value in values:
        if isinstance(value, str) and value:
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
    return None


def _unwrap(message: dict[str, Any]) -> tuple[str, dict[str, Any], dict[str, Any], str | None]:
    """Return (wire event type, event data, metadata, gateway event id)."""

    metadata = _as_dict(message.get("metadata")) or _as_dict(message.get("headers"))
    payload = message.get("payload")

    if isinstance(message.get("eventType"), str) and isinstance(payload, dict):
        event_type, data = message["eventType"], payload
    elif isinstance(payload, dict) and isinstance(payload.get("eventType"), str):
        event_type, data = payload["eventType"], _as_dict(payload.get("payload"))
        metadata = metadata or _as_dict(payload.get("metadata"))
    elif isinstance(message.get("event"), str) and isinstance(message.get("data"), dict):
        event_type, data = message["event"], message["data"]
    elif isinstance(message.get("type"), str) and isinstance(_as_dict(message.get("data")).get("object"), dict):
        event_type, data = message["type"], message["data"]["object"]
        metadata = {**metadata, "eventId": metadata.get("eventId") or message.get("id")}
    else:
        raise ValidationError("unrecognized webhook shape")

    # Internal envelopes may wrap a raw gateway event: {"event": ..., "data": {...}}.
    if isinstance(data.get("data"), dict):
        data = data["data"]
    event_id = _first_str(metadata.get("eventId"), metadata.get("messageId"), message.get("messageId"))
    return event_type, data, metadata, event_id


def _occurred_at(data: dict[str, Any], fallback: datetime) -> datetime:
    for field in ("paid_at", "occurred_at", "created_at", "createdAt", "updated_at"):
        raw = data.get(field)
        if isinstance(raw, str):
            try:
                parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                continue
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return datetime.fromtimestamp(raw, tz=timezone.utc)
    return fallback


def compute_dedup_key(
    event_type: str,
    reference: str | None,
    occurred_at: datetime,
    gateway_event_id: str | None = None,
    refund_key: str | None = None,
    bucket_seconds: int | None = None,
) -> str:
    """Gateway event id when present, otherwise a hash of type, reference and time bucket."""

    if gateway_event_id:
        return f"evt:{gateway_event_id}"
    bucket_seconds = bucket_seconds or settings.webhook_dedup_bucket_seconds
    bucket = int(occurred_at.timestamp() // bucket_seconds)
    material = "|".join([event_type, reference or "", refund_key or "", str(bucket)])
    return "h:" + hashlib.sha256(material.encode("utf-8")).hexdigest()


def normalize_webhook(
    message: dict[str, Any],
    received_at: datetime | None = None,
    correlation_id: str | None = None,
) -> WebhookEnvelope:
    """Map any accepted wire shape to a validated `WebhookEnvelope`."""

    received_at = received_at or datetime.now(timezone.utc)
    wire_type, data, metadata, event_id = _unwrap(message)
    kind = WIRE_EVENT_KINDS.get(wire_type)
    if kind is None:
        raise ValidationError(f"unhandled webhook event type: {wire_type}")

    data_metadata = _as_dict(data.get("metadata"))
    transaction = _as_dict(data.get("transaction"))
    if kind in REFUND_KINDS:
        reference = _first_str(
            transaction.get("reference"),
            data.get("transaction_reference"),
            data.get("payment_intent"),
            data.get("charge"),
        )
        refund_key = _first_str(
            data_metadata.get("refund_idempotency_key"),
            data.get("refund_reference"),
            data.get("id"),
        )
    else:
        reference = _first_str(data.get("reference"), transaction.get("reference"), data.get("id"))
        refund_key = None
    idempotency_key = _first_str(data_metadata.get("idempotency_key"), metadata.get("idempotencyKey"))

    if not reference and not idempotency_key:
        raise ValidationError(f"{wire_type} webhook carries no payment reference")
    amount = data.get("amount")
    if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0):
        raise ValidationError(f"{wire_type} webhook has invalid amount: {amount!r}")
    if kind in REFUND_KINDS and (amount is None or not refund_key):
        raise ValidationError(f"{wire_type} webhook needs a refund amount and refund reference")

    occurred_at = _occurred_at(data, received_at)
    return WebhookEnvelope(
        event_type=kind,
        raw_payload=data,
        dedup_key=compute_dedup_key(kind.value, reference or idempotency_key, occurred_at, event_id, refund_key),
        correlation_id=_first_str(
            correlation_id,
            metadata.get("correlationId"),
            message.get("correlationId"),
        )
        or str(uuid4()),
        gateway_event_id=event_id,
        reference=reference,
        idempotency_key=idempotency_key,
        amount_minor=amount,
        status_hint=_first_str(data.get("status")),
        refund_key=refund_key,
        occurred_at=occurred_at,
    )
