"""Webhook ingestion pipeline.

Per envelope: dedup check, map the event to a lifecycle proposal, apply it
(retrying transient failures), remember the dedup key, and hand payments
that are still open to reconciliation. `handle_message` is the transport
boundary that turns outcomes into ack / requeue / dead-letter decisions.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Mapping, Protocol, assert_never

from sqlalchemy.exc import OperationalError

from paysync.common.config import settings
from paysync.common.errors import (
    CircuitOpenError,
    ConfigError,
    ConflictError,
    PaymentNotFoundError,
    PaySyncError,
    is_retryable,
)
from paysync.common.logging import event_id_ctx, logger, trace_id_ctx
from paysync.common.metrics import duplicate_events_skipped_total, webhook_outcomes_total
from paysync.common.retry import RetryExecutor, RetryPolicy
from paysync.common.state_machine import Outcome, PaymentStatus, RefundStatus, TransitionSource
from paysync.services.gateway.client import GatewayClient
from paysync.services.gateway.schemas import map_gateway_status
from paysync.services.payments.models import Payment
from paysync.services.payments.service import PaymentLifecycleService
from paysync.services.webhooks.dedup import DedupCache
from paysync.services.webhooks.envelope import WebhookEnvelope, WebhookEventKind, normalize_webhook, parse_message
from paysync.services.webhooks.signature import HmacSignatureVerifier


class WebhookOutcome(StrEnum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    DEAD_LETTERED = "dead_lettered"
    REQUEUED = "requeued"


ACK_OUTCOMES = frozenset({WebhookOutcome.PROCESSED, WebhookOutcome.DUPLICATE, WebhookOutcome.REJECTED})

PAYMENT_PROPOSALS: dict[WebhookEventKind, PaymentStatus] = {
    WebhookEventKind.PAYMENT_AUTHORIZED: PaymentStatus.AUTHORIZED,
    WebhookEventKind.PAYMENT_SUCCEEDED: PaymentStatus.SUCCEEDED,
    WebhookEventKind.PAYMENT_FAILED: PaymentStatus.FAILED,
    WebhookEventKind.PAYMENT_CANCELLED: PaymentStatus.CANCELLED,
}

REFUND_PROPOSALS: dict[WebhookEventKind, RefundStatus] = {
    WebhookEventKind.REFUND_PROCESSED: RefundStatus.SUCCEEDED,
    WebhookEventKind.REFUND_FAILED: RefundStatus.FAILED,
    WebhookEventKind.REFUND_PENDING: RefundStatus.PENDING,
}


class InboundMessage(Protocol):
    """One transport delivery; must be settled exactly once."""

    body: bytes
    headers: Mapping[str, str]

    async def ack(self) -> None: ...

    async def nack(self, requeue: bool, reason: str | None = None) -> None: ...


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    payment: Payment | None = None
    reason: str | None = None


def _pipeline_retryable(exc: BaseException) -> bool:
    # Errors tagged with `attempts` already went through the gateway client's own retry.
    if getattr(exc, "attempts", None) is not None:
        return False
    return is_retryable(exc) or isinstance(exc, OperationalError)


class WebhookService:
    def __init__(
        self,
        lifecycle: PaymentLifecycleService,
        dedup: DedupCache,
        gateway: GatewayClient | None = None,
        verifier: HmacSignatureVerifier | None = None,
        retry: RetryExecutor | None = None,
        service_name: str = "paysync",
    ) -> None:
        self.lifecycle = lifecycle
        self.dedup = dedup
        self.gateway = gateway
        self.verifier = verifier
        self.retry = retry or RetryExecutor(
            "webhook.apply",
            RetryPolicy(
                max_attempts=settings.webhook_retry_max_attempts,
                base_delay=settings.webhook_retry_base_delay_seconds,
                max_delay=settings.webhook_retry_max_delay_seconds,
                is_retryable=_pipeline_retryable,
            ),
            service_name=service_name,
        )
        self.service_name = service_name

    def _count(self, outcome: WebhookOutcome) -> None:
        webhook_outcomes_total.labels(service=self.service_name, outcome=outcome.value).inc()

    async def _clarify_status(self, payment: Payment, envelope: WebhookEnvelope) -> PaymentStatus:
        """Resolve a status-less update from its hint, or ask the gateway."""

        hinted = map_gateway_status(envelope.status_hint)
        if hinted is not PaymentStatus.PENDING:
            return hinted
        if self.gateway is None:
            raise ConfigError("status-less webhook received but no gateway client is configured")
        result = await self.gateway.query_status(payment.gateway_reference or envelope.reference or payment.idempotency_key)
        return PaymentStatus(result.status)

    async def _apply(self, envelope: WebhookEnvelope) -> WebhookResult:
        payment = self.lifecycle.store.find_payment(reference=envelope.reference, idempotency_key=envelope.idempotency_key)
        if payment is None:
            raise PaymentNotFoundError(
                f"no payment for reference={envelope.reference} idempotency_key={envelope.idempotency_key}"
            )
        event_id = envelope.gateway_event_id or envelope.dedup_key
        kind = envelope.event_type
        match kind:
            case (
                WebhookEventKind.PAYMENT_AUTHORIZED
                | WebhookEventKind.PAYMENT_SUCCEEDED
                | WebhookEventKind.PAYMENT_FAILED
                | WebhookEventKind.PAYMENT_CANCELLED
            ):
                proposed = PAYMENT_PROPOSALS[kind]
            case WebhookEventKind.PAYMENT_UPDATED:
                proposed = await self._clarify_status(payment, envelope)
            case WebhookEventKind.REFUND_PROCESSED | WebhookEventKind.REFUND_FAILED | WebhookEventKind.REFUND_PENDING:
                refund = await self.lifecycle.apply_refund(
                    payment.payment_id,
                    envelope.refund_key,
                    envelope.amount_minor,
                    REFUND_PROPOSALS[kind],
                    payload=envelope.raw_payload,
                    source=TransitionSource.WEBHOOK,
                    event_id=event_id,
                )
                return WebhookResult(WebhookOutcome.PROCESSED, refund.payment)
            case _:
                assert_never(kind)

        result = await self.lifecycle.apply_status(
            payment.payment_id,
            proposed,
            envelope.raw_payload,
            TransitionSource.WEBHOOK,
            reason=f"webhook:{kind}",
            event_id=event_id,
        )
        if result.decision.outcome is Outcome.REJECT:
            return WebhookResult(WebhookOutcome.REJECTED, result.payment, result.decision.reason)
        return WebhookResult(WebhookOutcome.PROCESSED, result.payment)

    async def process(self, envelope: WebhookEnvelope) -> WebhookResult:
        trace_token = trace_id_ctx.set(envelope.correlation_id)
        event_token = event_id_ctx.set(envelope.dedup_key)
        try:
            result = await self._process(envelope)
        finally:
            trace_id_ctx.reset(trace_token)
            event_id_ctx.reset(event_token)
        self._count(result.outcome)
        return result

    async def _process(self, envelope: WebhookEnvelope) -> WebhookResult:
        if self.dedup.seen(envelope.dedup_key):
            logger.info("duplicate webhook skipped dedup_key=%s type=%s", envelope.dedup_key, envelope.event_type)
            duplicate_events_skipped_total.labels(service=self.service_name, topic=settings.webhook_topic).inc()
            return WebhookResult(WebhookOutcome.DUPLICATE)

        try:
            result = await self.retry.run(lambda: self._apply(envelope))
        except ConflictError as exc:
            # Lost a compare-and-swap to a concurrent writer; the winner's status stands.
            logger.info("webhook conflict dedup_key=%s reason=%s", envelope.dedup_key, exc)
            result = WebhookResult(WebhookOutcome.REJECTED, reason=str(exc))
        except CircuitOpenError as exc:
            logger.warning("webhook deferred, circuit open dedup_key=%s error=%s", envelope.dedup_key, exc)
            return WebhookResult(WebhookOutcome.REQUEUED, reason=str(exc))
        except PaySyncError as exc:
            if exc.retryable:
                logger.warning(
                    "webhook retries exhausted dedup_key=%s attempts=%s error=%s",
                    envelope.dedup_key,
                    exc.attempts,
                    exc,
                )
                return WebhookResult(WebhookOutcome.REQUEUED, reason=str(exc))
            logger.error("webhook terminal failure dedup_key=%s error=%s", envelope.dedup_key, exc)
            return WebhookResult(WebhookOutcome.DEAD_LETTERED, reason=str(exc))
        except OperationalError as exc:
            logger.warning("webhook storage unavailable dedup_key=%s error=%s", envelope.dedup_key, exc)
            return WebhookResult(WebhookOutcome.REQUEUED, reason=str(exc))
        except Exception as exc:
            logger.exception("webhook processing crashed dedup_key=%s", envelope.dedup_key)
            return WebhookResult(WebhookOutcome.DEAD_LETTERED, reason=repr(exc))

        self.dedup.remember(envelope.dedup_key)
        if result.payment is not None:
            self.lifecycle.enqueue_reconciliation(result.payment.idempotency_key, result.payment.status)
        return result

    async def submit_webhook(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        """Process one canonical envelope and report what happened to it."""

        return (await self.process(envelope)).outcome

    async def handle_message(self, message: InboundMessage) -> WebhookOutcome:
        """Verify, normalize and process one delivery, then settle it on the transport."""

        try:
            if self.verifier is not None:
                self.verifier.verify(message.body, message.headers)
            envelope = normalize_webhook(
                parse_message(message.body),
                correlation_id=message.headers.get("x-correlation-id"),
            )
        except PaySyncError as exc:
            logger.warning("webhook rejected at boundary error=%s", exc)
            self._count(WebhookOutcome.DEAD_LETTERED)
            await message.nack(requeue=False, reason=str(exc))
            return WebhookOutcome.DEAD_LETTERED

        result = await self.process(envelope)
        if result.outcome in ACK_OUTCOMES:
            await message.ack()
        elif result.outcome is WebhookOutcome.REQUEUED:
            await message.nack(requeue=True, reason=result.reason)
        else:
            await message.nack(requeue=False, reason=result.reason)
        return result.outcome
