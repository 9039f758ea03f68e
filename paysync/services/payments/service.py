"""Payment lifecycle service.

Owns every status change: webhook ingestion, reconciliation and direct calls
all land in `apply_status` / `apply_refund`, which serialize per payment,
decide against the state machine, commit with compare-and-swap, append one
history row and publish one domain event.
"""

from dataclasses import dataclass
from typing import Any

from paysync.common.errors import PaymentNotFoundError, ValidationError
from paysync.common.events import DomainEvent, DomainEventType, EventSink
from paysync.common.logging import logger, payment_id_ctx
from paysync.common.metrics import payment_transition_anomalies_total, payment_transitions_total
from paysync.common.single_flight import KeyedLock
from paysync.common.state_machine import (
    Outcome,
    PaymentStatus,
    RefundStatus,
    TransitionDecision,
    TransitionSource,
    decide,
    is_final,
    is_refundable,
)
from paysync.services.gateway.client import GatewayClient
from paysync.services.gateway.schemas import ChargeRequest, RefundRequest, map_refund_status
from paysync.services.payments.models import Payment, Refund
from paysync.services.payments.store import PaymentStore
from paysync.services.reconciliation.queue import ReconciliationQueue


STATUS_EVENTS: dict[PaymentStatus, DomainEventType] = {
    PaymentStatus.AUTHORIZED: DomainEventType.PAYMENT_AUTHORIZED,
    PaymentStatus.SUCCEEDED: DomainEventType.PAYMENT_SUCCEEDED,
    PaymentStatus.FAILED: DomainEventType.PAYMENT_FAILED,
    PaymentStatus.CANCELLED: DomainEventType.PAYMENT_CANCELLED,
    PaymentStatus.PARTIALLY_REFUNDED: DomainEventType.PAYMENT_PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED: DomainEventType.PAYMENT_REFUNDED,
}

@dataclass
class TransitionResult:
    decision: TransitionDecision
    payment: Payment
    event: DomainEvent | None = None

    @property
    def applied(self) -> bool:
        return self.decision.applies


@dataclass
class RefundResult:
    refund: Refund
    payment: Payment
    applied: bool
    event: DomainEvent | None = None


class PaymentLifecycleService:
    def __init__(
        self,
        store: PaymentStore,
        sink: EventSink,
        gateway: GatewayClient | None = None,
        reconciliation_queue: ReconciliationQueue | None = None,
        guard: KeyedLock | None = None,
        service_name: str = "paysync",
    ) -> None:
        self.store = store
        self.sink = sink
        self.gateway = gateway
        self.reconciliation_queue = reconciliation_queue
        self.guard = guard or KeyedLock()
        self.service_name = service_name

    def _event_payload(self, payment: Payment, old_status: str, source: TransitionSource) -> dict[str, Any]:
        return {
            "payment_id": payment.payment_id,
            "idempotency_key": payment.idempotency_key,
            "gateway_reference": payment.gateway_reference,
            "old_status": old_status,
            "new_status": payment.status,
            "amount_minor": payment.amount_minor,
            "currency": payment.currency,
            "source": source.value,
        }

    async def _publish(self, event_type: DomainEventType, payment: Payment, payload: dict[str, Any]) -> DomainEvent:
        event = DomainEvent(event_type=event_type.value, aggregate_id=payment.payment_id, payload=payload)
        await self.sink.publish(event)
        return event

    def _log_rejection(self, decision: TransitionDecision, payment: Payment, source: TransitionSource) -> None:
        if decision.anomaly:
            payment_transition_anomalies_total.labels(service=self.service_name, source=source.value).inc()
            logger.warning(
                "transition_anomaly payment_id=%s current=%s proposed=%s source=%s",
                payment.payment_id,
                decision.current,
                decision.proposed,
                source,
            )
        else:
            logger.info(
                "transition_rejected payment_id=%s reason=%s source=%s",
                payment.payment_id,
                decision.reason,
                source,
            )

    def enqueue_reconciliation(self, idempotency_key: str, current_status: str) -> None:
        if self.reconciliation_queue is None or is_final(current_status):
            return
        self.reconciliation_queue.enqueue(idempotency_key, current_status)

    async def apply_status(
        self,
        payment_id: str,
        proposed: str,
        payload: dict[str, Any] | None,
        source: TransitionSource,
        reason: str,
        event_id: str | None = None,
    ) -> TransitionResult:
        """Apply one proposed status to a payment; NOOP and REJECT are not errors."""

        async with self.guard.hold(payment_id):
            payment = self.store.get_payment(payment_id)
            if payment is None:
                raise PaymentNotFoundError(f"payment {payment_id} not found")
            token = payment_id_ctx.set(payment.payment_id)
            try:
                decision = decide(payment.status, proposed)
                if decision.outcome is Outcome.NOOP:
                    logger.info("transition_noop payment_id=%s status=%s source=%s", payment_id, proposed, source)
                    return TransitionResult(decision, payment)
                if decision.outcome is Outcome.REJECT:
                    self._log_rejection(decision, payment, source)
                    return TransitionResult(decision, payment)

                old_status = payment.status
                updated = self.store.apply_transition(payment, decision.proposed.value, payload, source, reason, event_id)
                payment_transitions_total.labels(
                    service=self.service_name,
                    source=source.value,
                    to_status=updated.status,
                ).inc()
                logger.info(
                    "transition_applied payment_id=%s from=%s to=%s source=%s",
                    payment_id,
                    old_status,
                    updated.status,
                    source,
                )
                event = await self._publish(
                    STATUS_EVENTS[decision.proposed],
                    updated,
                    self._event_payload(updated, old_status, source),
                )
                return TransitionResult(decision, updated, event)
            finally:
                payment_id_ctx.reset(token)

    async def apply_refund(
        self,
        payment_id: str,
        refund_key: str,
        amount_minor: int,
        refund_status: RefundStatus,
        gateway_reference: str | None = None,
        payload: dict[str, Any] | None = None,
        source: TransitionSource = TransitionSource.DIRECT,
        event_id: str | None = None,
    ) -> RefundResult:
        """Record a refund outcome and move the payment when money actually went back.

        A succeeded refund must keep the sum of succeeded refunds within the
        payment amount; violations raise `ValidationError` and are never retried.
        """

        async with self.guard.hold(payment_id):
            return await self._apply_refund(
                payment_id,
                refund_key,
                amount_minor,
                refund_status,
                gateway_reference,
                payload,
                source,
                event_id,
            )

    async def _apply_refund(
        self,
        payment_id: str,
        refund_key: str,
        amount_minor: int,
        refund_status: RefundStatus,
        gateway_reference: str | None,
        payload: dict[str, Any] | None,
        source: TransitionSource,
        event_id: str | None,
    ) -> RefundResult:
        # Caller holds the guard for `payment_id`.
        if amount_minor <= 0:
            raise ValidationError("refund amount must be positive")
        payment = self.store.get_payment(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"payment {payment_id} not found")

        existing = self.store.get_refund(refund_key)
        if existing is not None:
            if existing.payment_id != payment.payment_id:
                raise ValidationError(f"refund {refund_key} belongs to another payment")
            if existing.amount_minor != amount_minor:
                raise ValidationError(
                    f"refund {refund_key} amount mismatch: {existing.amount_minor} != {amount_minor}"
                )
            if existing.status != RefundStatus.PENDING.value or existing.status == refund_status.value:
                logger.info(
                    "refund_noop refund_key=%s status=%s proposed=%s",
                    refund_key,
                    existing.status,
                    refund_status,
                )
                return RefundResult(existing, payment, applied=False)

        if not is_refundable(payment.status):
            raise ValidationError(f"payment {payment.payment_id} in {payment.status} cannot be refunded")

        refunded = self.store.succeeded_refund_total(payment.payment_id)
        if refunded + amount_minor > payment.amount_minor:
            raise ValidationError(
                f"refund total {refunded + amount_minor} exceeds payment amount {payment.amount_minor}"
            )

        if refund_status is not RefundStatus.SUCCEEDED:
            refund, payment = self.store.save_refund(
                payment,
                refund_key,
                amount_minor,
                refund_status,
                gateway_reference=gateway_reference,
            )
            event = None
            if refund_status is RefundStatus.FAILED:
                event = await self._publish(
                    DomainEventType.REFUND_FAILED,
                    payment,
                    {
                        "payment_id": payment.payment_id,
                        "refund_id": refund.refund_id,
                        "amount_minor": amount_minor,
                        "source": source.value,
                    },
                )
            return RefundResult(refund, payment, applied=True, event=event)

        target = (
            PaymentStatus.REFUNDED
            if refunded + amount_minor == payment.amount_minor
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        decision = decide(payment.status, target, refund_flow=True)
        old_status = payment.status
        refund, updated = self.store.save_refund(
            payment,
            refund_key,
            amount_minor,
            RefundStatus.SUCCEEDED,
            gateway_reference=gateway_reference,
            new_payment_status=decision.proposed.value,
            payload=payload,
            source=source,
            reason=f"refund_succeeded:{refund_key}",
            event_id=event_id,
        )
        payment_transitions_total.labels(
            service=self.service_name,
            source=source.value,
            to_status=updated.status,
        ).inc()
        logger.info(
            "refund_applied payment_id=%s refund_key=%s amount=%s refunded_total=%s status=%s",
            payment.payment_id,
            refund_key,
            amount_minor,
            refunded + amount_minor,
            updated.status,
        )
        event_payload = self._event_payload(updated, old_status, source)
        event_payload.update({"refund_id": refund.refund_id, "refund_amount_minor": amount_minor})
        event = await self._publish(STATUS_EVENTS[target], updated, event_payload)
        return RefundResult(refund, updated, applied=True, event=event)

    async def create_payment(self, request: ChargeRequest) -> Payment:
        """Create a PENDING payment once per idempotency key and submit the charge.

        The gateway answer is stored but the payment stays under
        reconciliation until a webhook or a status poll settles it.
        """

        payment, created = self.store.create_payment(request.idempotency_key, request.amount_minor, request.currency)
        if not created:
            return payment
        if self.gateway is None:
            raise RuntimeError("create_payment requires a gateway client")

        try:
            result = await self.gateway.charge(request)
        finally:
            # Whatever the charge outcome, reconciliation will find out the truth.
            self.enqueue_reconciliation(payment.idempotency_key, payment.status)
        payment = self.store.record_gateway_reference(payment, result.reference, result.raw_payload)
        if result.status != PaymentStatus.PENDING.value:
            outcome = await self.apply_status(
                payment.payment_id,
                result.status,
                result.raw_payload,
                TransitionSource.DIRECT,
                reason="charge_response",
            )
            payment = outcome.payment
        return payment

    async def request_refund(self, payment_id: str, amount_minor: int, idempotency_key: str) -> RefundResult:
        """Ask the gateway for a refund and record what it answered.

        The guard is held across the amount check and the gateway call, and
        refunds still PENDING at the gateway count against the remaining
        amount, so concurrent requests can never ask for more than was paid.
        """

        if self.gateway is None:
            raise RuntimeError("request_refund requires a gateway client")
        if amount_minor <= 0:
            raise ValidationError("refund amount must be positive")
        async with self.guard.hold(payment_id):
            payment = self.store.get_payment(payment_id)
            if payment is None:
                raise PaymentNotFoundError(f"payment {payment_id} not found")
            if not is_refundable(payment.status):
                raise ValidationError(f"payment {payment.payment_id} in {payment.status} cannot be refunded")

            committed = self.store.refund_total(payment_id, (RefundStatus.SUCCEEDED, RefundStatus.PENDING))
            existing = self.store.get_refund(idempotency_key)
            if existing is not None and existing.payment_id == payment_id:
                if existing.status != RefundStatus.PENDING.value:
                    return RefundResult(existing, payment, applied=False)
                # Re-asking about our own pending refund must not count it twice.
                committed -= existing.amount_minor
            if committed + amount_minor > payment.amount_minor:
                raise ValidationError(
                    f"refund {amount_minor} exceeds remaining refundable amount {payment.amount_minor - committed}"
                )

            result = await self.gateway.refund(
                RefundRequest(
                    payment_reference=payment.gateway_reference or payment.idempotency_key,
                    idempotency_key=idempotency_key,
                    amount_minor=amount_minor,
                )
            )
            return await self._apply_refund(
                payment_id,
                idempotency_key,
                amount_minor,
                map_refund_status(result.raw_payload.get("status")),
                result.reference,
                result.raw_payload,
                TransitionSource.DIRECT,
                None,
            )
