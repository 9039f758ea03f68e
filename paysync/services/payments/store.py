"""Persistence for payments and refunds with compare-and-swap transitions.

Writes are guarded by `(payment_id, status, state_version)` so a stale writer,
in this process or another instance, can never overwrite a newer status.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, or_, select, update

from paysync.common.errors import ConflictError
from paysync.common.redaction import mask_payload
from paysync.common.state_machine import PaymentStatus, RefundStatus, TransitionSource, validate_transition
from paysync.services.payments.models import Payment, PaymentHistory, Refund


class PaymentStore:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create_payment(self, idempotency_key: str, amount_minor: int, currency: str) -> tuple[Payment, bool]:
        """Insert a PENDING payment once per idempotency key; returns (payment, created)."""

        with self.session_factory() as db:
            existing = db.execute(
                select(Payment).where(Payment.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
            if existing:
                return existing, False

            payment = Payment(
                idempotency_key=idempotency_key,
                amount_minor=amount_minor,
                currency=currency.upper(),
                status=PaymentStatus.PENDING.value,
                state_version=0,
                last_gateway_payload={},
            )
            db.add(payment)
            db.flush()
            db.add(
                PaymentHistory(
                    payment_id=payment.payment_id,
                    from_status=None,
                    to_status=PaymentStatus.PENDING.value,
                    source=TransitionSource.DIRECT.value,
                    reason="payment_created",
                    event_id=None,
                )
            )
            db.commit()
            return payment, True

    def get_payment(self, payment_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.get(Payment, payment_id)

    def get_by_idempotency_key(self, idempotency_key: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(
                select(Payment).where(Payment.idempotency_key == idempotency_key)
            ).scalar_one_or_none()

    def find_payment(self, reference: str | None = None, idempotency_key: str | None = None) -> Payment | None:
        """Look a payment up by gateway reference or idempotency key."""

        clauses = []
        if reference:
            clauses.extend([Payment.gateway_reference == reference, Payment.idempotency_key == reference])
        if idempotency_key:
            clauses.append(Payment.idempotency_key == idempotency_key)
        if not clauses:
            return None
        with self.session_factory() as db:
            return db.execute(select(Payment).where(or_(*clauses)).limit(1)).scalar_one_or_none()

    def list_by_status(self, statuses: list[str]) -> list[Payment]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Payment).where(Payment.status.in_(statuses)).order_by(Payment.created_at)
                ).scalars()
            )

    def history(self, payment_id: str) -> list[PaymentHistory]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(PaymentHistory)
                    .where(PaymentHistory.payment_id == payment_id)
                    .order_by(PaymentHistory.history_id)
                ).scalars()
            )

    def record_gateway_reference(self, payment: Payment, reference: str | None, payload: dict[str, Any]) -> Payment:
        """Attach the gateway's reference and masked payload without a status change."""

        with self.session_factory() as db:
            values: dict[str, Any] = {
                "last_gateway_payload": mask_payload(payload),
                "updated_at": datetime.now(timezone.utc),
            }
            if reference:
                values["gateway_reference"] = reference
            db.execute(update(Payment).where(Payment.payment_id == payment.payment_id).values(**values))
            db.commit()
            return db.get(Payment, payment.payment_id)

    def _cas_transition(
        self,
        db,
        payment: Payment,
        new_status: str,
        payload: dict[str, Any] | None,
        source: TransitionSource,
        reason: str,
        event_id: str | None,
        refund_flow: bool = False,
    ) -> None:
        validate_transition(payment.status, new_status, refund_flow)
        values: dict[str, Any] = {
            "status": new_status,
            "state_version": payment.state_version + 1,
            "updated_at": datetime.now(timezone.utc),
        }
        if payload is not None:
            values["last_gateway_payload"] = mask_payload(payload)
        result = db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment.payment_id,
                Payment.status == payment.status,
                Payment.state_version == payment.state_version,
            )
            .values(**values)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"optimistic concurrency conflict for payment {payment.payment_id} "
                f"(expected {payment.status} v{payment.state_version})"
            )
        db.add(
            PaymentHistory(
                payment_id=payment.payment_id,
                from_status=payment.status,
                to_status=new_status,
                source=source.value,
                reason=reason,
                event_id=event_id,
            )
        )

    def apply_transition(
        self,
        payment: Payment,
        new_status: str,
        payload: dict[str, Any] | None,
        source: TransitionSource,
        reason: str,
        event_id: str | None = None,
    ) -> Payment:
        """Commit one status change if the row still matches `payment`; else ConflictError."""

        with self.session_factory() as db:
            self._cas_transition(db, payment, new_status, payload, source, reason, event_id)
            db.commit()
            return db.get(Payment, payment.payment_id, populate_existing=True)

    def get_refund(self, idempotency_key: str) -> Refund | None:
        with self.session_factory() as db:
            return db.execute(select(Refund).where(Refund.idempotency_key == idempotency_key)).scalar_one_or_none()

    def refund_total(self, payment_id: str, statuses: tuple[RefundStatus, ...] = (RefundStatus.SUCCEEDED,)) -> int:
        with self.session_factory() as db:
            total = db.execute(
                select(func.coalesce(func.sum(Refund.amount_minor), 0)).where(
                    Refund.payment_id == payment_id,
                    Refund.status.in_([status.value for status in statuses]),
                )
            ).scalar_one()
        return int(total)

    def succeeded_refund_total(self, payment_id: str) -> int:
        return self.refund_total(payment_id)

    def save_refund(
        self,
        payment: Payment,
        idempotency_key: str,
        amount_minor: int,
        refund_status: RefundStatus,
        gateway_reference: str | None = None,
        new_payment_status: str | None = None,
        payload: dict[str, Any] | None = None,
        source: TransitionSource = TransitionSource.DIRECT,
        reason: str = "refund",
        event_id: str | None = None,
    ) -> tuple[Refund, Payment]:
        """Upsert a refund and, in the same transaction, move the payment status."""

        with self.session_factory() as db:
            refund = db.execute(select(Refund).where(Refund.idempotency_key == idempotency_key)).scalar_one_or_none()
            if refund is None:
                refund = Refund(
                    payment_id=payment.payment_id,
                    amount_minor=amount_minor,
                    idempotency_key=idempotency_key,
                    status=refund_status.value,
                    gateway_reference=gateway_reference,
                )
                db.add(refund)
            else:
                refund.status = refund_status.value
                refund.gateway_reference = gateway_reference or refund.gateway_reference
                refund.updated_at = datetime.now(timezone.utc)
            if new_payment_status is not None:
                self._cas_transition(db, payment, new_payment_status, payload, source, reason, event_id, refund_flow=True)
            db.commit()
            return refund, db.get(Payment, payment.payment_id, populate_existing=True)
