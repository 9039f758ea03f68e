"""Lifecycle service: idempotent application, refunds, history and concurrency."""

import asyncio

import pytest

from paysync.common.errors import ConflictError, ValidationError
from paysync.common.state_machine import Outcome, PaymentStatus, RefundStatus, TransitionSource
from paysync.services.gateway.schemas import ChargeRequest


@pytest.mark.asyncio
async def test_apply_status_commits_history_and_event(lifecycle, store, sink, make_payment):
    payment = make_payment()

    result = await lifecycle.apply_status(
        payment.payment_id, "SUCCEEDED", {"status": "success"}, TransitionSource.WEBHOOK, reason="webhook"
    )

    assert result.applied
    assert result.payment.status == "SUCCEEDED"
    assert result.payment.state_version == 1
    assert sink.types() == ["payments.succeeded"]
    assert [(h.from_status, h.to_status) for h in store.history(payment.payment_id)] == [
        (None, "PENDING"),
        ("PENDING", "SUCCEEDED"),
    ]


@pytest.mark.asyncio
async def test_reapplying_same_status_is_silent_noop(lifecycle, store, sink, make_payment):
    payment = make_payment(status=PaymentStatus.SUCCEEDED)

    result = await lifecycle.apply_status(payment.payment_id, "SUCCEEDED", {}, TransitionSource.WEBHOOK, reason="dup")

    assert result.decision.outcome is Outcome.NOOP
    assert sink.events == []
    assert len(store.history(payment.payment_id)) == 2


@pytest.mark.asyncio
async def test_failed_payment_rejects_late_success(lifecycle, store, make_payment):
    payment = make_payment(status=PaymentStatus.FAILED)

    result = await lifecycle.apply_status(payment.payment_id, "SUCCEEDED", {}, TransitionSource.WEBHOOK, reason="late")

    assert result.decision.outcome is Outcome.REJECT
    assert result.decision.anomaly
    assert store.get_payment(payment.payment_id).status == "FAILED"


@pytest.mark.asyncio
async def test_refund_total_never_exceeds_payment_amount(lifecycle, store, sink, make_payment):
    """500 then 600 then 500 against 1000: the middle refund is refused, the last completes it."""

    payment = make_payment(amount=1000, status=PaymentStatus.SUCCEEDED)

    first = await lifecycle.apply_refund(payment.payment_id, "refund-0001", 500, RefundStatus.SUCCEEDED)
    assert first.payment.status == "PARTIALLY_REFUNDED"

    with pytest.raises(ValidationError):
        await lifecycle.apply_refund(payment.payment_id, "refund-0002", 600, RefundStatus.SUCCEEDED)
    assert store.get_payment(payment.payment_id).status == "PARTIALLY_REFUNDED"

    last = await lifecycle.apply_refund(payment.payment_id, "refund-0003", 500, RefundStatus.SUCCEEDED)
    assert last.payment.status == "REFUNDED"
    assert store.succeeded_refund_total(payment.payment_id) == 1000
    assert sink.types() == ["payments.partially_refunded", "payments.refunded"]


@pytest.mark.asyncio
async def test_second_partial_refund_reenters_status(lifecycle, store, make_payment):
    payment = make_payment(amount=1000, status=PaymentStatus.SUCCEEDED)

    await lifecycle.apply_refund(payment.payment_id, "refund-0001", 200, RefundStatus.SUCCEEDED)
    result = await lifecycle.apply_refund(payment.payment_id, "refund-0002", 300, RefundStatus.SUCCEEDED)

    assert result.payment.status == "PARTIALLY_REFUNDED"
    assert result.payment.state_version == 3
    assert store.succeeded_refund_total(payment.payment_id) == 500


@pytest.mark.asyncio
async def test_duplicate_refund_outcome_is_noop(lifecycle, store, sink, make_payment):
    payment = make_payment(amount=1000, status=PaymentStatus.SUCCEEDED)

    await lifecycle.apply_refund(payment.payment_id, "refund-0001", 400, RefundStatus.SUCCEEDED)
    again = await lifecycle.apply_refund(payment.payment_id, "refund-0001", 400, RefundStatus.SUCCEEDED)

    assert not again.applied
    assert store.succeeded_refund_total(payment.payment_id) == 400
    assert len(sink.events) == 1


@pytest.mark.asyncio
async def test_pending_refund_settles_later(lifecycle, store, sink, make_payment):
    payment = make_payment(amount=1000, status=PaymentStatus.SUCCEEDED)

    pending = await lifecycle.apply_refund(payment.payment_id, "refund-0001", 1000, RefundStatus.PENDING)
    assert pending.payment.status == "SUCCEEDED"
    assert sink.events == []

    settled = await lifecycle.apply_refund(payment.payment_id, "refund-0001", 1000, RefundStatus.SUCCEEDED)
    assert settled.refund.status == "SUCCEEDED"
    assert settled.payment.status == "REFUNDED"


@pytest.mark.asyncio
async def test_refunds_against_pending_payment_track_the_amount(lifecycle, store, sink, make_payment):
    """500 then 600 then 500 against a PENDING 1000 payment."""

    payment = make_payment(amount=1000, status=PaymentStatus.PENDING)

    first = await lifecycle.apply_refund(payment.payment_id, "refund-0001", 500, RefundStatus.SUCCEEDED)
    assert first.payment.status == "PARTIALLY_REFUNDED"

    with pytest.raises(ValidationError):
        await lifecycle.apply_refund(payment.payment_id, "refund-0002", 600, RefundStatus.SUCCEEDED)
    assert store.get_payment(payment.payment_id).status == "PARTIALLY_REFUNDED"

    last = await lifecycle.apply_refund(payment.payment_id, "refund-0003", 500, RefundStatus.SUCCEEDED)
    assert last.payment.status == "REFUNDED"
    assert store.succeeded_refund_total(payment.payment_id) == 1000
    assert [(h.from_status, h.to_status) for h in store.history(payment.payment_id)][1:] == [
        ("PENDING", "PARTIALLY_REFUNDED"),
        ("PARTIALLY_REFUNDED", "REFUNDED"),
    ]


@pytest.mark.asyncio
async def test_refund_of_failed_payment_is_refused(lifecycle, make_payment):
    payment = make_payment(status=PaymentStatus.FAILED)

    with pytest.raises(ValidationError):
        await lifecycle.apply_refund(payment.payment_id, "refund-0001", 100, RefundStatus.SUCCEEDED)


@pytest.mark.asyncio
async def test_status_report_cannot_refund_without_refund_record(lifecycle, store, sink, make_payment):
    """Only a recorded refund moves a payment to REFUNDED."""

    payment = make_payment(amount=1000, status=PaymentStatus.SUCCEEDED)

    result = await lifecycle.apply_status(payment.payment_id, "REFUNDED", {}, TransitionSource.WEBHOOK, reason="status")

    assert result.decision.outcome is Outcome.REJECT
    assert result.decision.anomaly
    assert store.get_payment(payment.payment_id).status == "SUCCEEDED"
    assert sink.events == []


@pytest.mark.asyncio
async def test_concurrent_conflicting_updates_apply_exactly_one(lifecycle, store, sink, make_payment):
    payment = make_payment()

    results = await asyncio.gather(
        lifecycle.apply_status(payment.payment_id, "SUCCEEDED", {}, TransitionSource.WEBHOOK, reason="a"),
        lifecycle.apply_status(payment.payment_id, "FAILED", {}, TransitionSource.RECONCILIATION, reason="b"),
    )

    assert sorted(result.applied for result in results) == [False, True]
    assert len(sink.events) == 1
    assert len(store.history(payment.payment_id)) == 2


def test_stale_writer_loses_compare_and_swap(store, make_payment):
    payment = make_payment()
    store.apply_transition(payment, "AUTHORIZED", None, TransitionSource.WEBHOOK, "first")

    with pytest.raises(ConflictError):
        store.apply_transition(payment, "FAILED", None, TransitionSource.RECONCILIATION, "stale copy")


@pytest.mark.asyncio
async def test_create_payment_is_idempotent_and_enqueues(lifecycle, store, transport, queue):
    request = ChargeRequest(idempotency_key="order-1234", amount_minor=2500, currency="ngn")

    payment = await lifecycle.create_payment(request)
    again = await lifecycle.create_payment(request)

    assert payment.payment_id == again.payment_id
    assert payment.status == "PENDING"
    assert payment.currency == "NGN"
    assert payment.gateway_reference == "gw-order-1234"
    assert transport.calls == [("charge", "order-1234")]
    assert "order-1234" in queue


@pytest.mark.asyncio
async def test_request_refund_records_gateway_answer(lifecycle, store, make_payment):
    payment = make_payment(amount=1000, status=PaymentStatus.SUCCEEDED, reference="gw-ref-1")

    result = await lifecycle.request_refund(payment.payment_id, 250, "refund-abc")

    assert result.refund.status == "SUCCEEDED"
    assert result.refund.gateway_reference == "rf-refund-abc"
    assert result.payment.status == "PARTIALLY_REFUNDED"


@pytest.mark.asyncio
async def test_concurrent_refund_requests_never_overdraw(lifecycle, store, transport, make_payment):
    payment = make_payment(amount=1000, status=PaymentStatus.SUCCEEDED, reference="gw-ref-2")
    transport.refund_answers = [transport.result("pending", reference="rf-pending")]

    results = await asyncio.gather(
        lifecycle.request_refund(payment.payment_id, 800, "refund-aaaa"),
        lifecycle.request_refund(payment.payment_id, 800, "refund-bbbb"),
        return_exceptions=True,
    )

    assert sum(isinstance(result, ValidationError) for result in results) == 1
    assert [call for call in transport.calls if call[0] == "refund"] == [("refund", "refund-aaaa")]


@pytest.mark.asyncio
async def test_pending_refunds_count_against_remaining_amount(lifecycle, transport, make_payment):
    payment = make_payment(amount=1000, status=PaymentStatus.SUCCEEDED, reference="gw-ref-3")
    transport.refund_answers = [transport.result("pending", reference="rf-pending")]

    first = await lifecycle.request_refund(payment.payment_id, 700, "refund-0001")
    assert first.refund.status == "PENDING"

    with pytest.raises(ValidationError):
        await lifecycle.request_refund(payment.payment_id, 400, "refund-0002")

    # Asking again about the same pending refund is allowed.
    again = await lifecycle.request_refund(payment.payment_id, 700, "refund-0001")
    assert again.refund.status == "PENDING"
    assert len([call for call in transport.calls if call[0] == "refund"]) == 2
