"""Unit tests for payment lifecycle state-machine guardrails."""

import random

import pytest

from paysync.common.state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Outcome,
    PaymentStatus,
    decide,
    is_final,
    is_refundable,
    validate_transition,
)


def test_valid_transition():
    """Sanity check: a legal transition should pass."""

    validate_transition("PENDING", "AUTHORIZED")


def test_invalid_transition():
    """Illegal transition must raise to protect the stored status."""

    with pytest.raises(ValueError):
        validate_transition("FAILED", "SUCCEEDED")


def test_same_status_is_noop():
    decision = decide("SUCCEEDED", "SUCCEEDED")

    assert decision.outcome is Outcome.NOOP
    assert not decision.anomaly


def test_success_reported_for_failed_payment_is_anomaly():
    """A late SUCCEEDED must never resurrect a FAILED payment."""

    decision = decide("FAILED", "SUCCEEDED")

    assert decision.outcome is Outcome.REJECT
    assert decision.anomaly


def test_backwards_move_is_stale_not_anomaly():
    decision = decide("AUTHORIZED", "PENDING")

    assert decision.outcome is Outcome.REJECT
    assert not decision.anomaly
    assert decision.reason.startswith("stale_transition")


def test_partial_refund_reenters_only_for_refund_flow():
    assert decide("PARTIALLY_REFUNDED", "PARTIALLY_REFUNDED").outcome is Outcome.NOOP
    assert decide("PARTIALLY_REFUNDED", "PARTIALLY_REFUNDED", refund_flow=True).outcome is Outcome.APPLY


def test_refund_statuses_need_the_refund_flow():
    """A status report alone never moves a payment into a refund status."""

    for current in ("PENDING", "AUTHORIZED", "SUCCEEDED"):
        for proposed in ("PARTIALLY_REFUNDED", "REFUNDED"):
            decision = decide(current, proposed)
            assert decision.outcome is Outcome.REJECT
            assert decision.anomaly
            assert decide(current, proposed, refund_flow=True).outcome is Outcome.APPLY


def test_refund_flow_cannot_reopen_closed_payments():
    assert decide("FAILED", "PARTIALLY_REFUNDED", refund_flow=True).outcome is Outcome.REJECT
    assert decide("REFUNDED", "PARTIALLY_REFUNDED", refund_flow=True).outcome is Outcome.REJECT
    assert not is_refundable("CANCELLED")
    assert is_refundable("PENDING")


def test_final_statuses():
    assert is_final("SUCCEEDED")
    assert is_final("REFUNDED")
    assert not is_final("PENDING")
    assert not is_final("AUTHORIZED")


def test_random_sequences_never_leave_terminal_status():
    """Whatever order proposals arrive in, only table edges are ever applied."""

    rng = random.Random(7)
    statuses = list(PaymentStatus)
    for _ in range(500):
        current = PaymentStatus.PENDING
        reached_terminal = None
        for proposed in rng.choices(statuses, k=12):
            decision = decide(current, proposed)
            if decision.outcome is Outcome.APPLY:
                assert proposed in ALLOWED_TRANSITIONS[current]
                current = proposed
            if reached_terminal is not None:
                assert current == reached_terminal
            if current in TERMINAL_STATUSES:
                reached_terminal = current
