"""Payment lifecycle transitions enforced for webhook and reconciliation updates.

The tables are pure data; `decide` never touches storage. Callers persist an
APPLY decision with compare-and-swap and treat NOOP as success.
"""

from dataclasses import dataclass
from enum import StrEnum


class PaymentStatus(StrEnum):
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"


class RefundStatus(StrEnum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class TransitionSource(StrEnum):
    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"
    DIRECT = "direct"


class Outcome(StrEnum):
    APPLY = "APPLY"
    NOOP = "NOOP"
    REJECT = "REJECT"


ALLOWED_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.AUTHORIZED,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    },
    PaymentStatus.AUTHORIZED: {PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.SUCCEEDED: set(),
    PaymentStatus.PARTIALLY_REFUNDED: set(),
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}

# Edges only a recorded refund may take; a bare status report never moves money back.
REFUND_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.AUTHORIZED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    PaymentStatus.SUCCEEDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
    # Further partial refunds re-enter the same status until fully refunded.
    PaymentStatus.PARTIALLY_REFUNDED: {PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED},
}

REFUND_STATUSES = frozenset({PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED})

TERMINAL_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED})

# Statuses the gateway will not move on its own; reconciliation stops here.
FINAL_STATUSES = TERMINAL_STATUSES | {PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED}


@dataclass(frozen=True)
class TransitionDecision:
    outcome: Outcome
    current: PaymentStatus
    proposed: PaymentStatus
    anomaly: bool = False
    reason: str = ""

    @property
    def applies(self) -> bool:
        return self.outcome is Outcome.APPLY


def is_final(status: str) -> bool:
    return PaymentStatus(status) in FINAL_STATUSES


def is_refundable(status: str) -> bool:
    return PaymentStatus(status) in REFUND_TRANSITIONS


def _edges(current: PaymentStatus, refund_flow: bool) -> set[PaymentStatus]:
    if refund_flow:
        return REFUND_TRANSITIONS.get(current, set())
    return ALLOWED_TRANSITIONS[current]


def decide(current: str, proposed: str, refund_flow: bool = False) -> TransitionDecision:
    """Classify a proposed status change against the transition tables.

    `refund_flow` is set only when a refund record backs the change. There a
    second partial refund legitimately re-applies PARTIALLY_REFUNDED; outside
    it, any refund status is an anomaly.
    """

    current = PaymentStatus(current)
    proposed = PaymentStatus(proposed)

    if current == proposed and not (refund_flow and proposed in _edges(current, refund_flow)):
        return TransitionDecision(Outcome.NOOP, current, proposed, reason="already_in_status")
    if proposed in _edges(current, refund_flow):
        return TransitionDecision(Outcome.APPLY, current, proposed)
    if not refund_flow and proposed in REFUND_STATUSES:
        return TransitionDecision(
            Outcome.REJECT,
            current,
            proposed,
            anomaly=True,
            reason=f"refund_status_without_refund:{current}->{proposed}",
        )
    if current in FINAL_STATUSES:
        return TransitionDecision(
            Outcome.REJECT,
            current,
            proposed,
            anomaly=True,
            reason=f"final_status_conflict:{current}->{proposed}",
        )
    return TransitionDecision(Outcome.REJECT, current, proposed, reason=f"stale_transition:{current}->{proposed}")


def validate_transition(current: str, new: str, refund_flow: bool = False) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if PaymentStatus(new) not in _edges(PaymentStatus(current), refund_flow):
        raise ValueError(f"Invalid transition: {current} -> {new}")
