"""Shared fixtures: in-memory database, fake clock, recording sink, fake gateway."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from paysync.common.db import Base
from paysync.common.errors import PaySyncError
from paysync.common.retry import RetryPolicy
from paysync.common.state_machine import PaymentStatus, TransitionSource
from paysync.services.gateway.client import GatewayClient
from paysync.services.gateway.schemas import GatewayResult, map_gateway_status
from paysync.services.payments import models  # noqa: F401  (registers tables)
from paysync.services.payments.service import PaymentLifecycleService
from paysync.services.payments.store import PaymentStore
from paysync.services.reconciliation.queue import ReconciliationQueue


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink:
    def __init__(self) -> None:
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.event_type for event in self.events]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeGatewayTransport:
    """Scripted gateway: each capability pops answers (results or exceptions) from a list."""

    def __init__(self) -> None:
        self.statuses: dict[str, list] = {}
        self.refund_answers: list = []
        self.charge_answers: list = []
        self.calls: list[tuple[str, str]] = []

    @staticmethod
    def result(raw_status: str, reference: str = "ref-1") -> GatewayResult:
        return GatewayResult(
            success=True,
            reference=reference,
            status=map_gateway_status(raw_status).value,
            raw_payload={"status": raw_status, "reference": reference},
        )

    def _next(self, answers: list, fallback):
        answer = answers.pop(0) if len(answers) > 1 else (answers[0] if answers else fallback)
        if isinstance(answer, (PaySyncError, OSError)):
            raise answer
        return answer

    async def charge(self, request):
        self.calls.append(("charge", request.idempotency_key))
        return self._next(self.charge_answers, self.result("pending", reference=f"gw-{request.idempotency_key}"))

    async def refund(self, request):
        self.calls.append(("refund", request.idempotency_key))
        return self._next(self.refund_answers, self.result("processed", reference=f"rf-{request.idempotency_key}"))

    async def query_status(self, reference: str):
        self.calls.append(("query_status", reference))
        return self._next(self.statuses.get(reference, []), self.result("pending", reference=reference))


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return PaymentStore(session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def transport():
    return FakeGatewayTransport()


@pytest.fixture
def gateway(transport, clock, fake_sleep):
    return GatewayClient(
        transport,
        failure_threshold=3,
        reset_timeout=30.0,
        call_timeout=1.0,
        max_requests=100,
        window=60.0,
        retry_policy=RetryPolicy(max_attempts=2, base_delay=0.01, jitter=False),
        clock=clock,
        sleep=fake_sleep,
        listeners=[],
    )


@pytest.fixture
def queue(clock):
    return ReconciliationQueue(max_attempts=3, clock=clock)


@pytest.fixture
def lifecycle(store, sink, gateway, queue):
    return PaymentLifecycleService(store, sink, gateway=gateway, reconciliation_queue=queue)


@pytest.fixture
def make_payment(store):
    """Create a payment and optionally walk it to `status` through allowed edges."""

    paths = {
        PaymentStatus.PENDING: [],
        PaymentStatus.AUTHORIZED: [PaymentStatus.AUTHORIZED],
        PaymentStatus.SUCCEEDED: [PaymentStatus.SUCCEEDED],
        PaymentStatus.FAILED: [PaymentStatus.FAILED],
        PaymentStatus.CANCELLED: [PaymentStatus.CANCELLED],
    }

    def _make(key: str = "order-0001", amount: int = 1000, status: PaymentStatus = PaymentStatus.PENDING, reference=None):
        payment, _ = store.create_payment(key, amount, "NGN")
        if reference:
            payment = store.record_gateway_reference(payment, reference, {})
        for step in paths[status]:
            payment = store.apply_transition(payment, step.value, None, TransitionSource.DIRECT, "fixture")
        return payment

    return _make
