"""HTTP surface plus the webhook consumer and reconciliation workers.

The app owns the lifecycle of both background loops and exposes health views
of the gateway circuits and the reconciliation queue.
"""

import asyncio
from contextlib import asynccontextmanager, suppress
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException

from paysync.common.config import settings
from paysync.common.db import build_session_factory
from paysync.common.errors import CircuitOpenError, PaymentNotFoundError, PaySyncError, ValidationError
from paysync.common.events import KafkaBus, KafkaEventSink
from paysync.common.logging import configure_logging, logger, trace_id_ctx
from paysync.common.metrics import metrics_response
from paysync.common.startup import log_startup_config
from paysync.common.tracing import instrument_app, setup_tracing
from paysync.services.gateway.client import GatewayClient
from paysync.services.gateway.http import HttpGatewayTransport
from paysync.services.gateway.schemas import ChargeRequest
from paysync.services.payments.models import Payment
from paysync.services.payments.schemas import HistoryEntry, PaymentResponse, RefundCreateRequest, RefundResponse
from paysync.services.payments.service import PaymentLifecycleService
from paysync.services.payments.store import PaymentStore
from paysync.services.reconciliation.queue import ReconciliationQueue
from paysync.services.reconciliation.service import ReconciliationService
from paysync.services.webhooks.consumer import KafkaWebhookConsumer
from paysync.services.webhooks.dedup import build_dedup_cache
from paysync.services.webhooks.service import WebhookService
from paysync.services.webhooks.signature import HmacSignatureVerifier

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "REDIS_URL",
        "GATEWAY_BASE_URL",
        "GATEWAY_SECRET_KEY",
        "WEBHOOK_SECRET",
        "WEBHOOK_DEDUP_BACKEND",
    ],
)

store = PaymentStore(build_session_factory())
bus = KafkaBus()
transport = HttpGatewayTransport(settings.gateway_base_url, settings.gateway_secret_key)
gateway = GatewayClient.from_settings(transport)
queue = ReconciliationQueue(max_attempts=settings.reconcile_max_attempts, service_name=settings.service_name)
lifecycle = PaymentLifecycleService(
    store,
    KafkaEventSink(bus, settings.service_name),
    gateway=gateway,
    reconciliation_queue=queue,
    service_name=settings.service_name,
)
if settings.webhook_secret:
    verifier = HmacSignatureVerifier(settings.webhook_secret)
else:
    verifier = None
    logger.warning("WEBHOOK_SECRET unset; webhook signatures will not be verified")
webhooks = WebhookService(
    lifecycle,
    build_dedup_cache(),
    gateway=gateway,
    verifier=verifier,
    service_name=settings.service_name,
)
consumer = KafkaWebhookConsumer(webhooks, bus, service_name=settings.service_name)
reconciler = ReconciliationService(queue, lifecycle, gateway, service_name=settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run webhook consumer + reconciliation workers with app lifecycle."""

    reconciler.rebuild_from_store()
    reconciler.start()
    consumer_task = asyncio.create_task(consumer.consume_forever())
    yield
    consumer_task.cancel()
    with suppress(asyncio.CancelledError):
        await consumer_task
    await reconciler.stop(timeout=settings.breaker_call_timeout_seconds)
    await transport.close()
    await bus.close()


app = FastAPI(title="PaySync", lifespan=lifespan)
instrument_app(app)


def _to_http(exc: PaySyncError) -> HTTPException:
    if isinstance(exc, PaymentNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, CircuitOpenError) or exc.retryable:
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def _payment_response(payment: Payment) -> PaymentResponse:
    return PaymentResponse(
        payment_id=payment.payment_id,
        status=payment.status,
        amount_minor=payment.amount_minor,
        currency=payment.currency,
        gateway_reference=payment.gateway_reference,
        state_version=payment.state_version,
    )


@app.post("/payments", response_model=PaymentResponse)
async def create_payment(req: ChargeRequest, x_trace_id: str | None = Header(default=None)):
    """Create a PENDING payment and submit the charge to the gateway."""

    trace_id_ctx.set(x_trace_id or str(uuid4()))
    try:
        payment = await lifecycle.create_payment(req)
    except PaySyncError as exc:
        raise _to_http(exc) from exc
    return _payment_response(payment)


@app.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str):
    payment = store.get_payment(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="payment not found")
    return _payment_response(payment)


@app.get("/payments/{payment_id}/history", response_model=list[HistoryEntry])
def get_history(payment_id: str):
    """Audit trail of accepted transitions, oldest first."""

    return [
        HistoryEntry(
            from_status=row.from_status,
            to_status=row.to_status,
            source=row.source,
            reason=row.reason,
            event_id=row.event_id,
        )
        for row in store.history(payment_id)
    ]


@app.post("/payments/{payment_id}/refunds", response_model=RefundResponse)
async def create_refund(payment_id: str, req: RefundCreateRequest, x_trace_id: str | None = Header(default=None)):
    trace_id_ctx.set(x_trace_id or str(uuid4()))
    try:
        result = await lifecycle.request_refund(payment_id, req.amount_minor, req.idempotency_key)
    except PaySyncError as exc:
        raise _to_http(exc) from exc
    return RefundResponse(
        refund_id=result.refund.refund_id,
        payment_id=result.payment.payment_id,
        status=result.refund.status,
        amount_minor=result.refund.amount_minor,
        payment_status=result.payment.status,
    )


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True, "gateway_healthy": gateway.health()["healthy"], "reconciler_running": reconciler.running}


@app.get("/health/circuit-breakers")
def circuit_breakers():
    return gateway.health()


@app.get("/health/reconciliation")
def reconciliation():
    return reconciler.status()


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
