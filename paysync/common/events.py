"""Domain event envelope, Kafka producer and the downstream event sink.

Webhook ingestion and reconciliation both publish the same `DomainEvent`
shape. Publishing happens after the state change is committed, so a publish
failure is logged and counted but never undoes or blocks the transition.
"""

import json
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Protocol
from uuid import uuid4

from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

from paysync.common.config import settings
from paysync.common.logging import logger, trace_id_ctx
from paysync.common.metrics import event_publish_failures_total


class DomainEventType(StrEnum):
    PAYMENT_AUTHORIZED = "payments.authorized"
    PAYMENT_SUCCEEDED = "payments.succeeded"
    PAYMENT_FAILED = "payments.failed"
    PAYMENT_CANCELLED = "payments.cancelled"
    PAYMENT_PARTIALLY_REFUNDED = "payments.partially_refunded"
    PAYMENT_REFUNDED = "payments.refunded"
    REFUND_FAILED = "refunds.failed"
    RECONCILIATION_ABANDONED = "payments.reconciliation_abandoned"


class DomainEvent(BaseModel):
    """Canonical event shape published to downstream consumers."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = Field(default_factory=lambda: trace_id_ctx.get() or str(uuid4()))
    payload: dict[str, Any]


class EventSink(Protocol):
    async def publish(self, event: DomainEvent) -> None: ...


class KafkaBus:
    """Lazy Kafka producer wrapper shared by the event sink and DLQ writer."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self._bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(bootstrap_servers=self._bootstrap_servers)
            await self._producer.start()
        return self._producer

    async def send(self, topic: str, value: bytes, headers: list[tuple[str, bytes]] | None = None) -> None:
        producer = await self.producer()
        await producer.send_and_wait(topic, value, headers=headers)

    async def publish(self, topic: str, event: DomainEvent) -> None:
        await self.send(topic, json.dumps(event.model_dump()).encode("utf-8"))

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


class KafkaEventSink:
    """Fire-and-forget publisher: the topic is the event type."""

    def __init__(self, bus: KafkaBus, service_name: str = "paysync") -> None:
        self.bus = bus
        self.service_name = service_name

    async def publish(self, event: DomainEvent) -> None:
        try:
            await self.bus.publish(event.event_type, event)
        except Exception as exc:
            event_publish_failures_total.labels(service=self.service_name, event_type=event.event_type).inc()
            logger.error(
                "event_publish_failed event_type=%s aggregate_id=%s error=%s",
                event.event_type,
                event.aggregate_id,
                exc,
            )
