"""Kafka transport for inbound webhooks.

Records are handled with bounded concurrency. After each batch, offsets are
committed per partition up to the first record that asked to be requeued, and
the consumer seeks back to it so it is redelivered. Dead letters go to the
DLQ topic with enough context for `scripts/replay_webhook_dlq.py`.
"""

import asyncio
import json
from collections import defaultdict
from typing import Mapping

from aiokafka import AIOKafkaConsumer, TopicPartition
from aiokafka.structs import ConsumerRecord

from paysync.common.config import settings
from paysync.common.events import DomainEvent, KafkaBus
from paysync.common.logging import logger
from paysync.common.metrics import dlq_published_total
from paysync.services.webhooks.service import WebhookService


class KafkaInboundMessage:
    """Adapts one consumer record to the `InboundMessage` settle protocol."""

    def __init__(self, record: ConsumerRecord, dead_letters: "DeadLetterPublisher") -> None:
        self.record = record
        self.body: bytes = record.value or b""
        self.headers: Mapping[str, str] = {
            key.lower(): value.decode("utf-8", errors="replace") for key, value in (record.headers or ())
        }
        self._dead_letters = dead_letters
        self.settled = False
        self.requeue = False

    async def ack(self) -> None:
        self.settled = True

    async def nack(self, requeue: bool, reason: str | None = None) -> None:
        self.settled = True
        if requeue:
            self.requeue = True
            return
        try:
            await self._dead_letters.publish(self, reason or "unspecified")
        except Exception as exc:
            # Keep the record uncommitted rather than lose it.
            logger.error("dlq_publish_failed offset=%s error=%s", self.record.offset, exc)
            self.requeue = True


class DeadLetterPublisher:
    def __init__(self, bus: KafkaBus, topic: str | None = None, service_name: str = "paysync") -> None:
        self.bus = bus
        self.topic = topic or settings.webhook_dlq_topic
        self.service_name = service_name
        # (topic, partition, offset) already written to the DLQ but not yet committed.
        self._published: set[tuple[str, int, int]] = set()

    def published(self, record: ConsumerRecord) -> bool:
        return (record.topic, record.partition, record.offset) in self._published

    def forget_committed(self, commits: dict[TopicPartition, int]) -> None:
        """Drop records below the committed offsets; Kafka will not redeliver them."""

        kept = set()
        for topic, partition, offset in self._published:
            committed = commits.get(TopicPartition(topic, partition))
            if committed is None or offset >= committed:
                kept.add((topic, partition, offset))
        self._published = kept

    async def publish(self, message: KafkaInboundMessage, reason: str) -> None:
        record = message.record
        if self.published(record):
            logger.info("webhook already dead-lettered partition=%s offset=%s", record.partition, record.offset)
            return
        envelope = DomainEvent(
            event_type=self.topic,
            aggregate_id=f"{record.topic}:{record.partition}:{record.offset}",
            payload={
                "reason": reason,
                "error_type": "NON_RETRYABLE",
                "retryable": False,
                "source": self.service_name,
                "replay_topic": record.topic,
                "failed_message": message.body.decode("utf-8", errors="replace"),
                "failed_headers": dict(message.headers),
            },
        )
        await self.bus.publish(self.topic, envelope)
        self._published.add((record.topic, record.partition, record.offset))
        dlq_published_total.labels(service=self.service_name, topic=self.topic, error_type="NON_RETRYABLE").inc()
        logger.warning(
            "webhook dead-lettered topic=%s partition=%s offset=%s reason=%s",
            record.topic,
            record.partition,
            record.offset,
            reason,
        )


def commit_plan(messages: list[KafkaInboundMessage]) -> tuple[dict[TopicPartition, int], dict[TopicPartition, int]]:
    """Offsets to commit and positions to seek back to, per partition."""

    by_partition: dict[TopicPartition, list[KafkaInboundMessage]] = defaultdict(list)
    for message in messages:
        by_partition[TopicPartition(message.record.topic, message.record.partition)].append(message)

    commits: dict[TopicPartition, int] = {}
    seeks: dict[TopicPartition, int] = {}
    for tp, batch in by_partition.items():
        batch.sort(key=lambda item: item.record.offset)
        first_requeued = next((m.record.offset for m in batch if m.requeue or not m.settled), None)
        if first_requeued is None:
            commits[tp] = batch[-1].record.offset + 1
            continue
        seeks[tp] = first_requeued
        if first_requeued > batch[0].record.offset:
            commits[tp] = first_requeued
    return commits, seeks


class KafkaWebhookConsumer:
    def __init__(
        self,
        service: WebhookService,
        bus: KafkaBus,
        topic: str | None = None,
        group_id: str | None = None,
        prefetch: int | None = None,
        requeue_backoff: float = 1.0,
        service_name: str = "paysync",
    ) -> None:
        self.service = service
        self.topic = topic or settings.webhook_topic
        self.group_id = group_id or settings.webhook_consumer_group
        self.prefetch = prefetch or settings.webhook_prefetch
        self.requeue_backoff = requeue_backoff
        self.dead_letters = DeadLetterPublisher(bus, service_name=service_name)
        self._slots = asyncio.Semaphore(self.prefetch)

    async def _make_consumer(self) -> AIOKafkaConsumer:
        consumer = AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=self.group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        await consumer.start()
        return consumer

    async def _handle(self, message: KafkaInboundMessage) -> None:
        async with self._slots:
            try:
                await self.service.handle_message(message)
            except Exception as exc:
                logger.error(
                    "handler_error topic=%s offset=%s error=%s",
                    message.record.topic,
                    message.record.offset,
                    exc,
                )
                message.requeue = True

    async def process_batch(self, records: list[ConsumerRecord]) -> list[KafkaInboundMessage]:
        messages = [KafkaInboundMessage(record, self.dead_letters) for record in records]
        pending = []
        for message in messages:
            if self.dead_letters.published(message.record):
                # Redelivered behind an earlier requeued record; its dead letter is already out.
                message.settled = True
            else:
                pending.append(message)
        await asyncio.gather(*(self._handle(message) for message in pending))
        return messages

    async def _settle(self, consumer: AIOKafkaConsumer, messages: list[KafkaInboundMessage]) -> None:
        commits, seeks = commit_plan(messages)
        if commits:
            await consumer.commit(commits)
            self.dead_letters.forget_committed(commits)
        for tp, offset in seeks.items():
            consumer.seek(tp, offset)
        if seeks:
            logger.info("webhooks requeued partitions=%s backoff_s=%s", len(seeks), self.requeue_backoff)
            await asyncio.sleep(self.requeue_backoff)

    async def consume_forever(self) -> None:
        """Poll, handle and settle batches until cancelled, reconnecting on errors."""

        while True:
            consumer = None
            try:
                consumer = await self._make_consumer()
                while True:
                    results = await consumer.getmany(timeout_ms=500, max_records=self.prefetch * 10)
                    records = [record for batch in results.values() for record in batch]
                    if not records:
                        continue
                    messages = await self.process_batch(records)
                    await self._settle(consumer, messages)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("consumer_loop_error topic=%s group=%s error=%s", self.topic, self.group_id, exc)
                await asyncio.sleep(2)
            finally:
                if consumer is not None:
                    await consumer.stop()
                await asyncio.sleep(0)


def decode_failed_message(dlq_value: bytes) -> tuple[str, bytes, list[tuple[str, bytes]]] | None:
    """Extract (replay topic, original body, original headers) from a DLQ record."""

    envelope = json.loads(dlq_value.decode("utf-8"))
    payload = envelope.get("payload", {})
    replay_topic = payload.get("replay_topic")
    failed_message = payload.get("failed_message")
    if not replay_topic or not isinstance(failed_message, str):
        return None
    headers = [(key, value.encode("utf-8")) for key, value in payload.get("failed_headers", {}).items()]
    return replay_topic, failed_message.encode("utf-8"), headers
