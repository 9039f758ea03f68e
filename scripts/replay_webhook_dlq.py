"""Replay one dead-lettered webhook back to the topic it came from.

The original body and headers are published unchanged, so signature checks
and dedup keys behave exactly as on first delivery.
"""

import argparse
import asyncio
import json
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from paysync.services.webhooks.consumer import decode_failed_message


async def replay_once(
    bootstrap_servers: str,
    dlq_topic: str,
    target_event_id: str | None,
    target_aggregate_id: str | None,
    dry_run: bool,
    timeout_seconds: int,
) -> int:
    """Find one matching DLQ record and replay it (or dry-run)."""

    if not target_event_id and not target_aggregate_id:
        raise ValueError("Provide --event-id or --aggregate-id")

    consumer = AIOKafkaConsumer(
        dlq_topic,
        bootstrap_servers=bootstrap_servers,
        group_id=f"webhook-dlq-replay-{uuid4()}",
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await consumer.start()
    await producer.start()
    try:
        deadline = asyncio.get_running_loop().time() + timeout_seconds
        while asyncio.get_running_loop().time() < deadline:
            results = await consumer.getmany(timeout_ms=1000, max_records=200)
            for _, messages in results.items():
                for msg in messages:
                    envelope = json.loads(msg.value.decode("utf-8"))
                    if target_event_id and envelope.get("event_id") != target_event_id:
                        continue
                    if target_aggregate_id and envelope.get("aggregate_id") != target_aggregate_id:
                        continue

                    decoded = decode_failed_message(msg.value)
                    if decoded is None:
                        print("Matched DLQ record is not replayable (missing replay_topic/failed_message).")
                        return 2
                    replay_topic, body, headers = decoded
                    print(
                        f"Matched DLQ event_id={envelope.get('event_id')} "
                        f"reason={envelope.get('payload', {}).get('reason')} -> replay_topic={replay_topic}"
                    )
                    if dry_run:
                        print("Dry run only; no publish performed.")
                        return 0

                    await producer.send_and_wait(replay_topic, body, headers=headers)
                    print(f"Replayed webhook to {replay_topic} ({len(body)} bytes)")
                    return 0

        print("No matching DLQ record found before timeout.")
        return 1
    finally:
        await consumer.stop()
        await producer.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay one dead-lettered webhook to its source topic.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--dlq-topic", default="webhooks.dlq")
    parser.add_argument("--event-id", default=None, help="DLQ envelope event_id to replay")
    parser.add_argument("--aggregate-id", default=None, help="DLQ aggregate_id (topic:partition:offset)")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--timeout-seconds", type=int, default=30)
    args = parser.parse_args()

    rc = asyncio.run(
        replay_once(
            bootstrap_servers=args.bootstrap_servers,
            dlq_topic=args.dlq_topic,
            target_event_id=args.event_id,
            target_aggregate_id=args.aggregate_id,
            dry_run=args.dry_run,
            timeout_seconds=args.timeout_seconds,
        )
    )
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
