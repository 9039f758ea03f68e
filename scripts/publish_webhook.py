"""Publish a raw webhook payload to the inbound webhook topic.

Useful for duplicate-delivery and out-of-order testing. With `--secret` the
body is signed the way the gateway signs it.
"""

import argparse
import asyncio
import json
from pathlib import Path

from aiokafka import AIOKafkaProducer

from paysync.services.webhooks.signature import HmacSignatureVerifier


async def publish(bootstrap_servers: str, topic: str, body: bytes, headers: list[tuple[str, bytes]], copies: int) -> None:
    """Open producer, publish the body `copies` times, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        for _ in range(copies):
            await producer.send_and_wait(topic, body, headers=headers)
    finally:
        await producer.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Publish a raw webhook JSON payload to Kafka.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="gateway.webhook.received")
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    parser.add_argument("--secret", default=None, help="Sign the body with this webhook secret")
    parser.add_argument("--copies", type=int, default=1, help="Publish the same body N times")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    if args.json_inline:
        payload = json.loads(args.json_inline)
    else:
        payload = json.loads(Path(args.json_file).read_text())

    body = json.dumps(payload).encode("utf-8")
    headers = []
    if args.secret:
        headers.append(("x-paystack-signature", HmacSignatureVerifier(args.secret).sign(body).encode("utf-8")))

    asyncio.run(publish(args.bootstrap_servers, args.topic, body, headers, args.copies))
    print(f"Published {args.copies} message(s) to topic={args.topic}")


if __name__ == "__main__":
    main()
