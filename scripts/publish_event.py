"""Publish one topic payload directly to Kafka.

The payload is checked against the shape registered for the topic before it
goes out, unless --raw is given. Useful for fault injection (--raw with a
broken payload) and duplicate-delivery testing (repeat with the same
--event-id).
"""

import argparse
import asyncio
import json
from pathlib import Path

from aiokafka import AIOKafkaProducer
from pydantic import ValidationError

from minicrm.common.events import DomainEvent
from minicrm.common.topics import payload_model


async def publish(bootstrap_servers: str, event: DomainEvent) -> None:
    """Open producer, publish one message, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        await producer.send_and_wait(event.topic, event.encode(), headers=event.kafka_headers())
    finally:
        await producer.stop()


def build_event(topic: str, payload: dict, raw: bool, event_id: str | None = None) -> DomainEvent:
    """Wrap `payload` for `topic`; validated and normalised unless `raw`."""

    if not raw:
        payload = payload_model(topic).model_validate(payload).to_wire()
    event = DomainEvent(topic=topic, payload=payload)
    if event_id:
        event = event.model_copy(update={"event_id": event_id})
    return event


def main() -> None:
    """Parse CLI args and publish one JSON payload."""

    parser = argparse.ArgumentParser(description="Publish a topic payload to Kafka.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", required=True)
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    parser.add_argument("--event-id", default=None, help="Reuse an event_id header (duplicate testing)")
    parser.add_argument("--raw", action="store_true", help="Skip payload validation")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    if args.json_inline:
        payload = json.loads(args.json_inline)
    else:
        payload = json.loads(Path(args.json_file).read_text())

    try:
        event = build_event(args.topic, payload, args.raw, args.event_id)
    except (KeyError, ValidationError) as exc:
        raise SystemExit(f"Payload rejected for topic={args.topic}: {exc}")

    asyncio.run(publish(args.bootstrap_servers, event))
    print(f"Published to topic={args.topic} event_id={event.event_id}")


if __name__ == "__main__":
    main()
