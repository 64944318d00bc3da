"""Replay one dead-lettered event back to its source topic.

The replayed message carries the original `failedEvent` payload and the
original event id header, so consumer logs can be correlated with the first
failed delivery. Consumers do not deduplicate: replaying a message that was
in fact processed produces a second notification row.
"""

import argparse
import asyncio
import json
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer


def _header(msg, name: str) -> str | None:
    for key, value in msg.headers or ():
        if key == name and value is not None:
            return value.decode("utf-8")
    return None


async def replay_once(
    bootstrap_servers: str,
    dlq_topic: str,
    target_event_id: str | None,
    target_source_event_id: str | None,
    dry_run: bool,
    timeout_seconds: int,
) -> int:
    """Find one matching DLQ envelope and replay it (or dry-run)."""

    if not target_event_id and not target_source_event_id:
        raise ValueError("Provide --event-id or --source-event-id")

    consumer = AIOKafkaConsumer(
        dlq_topic,
        bootstrap_servers=bootstrap_servers,
        group_id=f"dlq-replay-{uuid4()}",
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
                    event_id = _header(msg, "event_id")
                    source_event_id = envelope.get("sourceEventId")
                    if target_event_id and event_id != target_event_id:
                        continue
                    if target_source_event_id and source_event_id != target_source_event_id:
                        continue

                    source_topic = envelope.get("sourceTopic")
                    failed_event = envelope.get("failedEvent")
                    if not source_topic or not isinstance(failed_event, dict):
                        print("Matched DLQ event is not replayable (missing sourceTopic or undecodable failedEvent).")
                        return 2

                    print(
                        f"Matched DLQ event_id={event_id} error_type={envelope.get('errorType')} "
                        f"attempts={envelope.get('attempts')} -> source_topic={source_topic}"
                    )
                    if dry_run:
                        print("Dry run only; no publish performed.")
                        return 0

                    headers = [("event_id", (source_event_id or str(uuid4())).encode("utf-8"))]
                    trace_id = _header(msg, "trace_id")
                    if trace_id:
                        headers.append(("trace_id", trace_id.encode("utf-8")))
                    await producer.send_and_wait(
                        source_topic,
                        json.dumps(failed_event).encode("utf-8"),
                        headers=headers,
                    )
                    print(f"Replayed failed event with event_id={headers[0][1].decode('utf-8')}")
                    return 0

        print("No matching DLQ event found before timeout.")
        return 1
    finally:
        await consumer.stop()
        await producer.stop()


def main() -> None:
    """CLI entrypoint for DLQ replay."""

    parser = argparse.ArgumentParser(description="Replay one DLQ message back to its source topic.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--dlq-topic", default="user.created.dlq")
    parser.add_argument("--event-id", default=None, help="DLQ envelope event_id to replay")
    parser.add_argument("--source-event-id", default=None, help="event_id of the original failed event")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--timeout-seconds", type=int, default=30)
    args = parser.parse_args()

    rc = asyncio.run(
        replay_once(
            bootstrap_servers=args.bootstrap_servers,
            dlq_topic=args.dlq_topic,
            target_event_id=args.event_id,
            target_source_event_id=args.source_event_id,
            dry_run=args.dry_run,
            timeout_seconds=args.timeout_seconds,
        )
    )
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
