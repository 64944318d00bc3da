"""Kafka event shape, best-effort emitter and at-least-once consumer loop.

Publishing is fire-and-forget: the emitter hands the message to the producer
and returns without waiting for the broker, and a failed publish is logged
and counted but never fails the write that produced it. Consuming is
at-least-once: offsets are committed only after the handler returns, and a
handler failure rewinds to the failed message so the broker redelivers it.
"""

import asyncio
import json
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field

from minicrm.common.config import settings
from minicrm.common.logging import log_context, logger, trace_id_ctx
from minicrm.common.metrics import (
    dlq_published_total,
    event_handler_failures_total,
    event_queue_delay_seconds,
    events_consumed_total,
    events_publish_failed_total,
    events_published_total,
)
from minicrm.common.topics import EventPayload, dead_letter_topic, payload_model
from minicrm.common.tracing import get_tracer


tracer = get_tracer("events")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DomainEvent(BaseModel):
    """One published fact: topic, flat payload and emission time.

    `event_id` and `trace_id` ride along as Kafka headers for log
    correlation only; nothing deduplicates on them.
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    topic: str
    payload: dict[str, Any]
    occurred_at: str = Field(default_factory=_now_iso)
    trace_id: str = ""

    @classmethod
    def build(cls, topic: str, payload: EventPayload) -> "DomainEvent":
        """Wrap a payload after checking it has the shape registered for `topic`."""

        expected = payload_model(topic)
        if not isinstance(payload, expected):
            raise TypeError(f"topic {topic} expects {expected.__name__}, got {type(payload).__name__}")
        return cls(
            topic=topic,
            payload=payload.to_wire(),
            occurred_at=payload.timestamp,
            trace_id=trace_id_ctx.get(),
        )

    @classmethod
    def decode(cls, topic: str, value: bytes, headers=None) -> "DomainEvent":
        """Parse a consumed Kafka record; raises `ValueError` on malformed input."""

        if value is None:
            raise ValueError("event value is empty")
        payload = json.loads(value.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("event payload must be a JSON object")
        meta = {key: raw.decode("utf-8") for key, raw in headers or () if raw is not None}
        return cls(
            event_id=meta.get("event_id") or str(uuid4()),
            topic=topic,
            payload=payload,
            occurred_at=meta.get("occurred_at") or str(payload.get("timestamp") or _now_iso()),
            trace_id=meta.get("trace_id", ""),
        )

    def encode(self) -> bytes:
        return json.dumps(self.payload).encode("utf-8")

    def kafka_headers(self) -> list[tuple[str, bytes]]:
        return [
            ("event_id", self.event_id.encode("utf-8")),
            ("trace_id", self.trace_id.encode("utf-8")),
            ("occurred_at", self.occurred_at.encode("utf-8")),
        ]


class KafkaBus:
    """Lazy Kafka producer wrapper shared by the emitter and the DLQ path."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=settings.kafka_bootstrap_servers,
                client_id=f"{settings.kafka_client_id}-{settings.service_name}",
            )
            await self._producer.start()
        return self._producer

    async def publish(self, event: DomainEvent) -> asyncio.Future:
        """Enqueue one event; the returned future resolves on broker ack."""

        producer = await self.producer()
        return await producer.send(event.topic, event.encode(), headers=event.kafka_headers())

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()


class EventEmitter:
    """Publishes domain events after a write has committed.

    Every publish failure is swallowed: it is logged and counted in
    `events_publish_failed_total`, and the caller's write still succeeds.
    """

    def __init__(self, bus, service_name: str | None = None) -> None:
        self.bus = bus
        self.service_name = service_name or settings.service_name

    async def emit(self, topic: str, payload: EventPayload) -> DomainEvent | None:
        """Publish one event; returns it, or None when the publish failed outright."""

        event = DomainEvent.build(topic, payload)
        logger.info("event_emit topic=%s event_id=%s payload=%s", topic, event.event_id, event.payload)
        try:
            delivery = await self.bus.publish(event)
        except Exception as exc:
            self._publish_failed(event, exc)
            return None
        if delivery is None:
            self._published(event)
        else:
            delivery.add_done_callback(partial(self._on_delivery, event))
        return event

    def _on_delivery(self, event: DomainEvent, delivery: asyncio.Future) -> None:
        if delivery.cancelled():
            self._publish_failed(event, RuntimeError("delivery cancelled"))
        elif delivery.exception() is not None:
            self._publish_failed(event, delivery.exception())
        else:
            self._published(event)

    def _published(self, event: DomainEvent) -> None:
        events_published_total.labels(service=self.service_name, topic=event.topic).inc()

    def _publish_failed(self, event: DomainEvent, exc: BaseException) -> None:
        events_publish_failed_total.labels(service=self.service_name, topic=event.topic).inc()
        logger.error(
            "event_publish_failed topic=%s event_id=%s error=%s payload=%s",
            event.topic,
            event.event_id,
            exc,
            event.payload,
        )


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=f"{settings.kafka_client_id}-{settings.service_name}",
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


class EventConsumer:
    """Consume one topic for one group and hand decoded events to `handler`.

    A handler exception is the redelivery signal: the loop seeks back to the
    failed offset after a backoff. Once a message has been redelivered
    `max_redeliveries` times it is parked on `<topic>.dlq` and committed.
    While the DLQ itself cannot be reached the offset stays uncommitted and
    only the DLQ publish is retried; the handler does not run again.
    """

    def __init__(
        self,
        topic: str,
        group_id: str,
        handler: Callable[[DomainEvent], Awaitable[Any]],
        dead_letter_bus,
        max_redeliveries: int | None = None,
        redelivery_backoff_ms: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        service_name: str | None = None,
    ) -> None:
        self.topic = topic
        self.group_id = group_id
        self.handler = handler
        self.dead_letter_bus = dead_letter_bus
        self.max_redeliveries = (
            settings.consumer_max_redeliveries if max_redeliveries is None else max_redeliveries
        )
        self.redelivery_backoff_ms = (
            settings.consumer_redelivery_backoff_ms if redelivery_backoff_ms is None else redelivery_backoff_ms
        )
        self.service_name = service_name or settings.service_name
        self._sleep = sleep
        # (partition, offset) -> failed deliveries so far; only lives as long as the process.
        self._failures: dict[tuple[int, int], int] = {}
        # (partition, offset) -> (reason, attempts) for exhausted messages whose DLQ publish failed.
        self._parking: dict[tuple[int, int], tuple[str, int]] = {}

    def _observe_delay(self, event: DomainEvent) -> None:
        try:
            occurred_at = datetime.fromisoformat(event.occurred_at.replace("Z", "+00:00"))
        except ValueError:
            return
        if occurred_at.tzinfo is None:
            occurred_at = occurred_at.replace(tzinfo=timezone.utc)
        delay_seconds = max(0.0, (datetime.now(timezone.utc) - occurred_at).total_seconds())
        event_queue_delay_seconds.labels(service=self.service_name, topic=self.topic).observe(delay_seconds)

    async def handle_message(self, msg) -> bool:
        """Process one record. True means its offset may be committed."""

        try:
            event = DomainEvent.decode(self.topic, msg.value, getattr(msg, "headers", None))
        except ValueError as exc:
            logger.error(
                "event_decode_failed topic=%s group=%s offset=%s error=%s",
                self.topic,
                self.group_id,
                msg.offset,
                exc,
            )
            return await self.dead_letter(msg, None, reason=str(exc), error_type="UNDECODABLE", attempts=1)

        key = (msg.partition, msg.offset)
        parked = self._parking.get(key)
        if parked is not None:
            reason, attempts = parked
            return await self._park(key, msg, event, reason, attempts)

        self._observe_delay(event)
        attempt = self._failures.get(key, 0) + 1
        with log_context(trace_id=event.trace_id, event_id=event.event_id, topic=self.topic):
            try:
                logger.info(
                    "event_received topic=%s group=%s offset=%s attempt=%s",
                    self.topic,
                    self.group_id,
                    msg.offset,
                    attempt,
                )
                with tracer.start_as_current_span(f"consume {self.topic}"):
                    await self.handler(event)
            except Exception as exc:
                event_handler_failures_total.labels(service=self.service_name, topic=self.topic).inc()
                logger.error(
                    "handler_error topic=%s group=%s offset=%s attempt=%s error=%s",
                    self.topic,
                    self.group_id,
                    msg.offset,
                    attempt,
                    exc,
                )
                if attempt > self.max_redeliveries:
                    return await self._park(key, msg, event, str(exc), attempt)
                self._failures[key] = attempt
                await self._sleep(self.redelivery_backoff_ms / 1000)
                return False

        self._failures.pop(key, None)
        events_consumed_total.labels(service=self.service_name, topic=self.topic).inc()
        return True

    async def _park(self, key, msg, event: DomainEvent, reason: str, attempts: int) -> bool:
        if await self.dead_letter(msg, event, reason=reason, error_type="REDELIVERY_EXHAUSTED", attempts=attempts):
            self._failures.pop(key, None)
            self._parking.pop(key, None)
            return True
        self._parking[key] = (reason, attempts)
        return False

    async def dead_letter(
        self,
        msg,
        event: DomainEvent | None,
        reason: str,
        error_type: str,
        attempts: int,
    ) -> bool:
        """Park a message on the DLQ. False (retry after the backoff) if that fails."""

        if event is not None:
            failed_event = event.payload
        elif msg.value is None:
            failed_event = None
        else:
            failed_event = msg.value.decode("utf-8", errors="replace")
        dlq_event = DomainEvent(
            topic=dead_letter_topic(self.topic),
            payload={
                "sourceTopic": self.topic,
                "sourceEventId": event.event_id if event is not None else None,
                "reason": reason,
                "errorType": error_type,
                "attempts": attempts,
                "failedEvent": failed_event,
            },
            trace_id=event.trace_id if event is not None else "",
        )
        try:
            delivery = await self.dead_letter_bus.publish(dlq_event)
            if delivery is not None:
                await delivery
        except Exception as exc:
            logger.error("dlq_publish_failed topic=%s offset=%s error=%s", self.topic, msg.offset, exc)
            await self._sleep(self.redelivery_backoff_ms / 1000)
            return False
        dlq_published_total.labels(service=self.service_name, topic=self.topic, error_type=error_type).inc()
        logger.warning(
            "event_dead_lettered topic=%s offset=%s error_type=%s attempts=%s",
            self.topic,
            msg.offset,
            error_type,
            attempts,
        )
        return True

    async def run(self) -> None:
        """Consume forever, reconnecting after broker-level failures."""

        while True:
            consumer = None
            try:
                consumer = await make_consumer(self.topic, self.group_id)
                while True:
                    results = await consumer.getmany(timeout_ms=500, max_records=50)
                    for tp, messages in results.items():
                        next_offset = None
                        for msg in messages:
                            if not await self.handle_message(msg):
                                consumer.seek(tp, msg.offset)
                                break
                            next_offset = msg.offset + 1
                        if next_offset is not None:
                            await consumer.commit({tp: next_offset})
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("consumer_loop_error topic=%s group=%s error=%s", self.topic, self.group_id, exc)
                await asyncio.sleep(2)
            finally:
                if consumer is not None:
                    await consumer.stop()
                await asyncio.sleep(0)
