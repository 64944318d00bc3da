"""Emitter publish policy and consumer redelivery/DLQ behaviour."""

import asyncio
import json
from dataclasses import dataclass, field

import pytest
from prometheus_client import REGISTRY

from minicrm.common.events import DomainEvent, EventConsumer, EventEmitter
from minicrm.common.topics import Topics, UserCreatedEvent, UserDeletedEvent


@dataclass
class FakeMessage:
    value: bytes
    offset: int = 0
    partition: int = 0
    headers: list = field(default_factory=list)


def user_created(user_id: str = "u1") -> UserCreatedEvent:
    return UserCreatedEvent(
        user_id=user_id,
        email=f"{user_id}@example.com",
        first_name="Ada",
        last_name="Lovelace",
        role="sales_rep",
    )


def failed_publishes(topic: str) -> float:
    return REGISTRY.get_sample_value(
        "events_publish_failed_total",
        {"service": "tests", "topic": topic},
    ) or 0.0


def test_build_rejects_payload_of_wrong_shape():
    with pytest.raises(TypeError):
        DomainEvent.build(Topics.USER_CREATED, UserDeletedEvent(user_id="u1"))


def test_emitter_publishes_in_call_order(bus):
    emitter = EventEmitter(bus, service_name="tests")

    async def scenario():
        await emitter.emit(Topics.USER_CREATED, user_created("u1"))
        await emitter.emit(Topics.USER_DELETED, UserDeletedEvent(user_id="u1"))

    asyncio.run(scenario())

    assert bus.topics == ["user.created", "user.deleted"]
    assert bus.events[0].payload["userId"] == "u1"
    assert json.loads(bus.events[0].encode()) == bus.events[0].payload


def test_emitter_swallows_publish_failures(broken_bus):
    emitter = EventEmitter(broken_bus, service_name="tests")
    before = failed_publishes(Topics.USER_DELETED)

    result = asyncio.run(emitter.emit(Topics.USER_DELETED, UserDeletedEvent(user_id="u1")))

    assert result is None
    assert failed_publishes(Topics.USER_DELETED) == before + 1


def test_emitter_counts_failed_broker_ack():
    class AckFailingBus:
        async def publish(self, event):
            delivery = asyncio.get_running_loop().create_future()
            delivery.set_exception(ConnectionError("leader not available"))
            return delivery

    emitter = EventEmitter(AckFailingBus(), service_name="tests")
    before = failed_publishes(Topics.USER_CREATED)

    async def scenario():
        event = await emitter.emit(Topics.USER_CREATED, user_created())
        await asyncio.sleep(0)
        return event

    event = asyncio.run(scenario())

    assert event is not None
    assert failed_publishes(Topics.USER_CREATED) == before + 1


def test_decode_reads_headers():
    headers = [("event_id", b"evt-1"), ("trace_id", b"trace-1")]

    event = DomainEvent.decode("user.created", b'{"userId": "u1"}', headers)

    assert event.event_id == "evt-1"
    assert event.trace_id == "trace-1"
    assert event.payload == {"userId": "u1"}


def make_consumer(handler, dead_letter_bus, max_redeliveries=2):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    consumer = EventConsumer(
        Topics.USER_CREATED,
        "notification-service",
        handler,
        dead_letter_bus=dead_letter_bus,
        max_redeliveries=max_redeliveries,
        redelivery_backoff_ms=500,
        sleep=fake_sleep,
        service_name="tests",
    )
    return consumer, sleeps


def test_consumer_hands_decoded_event_to_handler(bus):
    received = []

    async def handler(event):
        received.append(event)

    consumer, _ = make_consumer(handler, bus)
    msg = FakeMessage(json.dumps(user_created().to_wire()).encode(), headers=[("event_id", b"evt-9")])

    assert asyncio.run(consumer.handle_message(msg)) is True
    assert received[0].event_id == "evt-9"
    assert received[0].payload["email"] == "u1@example.com"
    assert bus.events == []


def test_handler_failure_requests_redelivery_then_dead_letters(bus):
    async def handler(event):
        raise RuntimeError("smtp down")

    consumer, sleeps = make_consumer(handler, bus, max_redeliveries=2)
    msg = FakeMessage(json.dumps(user_created().to_wire()).encode(), offset=7)

    async def scenario():
        return [await consumer.handle_message(msg) for _ in range(3)]

    assert asyncio.run(scenario()) == [False, False, True]
    assert sleeps == [0.5, 0.5]
    assert bus.topics == ["user.created.dlq"]
    envelope = bus.events[0].payload
    assert envelope["sourceTopic"] == "user.created"
    assert envelope["errorType"] == "REDELIVERY_EXHAUSTED"
    assert envelope["attempts"] == 3
    assert envelope["reason"] == "smtp down"
    assert envelope["failedEvent"]["userId"] == "u1"


def test_undecodable_message_goes_straight_to_dlq(bus):
    async def handler(event):
        raise AssertionError("handler must not run")

    consumer, sleeps = make_consumer(handler, bus)

    assert asyncio.run(consumer.handle_message(FakeMessage(b"not json"))) is True
    assert asyncio.run(consumer.handle_message(FakeMessage(b"[1, 2]", offset=1))) is True
    assert sleeps == []
    assert [event.payload["errorType"] for event in bus.events] == ["UNDECODABLE", "UNDECODABLE"]
    assert bus.events[0].payload["failedEvent"] == "not json"


def test_null_value_record_goes_straight_to_dlq(bus):
    async def handler(event):
        raise AssertionError("handler must not run")

    consumer, sleeps = make_consumer(handler, bus)

    assert asyncio.run(consumer.handle_message(FakeMessage(None, offset=3))) is True
    assert sleeps == []
    envelope = bus.events[0].payload
    assert envelope["errorType"] == "UNDECODABLE"
    assert envelope["reason"] == "event value is empty"
    assert envelope["failedEvent"] is None
    assert envelope["sourceEventId"] is None


def test_decode_rejects_null_value():
    with pytest.raises(ValueError):
        DomainEvent.decode("user.created", None)


def test_dlq_outage_on_undecodable_message_backs_off(broken_bus):
    async def handler(event):
        raise AssertionError("handler must not run")

    consumer, sleeps = make_consumer(handler, broken_bus)

    async def scenario():
        return [await consumer.handle_message(FakeMessage(b"not json")) for _ in range(3)]

    assert asyncio.run(scenario()) == [False, False, False]
    assert sleeps == [0.5, 0.5, 0.5]


def test_dead_letter_failure_keeps_message_for_redelivery(broken_bus):
    async def handler(event):
        raise RuntimeError("still broken")

    consumer, sleeps = make_consumer(handler, broken_bus, max_redeliveries=0)
    msg = FakeMessage(json.dumps(user_created().to_wire()).encode())

    assert asyncio.run(consumer.handle_message(msg)) is False
    assert sleeps == [0.5]


def test_dlq_outage_retries_only_the_dead_letter(broken_bus):
    calls = []

    async def handler(event):
        calls.append(event.event_id)
        raise RuntimeError("smtp down")

    consumer, sleeps = make_consumer(handler, broken_bus, max_redeliveries=1)
    msg = FakeMessage(json.dumps(user_created().to_wire()).encode(), offset=11, headers=[("event_id", b"evt-11")])

    async def scenario():
        results = [await consumer.handle_message(msg) for _ in range(4)]
        broken_bus.fail = False
        results.append(await consumer.handle_message(msg))
        return results

    assert asyncio.run(scenario()) == [False, False, False, False, True]
    # One redelivery, then the handler is never called again while the DLQ is down.
    assert calls == ["evt-11", "evt-11"]
    assert sleeps == [0.5, 0.5, 0.5, 0.5]
    envelope = broken_bus.events[0].payload
    assert envelope["errorType"] == "REDELIVERY_EXHAUSTED"
    assert envelope["attempts"] == 2
    assert envelope["sourceEventId"] == "evt-11"
    assert consumer._failures == {}
    assert consumer._parking == {}
