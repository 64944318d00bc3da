"""Topic names and payload wire shape."""

import pytest

from minicrm.common.topics import (
    LeadStatusChangedEvent,
    Topics,
    UserCreatedEvent,
    UserUpdatedEvent,
    dead_letter_topic,
    payload_model,
)


def test_topic_names_are_stable():
    assert Topics.USER_CREATED == "user.created"
    assert Topics.USER_UPDATED == "user.updated"
    assert Topics.USER_DELETED == "user.deleted"
    assert Topics.LEAD_CREATED == "lead.created"
    assert Topics.LEAD_UPDATED == "lead.updated"
    assert Topics.LEAD_ASSIGNED == "lead.assigned"
    assert Topics.LEAD_STATUS_CHANGED == "lead.status_changed"
    assert Topics.LEAD_DELETED == "lead.deleted"
    assert Topics.NOTIFICATION_SENT == "notification.sent"
    assert Topics.NOTIFICATION_FAILED == "notification.failed"


def test_payload_is_flat_camel_case_with_timestamp():
    wire = UserCreatedEvent(
        user_id="u1",
        email="ada@example.com",
        first_name="Ada",
        last_name="Lovelace",
        role="admin",
    ).to_wire()

    assert set(wire) == {"userId", "email", "firstName", "lastName", "role", "timestamp"}
    assert wire["userId"] == "u1"
    assert "T" in wire["timestamp"]


def test_optional_fields_are_left_out():
    wire = UserUpdatedEvent(user_id="u1", role="manager").to_wire()

    assert wire.keys() == {"userId", "role", "timestamp"}


def test_payload_accepts_wire_names():
    event = LeadStatusChangedEvent.model_validate(
        {"leadId": "l1", "previousStatus": "new", "newStatus": "contacted", "userId": "u1"}
    )

    assert event.new_status == "contacted"


def test_payload_model_lookup():
    assert payload_model("user.created") is UserCreatedEvent
    with pytest.raises(KeyError):
        payload_model("user.promoted")


def test_dead_letter_topic():
    assert dead_letter_topic("user.created") == "user.created.dlq"
