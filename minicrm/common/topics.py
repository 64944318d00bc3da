"""Broker topic contract shared by every publisher and consumer.

Topic names and payload shapes are the only coupling between services. Each
payload is a flat camelCase JSON object carrying its own ISO-8601
`timestamp`. Consumers must not assume ordering between topics and must
tolerate duplicates.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


NOTIFICATION_CONSUMER_GROUP = "notification-service"
DLQ_SUFFIX = ".dlq"


class Topics:
    """Logical event name -> topic identifier."""

    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    LEAD_CREATED = "lead.created"
    LEAD_UPDATED = "lead.updated"
    LEAD_ASSIGNED = "lead.assigned"
    LEAD_STATUS_CHANGED = "lead.status_changed"
    LEAD_DELETED = "lead.deleted"
    NOTIFICATION_SENT = "notification.sent"
    NOTIFICATION_FAILED = "notification.failed"


def dead_letter_topic(topic: str) -> str:
    return f"{topic}{DLQ_SUFFIX}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class EventPayload(BaseModel):
    """Base for topic payloads: camelCase on the wire, immutable once built."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    timestamp: str = Field(default_factory=_now_iso)

    def to_wire(self) -> dict:
        """Flat JSON-ready mapping; unset optional fields are left out."""

        return self.model_dump(by_alias=True, exclude_none=True)


class UserCreatedEvent(EventPayload):
    user_id: str
    email: str
    first_name: str
    last_name: str
    role: str


class UserUpdatedEvent(EventPayload):
    user_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    role: str | None = None


class UserDeletedEvent(EventPayload):
    user_id: str


class LeadCreatedEvent(EventPayload):
    lead_id: str
    first_name: str
    last_name: str
    email: str
    assigned_user_id: str | None = None
    source: str


class LeadUpdatedEvent(EventPayload):
    lead_id: str
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    status: str | None = None


class LeadAssignedEvent(EventPayload):
    lead_id: str
    previous_user_id: str | None = None
    new_user_id: str


class LeadStatusChangedEvent(EventPayload):
    lead_id: str
    previous_status: str
    new_status: str
    user_id: str


class LeadDeletedEvent(EventPayload):
    lead_id: str


class NotificationSentEvent(EventPayload):
    notification_id: str
    type: str
    recipient_id: str | None = None
    title: str
    message: str


class NotificationFailedEvent(EventPayload):
    notification_id: str
    type: str
    recipient_id: str | None = None
    error: str


PAYLOAD_MODELS: dict[str, type[EventPayload]] = {
    Topics.USER_CREATED: UserCreatedEvent,
    Topics.USER_UPDATED: UserUpdatedEvent,
    Topics.USER_DELETED: UserDeletedEvent,
    Topics.LEAD_CREATED: LeadCreatedEvent,
    Topics.LEAD_UPDATED: LeadUpdatedEvent,
    Topics.LEAD_ASSIGNED: LeadAssignedEvent,
    Topics.LEAD_STATUS_CHANGED: LeadStatusChangedEvent,
    Topics.LEAD_DELETED: LeadDeletedEvent,
    Topics.NOTIFICATION_SENT: NotificationSentEvent,
    Topics.NOTIFICATION_FAILED: NotificationFailedEvent,
}


def payload_model(topic: str) -> type[EventPayload]:
    """Payload model registered for `topic`; unknown topics raise `KeyError`."""

    return PAYLOAD_MODELS[topic]
