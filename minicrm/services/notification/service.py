"""Notification consumer pipeline for user creation events.

Each event goes Received -> Validated -> SideEffectAttempted -> Recorded.
The record is written whatever happened; on failure the original exception
is re-raised afterwards so the consumer harness redelivers the event.
Nothing is deduplicated: a redelivered event sends again and writes a
second record.
"""

import re
from datetime import datetime, timezone

from sqlalchemy import select

from minicrm.common.errors import NotFoundError, ValidationError
from minicrm.common.events import DomainEvent, EventConsumer, EventEmitter
from minicrm.common.logging import logger
from minicrm.common.metrics import notifications_failed_total, notifications_sent_total
from minicrm.common.state_machine import NotificationStatus, validate_transition
from minicrm.common.topics import (
    NOTIFICATION_CONSUMER_GROUP,
    NotificationFailedEvent,
    NotificationSentEvent,
    Topics,
    UserCreatedEvent,
)
from minicrm.services.notification.channel import (
    WELCOME_TEMPLATE_ID,
    WELCOME_TITLE,
    EmailPort,
    html_to_text,
    render_welcome_email,
    welcome_message,
)
from minicrm.services.notification.models import NotificationRecord, NotificationType


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USER_CREATED_REQUIRED = ("userId", "email", "firstName", "lastName", "role")


def validate_user_created(payload: dict) -> UserCreatedEvent:
    """Check a `user.created` payload is complete and the address is usable."""

    missing = [name for name in USER_CREATED_REQUIRED if not payload.get(name)]
    if missing:
        raise ValidationError("User creation event missing required fields", detail={"missing": missing})
    email = payload["email"]
    if not isinstance(email, str) or not EMAIL_RE.match(email):
        raise ValidationError(f"Invalid email format: {email}")
    timestamp = payload.get("timestamp")
    return UserCreatedEvent(
        user_id=str(payload["userId"]),
        email=email,
        first_name=str(payload["firstName"]),
        last_name=str(payload["lastName"]),
        role=str(payload["role"]),
        **({"timestamp": timestamp} if isinstance(timestamp, str) else {}),
    )


class NotificationService:
    """Sends welcome emails and keeps the notification audit trail."""

    def __init__(
        self,
        session_factory,
        email: EmailPort,
        emitter: EventEmitter | None = None,
        service_name: str = "notification",
    ) -> None:
        self.session_factory = session_factory
        self.email = email
        self.emitter = emitter
        self.service_name = service_name

    async def handle_user_created(self, event: DomainEvent) -> NotificationRecord:
        """Broker entry point for `user.created`."""

        return await self.process_user_created(event.payload, source_event=event)

    async def process_user_created(
        self, payload: dict, source_event: DomainEvent | None = None
    ) -> NotificationRecord:
        """Validate, send the welcome email and record the outcome.

        Raises `ValidationError` or `SideEffectError` (after recording a
        failed row) so the caller can trigger redelivery.
        """

        logger.info("processing user.created user_id=%s email=%s", payload.get("userId"), payload.get("email"))
        recipient_id = payload.get("userId") or None
        message = welcome_message(payload.get("firstName"), payload.get("role"))
        meta = {
            "topic": Topics.USER_CREATED,
            "email": payload.get("email"),
            "eventTimestamp": payload.get("timestamp"),
        }
        if source_event is not None:
            meta["eventId"] = source_event.event_id

        try:
            event = validate_user_created(payload)
            subject, html_body = render_welcome_email(event.first_name, event.role)
            message_id = await self.email.send(event.email, subject, html_body, html_to_text(html_body))
        except Exception as exc:
            logger.error(
                "user.created processing failed user_id=%s email=%s error=%s",
                payload.get("userId"),
                payload.get("email"),
                exc,
            )
            record = self._record(recipient_id, message, NotificationStatus.FAILED, meta, error=str(exc))
            await self._announce(record)
            raise

        meta["messageId"] = message_id
        record = self._record(recipient_id, message, NotificationStatus.SENT, meta)
        await self._announce(record)
        logger.info("user.created processed user_id=%s notification_id=%s", recipient_id, record.id)
        return record

    def _record(
        self,
        recipient_id: str | None,
        message: str,
        status: NotificationStatus,
        meta: dict,
        error: str | None = None,
    ) -> NotificationRecord:
        """Persist the single record for this attempt with its final status."""

        validate_transition(NotificationStatus.PENDING, status)
        now = datetime.now(timezone.utc)
        record = NotificationRecord(
            type=NotificationType.EMAIL.value,
            title=WELCOME_TITLE,
            message=message,
            recipient_id=recipient_id,
            status=status.value,
            meta=meta,
            template_id=WELCOME_TEMPLATE_ID,
            sent_at=now if status is NotificationStatus.SENT else None,
            error_message=error or None,
        )
        with self.session_factory() as db:
            db.add(record)
            db.commit()
            db.refresh(record)

        if status is NotificationStatus.SENT:
            notifications_sent_total.labels(service=self.service_name, type=record.type).inc()
        else:
            notifications_failed_total.labels(service=self.service_name, type=record.type).inc()
        logger.info(
            "notification recorded id=%s recipient_id=%s status=%s",
            record.id,
            recipient_id,
            record.status,
        )
        return record

    async def _announce(self, record: NotificationRecord) -> None:
        if self.emitter is None:
            return
        if record.status == NotificationStatus.SENT.value:
            await self.emitter.emit(
                Topics.NOTIFICATION_SENT,
                NotificationSentEvent(
                    notification_id=record.id,
                    type=record.type,
                    recipient_id=record.recipient_id,
                    title=record.title,
                    message=record.message,
                ),
            )
        else:
            await self.emitter.emit(
                Topics.NOTIFICATION_FAILED,
                NotificationFailedEvent(
                    notification_id=record.id,
                    type=record.type,
                    recipient_id=record.recipient_id,
                    error=record.error_message or "unknown error",
                ),
            )

    def list_notifications(
        self,
        recipient_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[NotificationRecord]:
        query = select(NotificationRecord).order_by(NotificationRecord.created_at.desc()).limit(limit)
        if recipient_id is not None:
            query = query.where(NotificationRecord.recipient_id == recipient_id)
        if status is not None:
            query = query.where(NotificationRecord.status == status)
        with self.session_factory() as db:
            return list(db.execute(query).scalars().all())

    def get_notification(self, notification_id: str) -> NotificationRecord:
        with self.session_factory() as db:
            record = db.get(NotificationRecord, notification_id)
        if record is None:
            raise NotFoundError("Notification not found")
        return record

    def consumers(self, dead_letter_bus) -> list[EventConsumer]:
        """Broker consumers this service runs, all in its fixed consumer group."""

        return [
            EventConsumer(
                Topics.USER_CREATED,
                NOTIFICATION_CONSUMER_GROUP,
                self.handle_user_created,
                dead_letter_bus=dead_letter_bus,
            ),
        ]
