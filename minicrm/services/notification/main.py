"""Notification service lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from minicrm.common.db import SessionLocal
from minicrm.common.events import EventEmitter, KafkaBus
from minicrm.common.startup import create_service_app
from minicrm.services.notification.channel import SmtpEmailChannel
from minicrm.services.notification.models import NotificationRecord
from minicrm.services.notification.service import NotificationService


bus = KafkaBus()
service = NotificationService(SessionLocal, SmtpEmailChannel(), emitter=EventEmitter(bus))


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run broker consumers with the FastAPI application lifecycle."""

    consumer_tasks = [asyncio.create_task(consumer.run()) for consumer in service.consumers(dead_letter_bus=bus)]
    yield
    for task in consumer_tasks:
        task.cancel()
    await asyncio.gather(*consumer_tasks, return_exceptions=True)
    await bus.close()


app = create_service_app(
    "MiniCRM Notification Service",
    ["POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "SMTP_HOST", "SMTP_PORT", "SMTP_PASSWORD"],
    lifespan=lifespan,
)


def _as_dict(record: NotificationRecord) -> dict:
    return {
        "id": record.id,
        "type": record.type,
        "title": record.title,
        "message": record.message,
        "recipientId": record.recipient_id,
        "status": record.status,
        "metadata": record.meta,
        "templateId": record.template_id,
        "sentAt": record.sent_at,
        "errorMessage": record.error_message,
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
    }


@app.get("/notifications")
def list_notifications(recipient_id: str | None = None, status: str | None = None, limit: int = 100):
    """Audit trail, newest first, optionally filtered by recipient/status."""

    rows = service.list_notifications(
        recipient_id=recipient_id,
        status=status.lower() if status else None,
        limit=limit,
    )
    return [_as_dict(row) for row in rows]


@app.get("/notifications/{notification_id}")
def get_notification(notification_id: str):
    """Fetch one notification record."""

    return _as_dict(service.get_notification(notification_id))
