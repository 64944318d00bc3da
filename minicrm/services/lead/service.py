"""Lead write/read use cases.

Writes commit locally, then emit. Status-change and assignment events are
derived: they go out only when the value actually changed, after the
`lead.updated` event of the same write. User data is owned by the user
service and is read through its SDK, never from this database.
"""

from sqlalchemy import select

from minicrm.common.auth import Identity
from minicrm.common.clients import UserClient
from minicrm.common.errors import NotFoundError, ServiceError
from minicrm.common.events import EventEmitter
from minicrm.common.logging import logger
from minicrm.common.topics import (
    LeadAssignedEvent,
    LeadCreatedEvent,
    LeadDeletedEvent,
    LeadStatusChangedEvent,
    LeadUpdatedEvent,
    Topics,
)
from minicrm.services.lead.models import Lead, LeadStatus
from minicrm.services.lead.schemas import AssignedUser, LeadCreateRequest, LeadResponse, LeadUpdateRequest


SYSTEM_ACTOR = "system"
# NOT NULL columns; an explicit null for these in an update is ignored, for the rest it clears the value.
REQUIRED_FIELDS = frozenset({"first_name", "last_name", "email", "status", "source"})


def _headers(actor: Identity | None) -> dict[str, str] | None:
    return actor.forward_headers() if actor is not None else None


class LeadService:
    """Owns lead records and the `lead.*` topics."""

    def __init__(self, session_factory, emitter: EventEmitter, users: UserClient) -> None:
        self.session_factory = session_factory
        self.emitter = emitter
        self.users = users

    def _get(self, db, lead_id: str) -> Lead:
        lead = db.get(Lead, lead_id)
        if lead is None:
            logger.warning("lead not found lead_id=%s", lead_id)
            raise NotFoundError("Lead not found")
        return lead

    async def _verify_user(self, user_id: str, actor: Identity | None) -> None:
        """Confirm the user exists in the user service before pointing a lead at it."""

        try:
            await self.users.get_user(user_id, headers=_headers(actor))
        except NotFoundError as exc:
            logger.warning("user not found for lead assignment user_id=%s", user_id)
            raise NotFoundError("User not found") from exc

    async def to_response(self, lead: Lead, actor: Identity | None = None) -> LeadResponse:
        """Lead view with the assigned user's summary, when it can be fetched."""

        response = LeadResponse.model_validate(lead)
        if lead.assigned_user_id:
            try:
                user = await self.users.get_user(lead.assigned_user_id, headers=_headers(actor))
                response.assigned_user = AssignedUser.model_validate(user)
            except (ServiceError, ValueError) as exc:
                logger.warning(
                    "failed to fetch assigned user for lead lead_id=%s assigned_user_id=%s error=%s",
                    lead.id,
                    lead.assigned_user_id,
                    exc,
                )
        return response

    async def create_lead(self, req: LeadCreateRequest) -> Lead:
        logger.info("creating lead email=%s assigned_user_id=%s", req.email, req.assigned_user_id)
        with self.session_factory() as db:
            lead = Lead(
                first_name=req.first_name,
                last_name=req.last_name,
                email=req.email,
                phone=req.phone,
                company=req.company,
                position=req.position,
                notes=req.notes,
                status=LeadStatus.NEW.value,
                source=req.source.value,
                assigned_user_id=req.assigned_user_id,
            )
            db.add(lead)
            db.commit()
            db.refresh(lead)

        await self.emitter.emit(
            Topics.LEAD_CREATED,
            LeadCreatedEvent(
                lead_id=lead.id,
                first_name=lead.first_name,
                last_name=lead.last_name,
                email=lead.email,
                assigned_user_id=lead.assigned_user_id,
                source=lead.source,
            ),
        )
        logger.info("lead created lead_id=%s", lead.id)
        return lead

    def get_lead(self, lead_id: str) -> Lead:
        with self.session_factory() as db:
            return self._get(db, lead_id)

    def list_leads(self) -> list[Lead]:
        with self.session_factory() as db:
            return list(db.execute(select(Lead).order_by(Lead.created_at)).scalars().all())

    def list_leads_for_user(self, user_id: str) -> list[Lead]:
        with self.session_factory() as db:
            return list(
                db.execute(select(Lead).where(Lead.assigned_user_id == user_id).order_by(Lead.created_at))
                .scalars()
                .all()
            )

    async def update_lead(self, lead_id: str, req: LeadUpdateRequest, actor: Identity | None = None) -> Lead:
        """Partial update; emits updated, then status_changed / assigned if they changed."""

        changes = {
            k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None or k not in REQUIRED_FIELDS
        }
        logger.info("updating lead lead_id=%s fields=%s", lead_id, sorted(changes))
        with self.session_factory() as db:
            lead = self._get(db, lead_id)
            previous_status = lead.status
            previous_user_id = lead.assigned_user_id
        new_user_id = changes.get("assigned_user_id")
        if new_user_id is not None and new_user_id != previous_user_id:
            await self._verify_user(new_user_id, actor)

        with self.session_factory() as db:
            lead = self._get(db, lead_id)
            for field, value in changes.items():
                setattr(lead, field, getattr(value, "value", value))
            db.commit()
            db.refresh(lead)

        await self.emitter.emit(
            Topics.LEAD_UPDATED,
            LeadUpdatedEvent(
                lead_id=lead.id,
                first_name=changes.get("first_name"),
                last_name=changes.get("last_name"),
                email=changes.get("email"),
                status=lead.status if "status" in changes else None,
            ),
        )
        await self._emit_status_changed(lead, previous_status, actor)
        await self._emit_assigned(lead, previous_user_id)
        logger.info("lead updated lead_id=%s", lead.id)
        return lead

    async def assign_lead(self, lead_id: str, user_id: str, actor: Identity | None = None) -> Lead:
        """Point a lead at an existing user; emits `lead.assigned` on change only."""

        logger.info("assigning lead lead_id=%s user_id=%s", lead_id, user_id)
        with self.session_factory() as db:
            self._get(db, lead_id)
        await self._verify_user(user_id, actor)

        with self.session_factory() as db:
            lead = self._get(db, lead_id)
            previous_user_id = lead.assigned_user_id
            lead.assigned_user_id = user_id
            db.commit()
            db.refresh(lead)

        await self._emit_assigned(lead, previous_user_id)
        return lead

    async def update_status(self, lead_id: str, status: LeadStatus, actor: Identity | None = None) -> Lead:
        """Move a lead to `status`; emits `lead.status_changed` on change only."""

        logger.info("updating lead status lead_id=%s status=%s", lead_id, status.value)
        with self.session_factory() as db:
            lead = self._get(db, lead_id)
            previous_status = lead.status
            lead.status = status.value
            db.commit()
            db.refresh(lead)

        await self._emit_status_changed(lead, previous_status, actor)
        return lead

    async def delete_lead(self, lead_id: str) -> None:
        logger.info("deleting lead lead_id=%s", lead_id)
        with self.session_factory() as db:
            lead = self._get(db, lead_id)
            db.delete(lead)
            db.commit()

        await self.emitter.emit(Topics.LEAD_DELETED, LeadDeletedEvent(lead_id=lead_id))

    async def _emit_status_changed(self, lead: Lead, previous_status: str, actor: Identity | None) -> None:
        if lead.status == previous_status:
            return
        await self.emitter.emit(
            Topics.LEAD_STATUS_CHANGED,
            LeadStatusChangedEvent(
                lead_id=lead.id,
                previous_status=previous_status,
                new_status=lead.status,
                user_id=actor.subject if actor is not None else SYSTEM_ACTOR,
            ),
        )

    async def _emit_assigned(self, lead: Lead, previous_user_id: str | None) -> None:
        if lead.assigned_user_id is None or lead.assigned_user_id == previous_user_id:
            return
        await self.emitter.emit(
            Topics.LEAD_ASSIGNED,
            LeadAssignedEvent(
                lead_id=lead.id,
                previous_user_id=previous_user_id,
                new_user_id=lead.assigned_user_id,
            ),
        )
