"""API request/response schemas for lead endpoints (camelCase JSON)."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from minicrm.services.lead.models import LeadSource, LeadStatus


EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class LeadCreateRequest(CamelModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    source: LeadSource = LeadSource.OTHER
    assigned_user_id: str | None = None


class LeadUpdateRequest(CamelModel):
    """Partial update; status and assignment changes also emit derived events."""

    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    status: LeadStatus | None = None
    source: LeadSource | None = None
    assigned_user_id: str | None = None


class LeadAssignRequest(CamelModel):
    assigned_user_id: str = Field(min_length=1)


class LeadStatusRequest(CamelModel):
    status: LeadStatus


class AssignedUser(CamelModel):
    id: str
    first_name: str
    last_name: str
    email: str


class LeadResponse(CamelModel):
    id: str
    first_name: str
    last_name: str
    email: str
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    status: str
    source: str
    assigned_user_id: str | None = None
    assigned_user: AssignedUser | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
