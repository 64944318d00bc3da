"""HTTP surface for lead-service-owned lead records."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Response

from minicrm.common.auth import Identity, require_identity
from minicrm.common.clients import UserClient
from minicrm.common.db import SessionLocal
from minicrm.common.events import EventEmitter, KafkaBus
from minicrm.common.startup import create_service_app
from minicrm.services.lead.schemas import (
    LeadAssignRequest,
    LeadCreateRequest,
    LeadResponse,
    LeadStatusRequest,
    LeadUpdateRequest,
)
from minicrm.services.lead.service import LeadService


bus = KafkaBus()
users = UserClient.from_settings()
service = LeadService(SessionLocal, EventEmitter(bus), users)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Close the Kafka producer and the user-service client on shutdown."""

    yield
    await bus.close()
    await users.close()


app = create_service_app(
    "MiniCRM Lead Service",
    ["POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "USER_SERVICE_URL", "JWT_SECRET"],
    lifespan=lifespan,
)


@app.post("/leads", response_model=LeadResponse, status_code=201)
async def create_lead(req: LeadCreateRequest, identity: Identity = Depends(require_identity)):
    lead = await service.create_lead(req)
    return await service.to_response(lead, identity)


@app.get("/leads", response_model=list[LeadResponse])
async def list_leads(identity: Identity = Depends(require_identity)):
    leads = service.list_leads()
    return await asyncio.gather(*(service.to_response(lead, identity) for lead in leads))


@app.get("/leads/user/{user_id}", response_model=list[LeadResponse])
async def list_leads_for_user(user_id: str, identity: Identity = Depends(require_identity)):
    leads = service.list_leads_for_user(user_id)
    return await asyncio.gather(*(service.to_response(lead, identity) for lead in leads))


@app.get("/leads/{lead_id}", response_model=LeadResponse)
async def get_lead(lead_id: str, identity: Identity = Depends(require_identity)):
    return await service.to_response(service.get_lead(lead_id), identity)


@app.patch("/leads/{lead_id}", response_model=LeadResponse)
async def update_lead(lead_id: str, req: LeadUpdateRequest, identity: Identity = Depends(require_identity)):
    lead = await service.update_lead(lead_id, req, identity)
    return await service.to_response(lead, identity)


@app.patch("/leads/{lead_id}/assign", response_model=LeadResponse)
async def assign_lead(lead_id: str, req: LeadAssignRequest, identity: Identity = Depends(require_identity)):
    lead = await service.assign_lead(lead_id, req.assigned_user_id, identity)
    return await service.to_response(lead, identity)


@app.patch("/leads/{lead_id}/status", response_model=LeadResponse)
async def update_lead_status(lead_id: str, req: LeadStatusRequest, identity: Identity = Depends(require_identity)):
    lead = await service.update_status(lead_id, req.status, identity)
    return await service.to_response(lead, identity)


@app.delete("/leads/{lead_id}", status_code=204)
async def delete_lead(lead_id: str, _: Identity = Depends(require_identity)):
    await service.delete_lead(lead_id)
    return Response(status_code=204)
