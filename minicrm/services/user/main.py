"""HTTP surface for user-service-owned user records."""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Response

from minicrm.common.auth import Identity, require_identity
from minicrm.common.db import SessionLocal
from minicrm.common.events import EventEmitter, KafkaBus
from minicrm.common.startup import create_service_app
from minicrm.services.user.schemas import UserCreateRequest, UserResponse, UserUpdateRequest
from minicrm.services.user.service import UserService


bus = KafkaBus()
service = UserService(SessionLocal, EventEmitter(bus))


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Close the Kafka producer with the application lifecycle."""

    yield
    await bus.close()


app = create_service_app(
    "MiniCRM User Service",
    ["POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "JWT_SECRET"],
    lifespan=lifespan,
)


@app.post("/users", response_model=UserResponse, status_code=201)
async def create_user(req: UserCreateRequest):
    """Register a user and emit `user.created`; open so sign-up needs no token."""

    return await service.create_user(req)


@app.get("/users", response_model=list[UserResponse])
def list_users(_: Identity = Depends(require_identity)):
    return service.list_users()


@app.get("/users/email/{email}", response_model=UserResponse)
def get_user_by_email(email: str, _: Identity = Depends(require_identity)):
    return service.get_user_by_email(email)


@app.get("/users/{user_id}", response_model=UserResponse)
def get_user(user_id: str, _: Identity = Depends(require_identity)):
    return service.get_user(user_id)


@app.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(user_id: str, req: UserUpdateRequest, _: Identity = Depends(require_identity)):
    return await service.update_user(user_id, req)


@app.delete("/users/{user_id}", status_code=204)
async def delete_user(user_id: str, _: Identity = Depends(require_identity)):
    await service.delete_user(user_id)
    return Response(status_code=204)
