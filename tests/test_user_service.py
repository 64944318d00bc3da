"""User writes commit first, then emit; conflicts surface as 409."""

import asyncio

import pytest

from minicrm.common.errors import ConflictError, NotFoundError
from minicrm.common.events import EventEmitter
from minicrm.services.user.models import UserRole
from minicrm.services.user.schemas import UserCreateRequest, UserUpdateRequest
from minicrm.services.user.service import UserService


def make_service(session_factory, bus):
    return UserService(session_factory, EventEmitter(bus, service_name="tests"))


def new_user(email="ada@example.com", **overrides):
    return UserCreateRequest(first_name="Ada", last_name="Lovelace", email=email, **overrides)


def test_create_emits_user_created(session_factory, bus):
    service = make_service(session_factory, bus)

    user = asyncio.run(service.create_user(new_user(role=UserRole.ADMIN)))

    assert user.role == "admin"
    assert bus.topics == ["user.created"]
    assert bus.events[0].payload == {
        "userId": user.id,
        "email": "ada@example.com",
        "firstName": "Ada",
        "lastName": "Lovelace",
        "role": "admin",
        "timestamp": bus.events[0].payload["timestamp"],
    }


def test_create_defaults_to_sales_rep(session_factory, bus):
    service = make_service(session_factory, bus)

    user = asyncio.run(service.create_user(new_user()))

    assert user.role == "sales_rep"
    assert user.is_active is True


def test_duplicate_email_conflicts_without_event(session_factory, bus):
    service = make_service(session_factory, bus)
    asyncio.run(service.create_user(new_user()))

    with pytest.raises(ConflictError) as info:
        asyncio.run(service.create_user(new_user()))

    assert info.value.status_code == 409
    assert info.value.message == "User with this email already exists"
    assert bus.topics == ["user.created"]


def test_write_survives_broker_outage(session_factory, broken_bus):
    service = make_service(session_factory, broken_bus)

    user = asyncio.run(service.create_user(new_user()))

    assert service.get_user(user.id).email == "ada@example.com"


def test_update_emits_only_supplied_fields(session_factory, bus):
    service = make_service(session_factory, bus)
    user = asyncio.run(service.create_user(new_user()))

    updated = asyncio.run(service.update_user(user.id, UserUpdateRequest(last_name="Byron")))

    assert updated.last_name == "Byron"
    assert updated.first_name == "Ada"
    payload = bus.events[-1].payload
    assert bus.topics[-1] == "user.updated"
    assert set(payload) == {"userId", "lastName", "timestamp"}


def test_update_to_taken_email_conflicts(session_factory, bus):
    service = make_service(session_factory, bus)
    asyncio.run(service.create_user(new_user("ada@example.com")))
    other = asyncio.run(service.create_user(new_user("grace@example.com")))

    with pytest.raises(ConflictError):
        asyncio.run(service.update_user(other.id, UserUpdateRequest(email="ada@example.com")))

    assert service.get_user(other.id).email == "grace@example.com"


def test_lookup_by_email_and_missing_user(session_factory, bus):
    service = make_service(session_factory, bus)
    user = asyncio.run(service.create_user(new_user()))

    assert service.get_user_by_email("ada@example.com").id == user.id
    with pytest.raises(NotFoundError):
        service.get_user_by_email("nobody@example.com")
    with pytest.raises(NotFoundError):
        service.get_user("missing")


def test_delete_emits_user_deleted(session_factory, bus):
    service = make_service(session_factory, bus)
    user = asyncio.run(service.create_user(new_user()))

    asyncio.run(service.delete_user(user.id))

    assert bus.topics == ["user.created", "user.deleted"]
    assert bus.events[-1].payload["userId"] == user.id
    assert service.list_users() == []
