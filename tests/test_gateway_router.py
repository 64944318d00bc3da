"""Gateway route tables: startup validation, resolution and forwarding."""

import asyncio
import json

import httpx
import pytest

from minicrm.common.clients import LeadClient, UserClient
from minicrm.common.errors import ConflictError, NotFoundError, TransientServiceError
from minicrm.common.http_client import CallConfig, ResilientClient
from minicrm.services.api_gateway.router import (
    GatewayRouter,
    MethodNotAllowedError,
    Route,
    RouteTable,
)


AUTH = {"authorization": "Bearer abc", "host": "gateway.test"}


class Backend:
    """Mock transport that records requests and answers from a callback."""

    def __init__(self, respond=None):
        self.requests = []
        self.respond = respond or (lambda request: httpx.Response(200, json={"ok": True}))

    def __call__(self, request):
        self.requests.append(request)
        return self.respond(request)


def make_router(user_backend=None, lead_backend=None, health_backend=None):
    async def no_sleep(seconds):
        return None

    def client(base_url, target, backend):
        return ResilientClient(
            CallConfig(base_url=base_url, max_retries=1),
            target=target,
            transport=httpx.MockTransport(backend or Backend()),
            sleep=no_sleep,
        )

    return GatewayRouter(
        UserClient(client("http://users.test", "user-service", user_backend)),
        LeadClient(client("http://leads.test", "lead-service", lead_backend)),
        health_targets={
            "userService": "http://users.test/health",
            "leadService": "http://leads.test/health",
            "notificationService": "http://notifications.test/health",
        },
        health_timeout_ms=500,
        health_transport=httpx.MockTransport(health_backend or Backend()),
    )


def test_literal_segment_beats_parameter():
    backend = Backend()
    router = make_router(user_backend=backend)

    asyncio.run(router.route_to_users("GET", "/email/ada@example.com", headers=AUTH))
    asyncio.run(router.route_to_users("GET", "/u1", headers=AUTH))

    assert [r.url.path for r in backend.requests] == ["/users/email/ada@example.com", "/users/u1"]


def test_root_path_lists_and_creates():
    backend = Backend()
    router = make_router(user_backend=backend)

    asyncio.run(router.route_to_users("GET", "", headers=AUTH))
    asyncio.run(router.route_to_users("POST", "/", {"email": "ada@example.com"}, AUTH))

    assert [(r.method, r.url.path) for r in backend.requests] == [("GET", "/users"), ("POST", "/users")]
    assert json.loads(backend.requests[1].content) == {"email": "ada@example.com"}


def test_authorization_is_forwarded_unchanged():
    backend = Backend()
    router = make_router(lead_backend=backend)

    asyncio.run(router.route_to_leads("PATCH", "/l1/status", {"status": "contacted"}, AUTH))

    request = backend.requests[0]
    assert request.method == "PATCH"
    assert request.url.path == "/leads/l1/status"
    assert request.headers["authorization"] == "Bearer abc"
    assert "gateway.test" not in request.headers.get("host", "")
    assert json.loads(request.content) == {"status": "contacted"}


def test_lead_routes_resolve_to_distinct_operations():
    table = make_router().tables["leads"]

    assert table.resolve("GET", "/user/u1")[0].operation == "list_leads_for_user"
    assert table.resolve("GET", "/l1")[0].operation == "get_lead"
    assert table.resolve("PATCH", "/l1/assign")[0].operation == "assign_lead"
    assert table.resolve("PATCH", "/l1") == (Route("PATCH", "/{lead_id}", "update_lead"), {"lead_id": "l1"})
    assert table.resolve("DELETE", "/l1/")[0].operation == "delete_lead"


def test_unknown_path_is_404_and_wrong_verb_is_405():
    router = make_router()

    with pytest.raises(NotFoundError):
        asyncio.run(router.route_to_users("GET", "/u1/leads/extra", headers=AUTH))
    with pytest.raises(NotFoundError):
        asyncio.run(router.route_to_users("GET", "x", headers=AUTH))
    with pytest.raises(MethodNotAllowedError) as info:
        asyncio.run(router.route_to_users("PUT", "/u1", {}, AUTH))
    assert info.value.status_code == 405


def test_downstream_status_and_message_pass_through():
    router = make_router(
        user_backend=Backend(lambda request: httpx.Response(409, json={"detail": "User with this email already exists"}))
    )

    with pytest.raises(ConflictError) as info:
        asyncio.run(router.route_to_users("POST", "/", {"email": "ada@example.com"}, AUTH))

    assert info.value.status_code == 409
    assert info.value.message == "User with this email already exists"


def test_exhausted_backend_keeps_its_status():
    backend = Backend(lambda request: httpx.Response(503, json={"detail": "warming up"}))
    router = make_router(lead_backend=backend)

    with pytest.raises(TransientServiceError) as info:
        asyncio.run(router.route_to_leads("GET", "/", headers=AUTH))

    assert info.value.status_code == 503
    assert len(backend.requests) == 2


class StubClient:
    async def get_thing(self, thing_id, headers=None):
        return None

    async def create_thing(self, body, headers=None):
        return None

    async def legacy(self, thing_id):
        return None


@pytest.mark.parametrize(
    "routes",
    [
        (Route("GET", "/{thing_id}", "get_missing"),),
        (Route("GET", "/{other_id}", "get_thing"),),
        (Route("GET", "/", "get_thing"),),
        (Route("GET", "/{thing_id}", "legacy"),),
        (Route("TRACE", "/{thing_id}", "get_thing"),),
        (Route("GET", "/{thing_id}", "get_thing"), Route("GET", "/{id}", "get_thing")),
    ],
)
def test_bad_route_tables_fail_at_startup(routes):
    with pytest.raises(ValueError):
        RouteTable("things", StubClient(), routes)


def test_body_is_passed_only_to_operations_that_take_one():
    table = RouteTable(
        "things",
        StubClient(),
        (Route("GET", "/{thing_id}", "get_thing"), Route("POST", "/", "create_thing")),
    )

    assert table.takes_body(table.resolve("POST", "/")[0])
    assert not table.takes_body(table.resolve("GET", "/t1")[0])


def test_health_reports_each_backend():
    def respond(request):
        if request.url.host == "users.test":
            return httpx.Response(200, json={"ok": True})
        if request.url.host == "leads.test":
            return httpx.Response(503)
        raise httpx.ConnectError("connection refused", request=request)

    health = asyncio.run(make_router(health_backend=Backend(respond)).check_health())

    assert health["status"] == "degraded"
    services = health["services"]
    assert services["gateway"]["status"] == "healthy"
    assert services["userService"]["status"] == "healthy"
    assert services["leadService"] == {
        "status": "unhealthy",
        "error": "HTTP 503 Service Unavailable",
        "timestamp": services["leadService"]["timestamp"],
    }
    assert "connection refused" in services["notificationService"]["error"]


def test_health_all_up():
    health = asyncio.run(make_router().check_health())

    assert health["status"] == "healthy"
    assert set(health["services"]) == {"gateway", "userService", "leadService", "notificationService"}
