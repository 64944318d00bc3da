"""Retry/timeout behaviour of the resilient service-to-service client."""

import asyncio

import httpx
import pytest

from minicrm.common.errors import (
    ConflictError,
    NotFoundError,
    TransientServiceError,
    ValidationError,
)
from minicrm.common.http_client import CallConfig, ResilientClient, should_retry


def make_client(handler, **config):
    """Client over a mock transport; returns it with the list of recorded sleeps."""

    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = ResilientClient(
        CallConfig(base_url="http://users.test", **config),
        target="user-service",
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )
    return client, sleeps


def test_retries_5xx_until_success():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) <= 3:
            return httpx.Response(503, json={"detail": "unavailable"})
        return httpx.Response(200, json={"id": "u1"})

    client, sleeps = make_client(handler)

    assert asyncio.run(client.get("/users/u1")) == {"id": "u1"}
    assert len(calls) == 4
    assert sleeps == [1.0, 1.0, 1.0]


def test_exhausted_retries_raise_last_status():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502, json={"detail": "bad gateway"})

    client, sleeps = make_client(handler, max_retries=2, retry_delay_ms=250)

    with pytest.raises(TransientServiceError) as info:
        asyncio.run(client.get("/users"))
    assert info.value.status_code == 502
    assert info.value.message == "bad gateway"
    assert len(calls) == 3
    assert sleeps == [0.25, 0.25]


@pytest.mark.parametrize(
    "status,error_cls",
    [(400, ValidationError), (404, NotFoundError), (409, ConflictError), (422, ValidationError)],
)
def test_client_errors_are_not_retried(status, error_cls):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status, json={"detail": "nope"})

    client, sleeps = make_client(handler)

    with pytest.raises(error_cls) as info:
        asyncio.run(client.post("/users", {"email": "a@b.co"}))
    assert info.value.status_code == status
    assert info.value.message == "nope"
    assert len(calls) == 1
    assert sleeps == []


def test_connection_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(201, json={"ok": True})

    client, sleeps = make_client(handler)

    assert asyncio.run(client.post("/users", {})) == {"ok": True}
    assert len(calls) == 3
    assert len(sleeps) == 2


def test_timeouts_surface_without_status():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client, sleeps = make_client(handler, max_retries=1)

    with pytest.raises(TransientServiceError) as info:
        asyncio.run(client.get("/users"))
    assert info.value.status_code is None
    assert "user-service unreachable" in info.value.message
    assert sleeps == [1.0]


def test_zero_retries_means_one_attempt():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="boom")

    client, sleeps = make_client(handler, max_retries=0)

    with pytest.raises(TransientServiceError) as info:
        asyncio.run(client.get("/users"))
    assert info.value.status_code == 500
    assert info.value.message == "boom"
    assert len(calls) == 1
    assert sleeps == []


def test_request_shape_and_empty_body():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["method"] = request.method
        seen["content_type"] = request.headers.get("content-type")
        seen["authorization"] = request.headers.get("authorization")
        seen["body"] = request.content
        return httpx.Response(204)

    client, _ = make_client(handler, headers={"x-client": "tests"})

    result = asyncio.run(client.patch("/users/u1", {"role": "admin"}, headers={"Authorization": "Bearer t"}))

    assert result is None
    assert seen["url"] == "http://users.test/users/u1"
    assert seen["method"] == "PATCH"
    assert seen["content_type"] == "application/json"
    assert seen["authorization"] == "Bearer t"
    assert b'"role"' in seen["body"]


def test_should_retry():
    assert should_retry(TransientServiceError("down"))
    assert should_retry(TransientServiceError("down", status_code=503))
    assert not should_retry(NotFoundError("missing"))
