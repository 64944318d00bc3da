"""Explicit route tables mapping public gateway paths onto SDK operations.

Each (method, pattern) is bound to one named SDK method. Tables are checked
once at startup: the operation must exist on the client, its parameters must
match the pattern's placeholders, and no (method, shape) may be declared
twice. Request-time resolution is a plain table lookup.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from minicrm.common.clients import LeadClient, UserClient
from minicrm.common.config import settings
from minicrm.common.errors import NotFoundError, ServiceError
from minicrm.common.logging import logger


METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})
_RESERVED_PARAMS = frozenset({"body", "headers"})


class MethodNotAllowedError(ServiceError):
    status_code = 405


def _split(path: str) -> tuple[str, ...]:
    return tuple(segment for segment in path.strip("/").split("/") if segment)


def _is_param(segment: str) -> bool:
    return segment.startswith("{") and segment.endswith("}")


@dataclass(frozen=True)
class Route:
    """One (method, pattern) -> SDK operation binding."""

    method: str
    pattern: str
    operation: str
    segments: tuple[str, ...] = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "segments", _split(self.pattern))

    @property
    def params(self) -> tuple[str, ...]:
        return tuple(segment[1:-1] for segment in self.segments if _is_param(segment))

    @property
    def shape(self) -> tuple[str, ...]:
        """Pattern with placeholder names erased, for duplicate detection."""

        return tuple("{}" if _is_param(segment) else segment for segment in self.segments)

    @property
    def specificity(self) -> int:
        return sum(1 for segment in self.segments if not _is_param(segment))

    def match(self, segments: tuple[str, ...]) -> dict[str, str] | None:
        if len(segments) != len(self.segments):
            return None
        params: dict[str, str] = {}
        for expected, actual in zip(self.segments, segments):
            if _is_param(expected):
                params[expected[1:-1]] = actual
            elif expected != actual:
                return None
        return params


USER_ROUTES = (
    Route("GET", "/", "list_users"),
    Route("GET", "/email/{email}", "get_user_by_email"),
    Route("GET", "/{user_id}", "get_user"),
    Route("POST", "/", "create_user"),
    Route("PATCH", "/{user_id}", "update_user"),
    Route("DELETE", "/{user_id}", "delete_user"),
)

LEAD_ROUTES = (
    Route("GET", "/", "list_leads"),
    Route("GET", "/user/{user_id}", "list_leads_for_user"),
    Route("GET", "/{lead_id}", "get_lead"),
    Route("POST", "/", "create_lead"),
    Route("PATCH", "/{lead_id}", "update_lead"),
    Route("PATCH", "/{lead_id}/assign", "assign_lead"),
    Route("PATCH", "/{lead_id}/status", "update_lead_status"),
    Route("DELETE", "/{lead_id}", "delete_lead"),
)


class RouteTable:
    """Validated routes for one downstream service family."""

    def __init__(self, family: str, client: Any, routes: tuple[Route, ...]) -> None:
        self.family = family
        self.client = client
        self._takes_body: dict[Route, bool] = {}
        seen: set[tuple[str, tuple[str, ...]]] = set()
        for route in routes:
            self._validate(route, seen)
        # Literal segments beat placeholders: /email/{email} before /{user_id}.
        self.routes = sorted(routes, key=lambda route: route.specificity, reverse=True)

    def _validate(self, route: Route, seen: set) -> None:
        where = f"{self.family} {route.method} {route.pattern}"
        if route.method not in METHODS:
            raise ValueError(f"{where}: unsupported method")
        key = (route.method, route.shape)
        if key in seen:
            raise ValueError(f"{where}: duplicate route")
        seen.add(key)

        operation = getattr(self.client, route.operation, None)
        if operation is None or not callable(operation):
            raise ValueError(f"{where}: {type(self.client).__name__} has no operation {route.operation}")
        params = inspect.signature(operation).parameters
        if "headers" not in params:
            raise ValueError(f"{where}: {route.operation} cannot forward headers")
        path_params = set(params) - _RESERVED_PARAMS
        if path_params != set(route.params):
            raise ValueError(
                f"{where}: pattern parameters {sorted(route.params)} do not match "
                f"{route.operation} parameters {sorted(path_params)}"
            )
        self._takes_body[route] = "body" in params

    def resolve(self, method: str, path: str) -> tuple[Route, dict[str, str]]:
        """Find the route for a request; 404 for unknown paths, 405 for wrong verbs."""

        method = method.upper()
        if path and not path.startswith("/"):
            raise NotFoundError(f"No {self.family} route for {method} {path}")
        segments = _split(path)
        path_known = False
        for route in self.routes:
            params = route.match(segments)
            if params is None:
                continue
            if route.method == method:
                return route, params
            path_known = True
        if path_known:
            raise MethodNotAllowedError("Method not allowed")
        raise NotFoundError(f"No {self.family} route for {method} {path or '/'}")

    def takes_body(self, route: Route) -> bool:
        return self._takes_body[route]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _authorization(headers: dict[str, str] | None) -> str | None:
    for name, value in (headers or {}).items():
        if name.lower() == "authorization":
            return value
    return None


class GatewayRouter:
    """Forwards public requests to backends and aggregates their health."""

    def __init__(
        self,
        users: UserClient,
        leads: LeadClient,
        health_targets: dict[str, str] | None = None,
        health_timeout_ms: int | None = None,
        health_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.tables = {
            "users": RouteTable("users", users, USER_ROUTES),
            "leads": RouteTable("leads", leads, LEAD_ROUTES),
        }
        self.health_targets = health_targets or {
            "userService": f"{settings.user_service_url}/health",
            "leadService": f"{settings.lead_service_url}/health",
            "notificationService": f"{settings.notification_service_url}/health",
        }
        self.health_timeout_ms = health_timeout_ms or settings.health_check_timeout_ms
        self._health_transport = health_transport

    async def route(
        self,
        family: str,
        method: str,
        path_suffix: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Resolve and invoke the SDK operation for one inbound request.

        The caller's `Authorization` header is forwarded unchanged. Downstream
        `ServiceError`s propagate untouched so the edge can re-signal their
        status code and message.
        """

        table = self.tables.get(family)
        if table is None:
            raise NotFoundError(f"Unknown service family {family}")
        route, params = table.resolve(method, path_suffix)
        authorization = _authorization(headers)
        logger.info(
            "routing family=%s method=%s path=%s operation=%s has_body=%s has_auth=%s",
            family,
            method,
            path_suffix,
            route.operation,
            body is not None,
            authorization is not None,
        )

        kwargs: dict[str, Any] = dict(params)
        if table.takes_body(route):
            kwargs["body"] = body if body is not None else {}
        forward = {"Authorization": authorization} if authorization else None
        try:
            return await getattr(table.client, route.operation)(**kwargs, headers=forward)
        except ServiceError as exc:
            logger.error(
                "%s service routing error method=%s path=%s status=%s error=%s",
                family,
                method,
                path_suffix,
                exc.status_code,
                exc.message,
            )
            raise

    async def route_to_users(self, method: str, path_suffix: str, body: Any = None, headers=None) -> Any:
        return await self.route("users", method, path_suffix, body, headers)

    async def route_to_leads(self, method: str, path_suffix: str, body: Any = None, headers=None) -> Any:
        return await self.route("leads", method, path_suffix, body, headers)

    async def _check_target(self, client: httpx.AsyncClient, url: str) -> dict:
        try:
            response = await client.get(url)
        except httpx.HTTPError as exc:
            return {"status": "unhealthy", "error": str(exc) or type(exc).__name__, "timestamp": _now_iso()}
        if response.is_success:
            return {"status": "healthy", "timestamp": _now_iso()}
        return {
            "status": "unhealthy",
            "error": f"HTTP {response.status_code} {response.reason_phrase}",
            "timestamp": _now_iso(),
        }

    async def check_health(self) -> dict:
        """Ask every backend for's own `/health`; one bad entry never fails the whole check."""

        logger.info("checking all services health")
        async with httpx.AsyncClient(
            timeout=self.health_timeout_ms / 1000,
            transport=self._health_transport,
        ) as client:
            results = await asyncio.gather(*(self._check_target(client, url) for url in self.health_targets.values()))
        services = {"gateway": {"status": "healthy", "timestamp": _now_iso()}}
        services.update(zip(self.health_targets, results))
        overall = "healthy" if all(entry["status"] == "healthy" for entry in services.values()) else "degraded"
        logger.info(
            "health check completed status=%s %s",
            overall,
            " ".join(f"{name}={entry['status']}" for name, entry in services.items()),
        )
        return {"status": overall, "services": services}
