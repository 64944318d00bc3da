"""Public edge: authenticates callers and forwards to backends via the route table."""

import json
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from minicrm.common.auth import Identity, require_identity
from minicrm.common.clients import LeadClient, UserClient
from minicrm.common.errors import ValidationError
from minicrm.common.startup import create_service_app
from minicrm.services.api_gateway.router import METHODS, GatewayRouter


users = UserClient.from_settings()
leads = LeadClient.from_settings()
# Route tables are validated here; a bad binding fails the import, not a request.
router = GatewayRouter(users, leads)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Close downstream HTTP pools on shutdown."""

    yield
    await users.close()
    await leads.close()


app = create_service_app(
    "MiniCRM API Gateway",
    ["USER_SERVICE_URL", "LEAD_SERVICE_URL", "NOTIFICATION_SERVICE_URL", "JWT_SECRET"],
    lifespan=lifespan,
    health=False,
)


async def _json_body(request: Request):
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise ValidationError("Request body must be valid JSON") from exc


def _respond(result, method: str):
    if result is None and method == "DELETE":
        return Response(status_code=204)
    if method == "POST":
        return JSONResponse(result, status_code=201)
    return result


@app.get("/health")
async def health():
    """Aggregate health of the gateway and every backend."""

    return await router.check_health()


@app.post("/auth/register", status_code=201)
async def register(request: Request):
    """Open sign-up; forwards to the user service's create operation."""

    return await router.route_to_users("POST", "/", await _json_body(request), dict(request.headers))


@app.api_route("/users{path:path}", methods=sorted(METHODS))
async def route_users(path: str, request: Request, _: Identity = Depends(require_identity)):
    body = await _json_body(request)
    result = await router.route_to_users(request.method, path, body, dict(request.headers))
    return _respond(result, request.method)


@app.api_route("/leads{path:path}", methods=sorted(METHODS))
async def route_leads(path: str, request: Request, _: Identity = Depends(require_identity)):
    body = await _json_body(request)
    result = await router.route_to_leads(request.method, path, body, dict(request.headers))
    return _respond(result, request.method)
