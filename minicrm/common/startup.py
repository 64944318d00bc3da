"""Startup-time helpers: safe config logging and the shared service app shell."""

import os
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request

from minicrm.common.config import settings
from minicrm.common.errors import ServiceError, service_error_handler
from minicrm.common.logging import configure_logging, log_context, logger
from minicrm.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from minicrm.common.tracing import instrument_app, setup_tracing


def _safe_env(name: str) -> str:
    """Return env value with simple redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(secret in name for secret in ["KEY", "SECRET", "PASSWORD", "TOKEN", "DSN"]):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)


def create_service_app(title: str, config_keys: list[str], lifespan=None, health: bool = True) -> FastAPI:
    """Build a FastAPI app with logging, tracing, metrics and error mapping wired in.

    Also registers `/metrics` and, unless `health` is False, a liveness `/health`.
    """

    configure_logging()
    setup_tracing(settings.service_name)
    log_startup_config(settings.service_name, ["SERVICE_NAME", *config_keys])

    app = FastAPI(title=title, lifespan=lifespan)
    instrument_app(app)
    app.add_exception_handler(ServiceError, service_error_handler)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency, and bind the trace id for logs."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            with log_context(trace_id=request.headers.get("x-trace-id") or str(uuid4())):
                response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=settings.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=settings.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    if health:

        @app.get("/health")
        def liveness():
            """Container liveness endpoint."""

            return {"ok": True, "service": settings.service_name}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app
