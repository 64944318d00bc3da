"""Resilient outbound HTTP client used for every service-to-service call.

Each call gets the configured timeout and a bounded retry loop: connection
failures, timeouts and 5xx responses are retried after a fixed delay, while
any other failure is raised on the first attempt. When retries run out, the
last failure is raised as-is so callers can read the real status code.
"""

import asyncio
from time import perf_counter
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from minicrm.common.config import settings
from minicrm.common.errors import ServiceError, TransientServiceError, error_for_status
from minicrm.common.logging import logger, trace_id_ctx
from minicrm.common.metrics import outbound_call_duration_seconds, outbound_calls_total, retries_total
from minicrm.common.tracing import get_tracer


tracer = get_tracer("http_client")


class CallConfig(BaseModel):
    """Per-target call settings, created once and never mutated."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    timeout_ms: int = Field(default=5000, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    headers: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_settings(cls, base_url: str, **overrides: Any) -> "CallConfig":
        """Config for one target using the process-wide timeout/retry settings."""

        values = {
            "base_url": base_url,
            "timeout_ms": settings.http_timeout_ms,
            "max_retries": settings.http_max_retries,
            "retry_delay_ms": settings.http_retry_delay_ms,
        }
        values.update(overrides)
        return cls(**values)


def _error_message(response: httpx.Response) -> str:
    """Pull the downstream's own message out of a FastAPI-style error body."""

    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("detail", "message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return response.text or response.reason_phrase


def should_retry(error: ServiceError) -> bool:
    """No response at all, or a 5xx response."""

    if not isinstance(error, TransientServiceError):
        return False
    return error.status_code is None or 500 <= error.status_code < 600


class ResilientClient:
    """Timeout + bounded fixed-delay retry around an `httpx.AsyncClient`."""

    def __init__(
        self,
        config: CallConfig,
        target: str = "downstream",
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.target = target
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_ms / 1000,
            headers={"Content-Type": "application/json", **config.headers},
            transport=transport,
        )

    async def call(
        self,
        method: str,
        path: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Run one logical call, retrying transient failures.

        Returns the decoded JSON body (None for an empty body). Raises the
        last `ServiceError` unchanged once retries are exhausted.
        """

        method = method.upper()
        request_headers = dict(headers or {})
        trace_id = trace_id_ctx.get()
        if trace_id:
            request_headers.setdefault("x-trace-id", trace_id)

        max_attempts = self.config.max_retries + 1
        started = perf_counter()
        outcome = "error"
        with tracer.start_as_current_span(f"{self.target} {method}") as span:
            span.set_attribute("http.method", method)
            span.set_attribute("http.target", path)
            try:
                for attempt in range(1, max_attempts + 1):
                    try:
                        result = await self._attempt(method, path, body, request_headers, attempt)
                    except ServiceError as exc:
                        if attempt >= max_attempts or not should_retry(exc):
                            raise
                        retries_total.labels(service=settings.service_name, dependency=self.target).inc()
                        logger.warning(
                            "http_retry method=%s path=%s target=%s attempt=%s max_retries=%s delay_ms=%s error=%s",
                            method,
                            path,
                            self.target,
                            attempt,
                            self.config.max_retries,
                            self.config.retry_delay_ms,
                            exc.message,
                        )
                        await self._sleep(self.config.retry_delay_ms / 1000)
                        continue
                    outcome = "success"
                    span.set_attribute("retry.attempts", attempt)
                    return result
            finally:
                outbound_calls_total.labels(
                    service=settings.service_name,
                    dependency=self.target,
                    method=method,
                    outcome=outcome,
                ).inc()
                outbound_call_duration_seconds.labels(
                    service=settings.service_name,
                    dependency=self.target,
                    method=method,
                ).observe(max(0.0, perf_counter() - started))

    async def _attempt(
        self,
        method: str,
        path: str,
        body: Any,
        headers: dict[str, str],
        attempt: int,
    ) -> Any:
        """Send one request and translate the outcome into a value or a `ServiceError`."""

        logger.info(
            "http_request method=%s path=%s target=%s base_url=%s attempt=%s",
            method,
            path,
            self.target,
            self.config.base_url,
            attempt,
        )
        try:
            response = await self._client.request(method, path, json=body, headers=headers)
        except httpx.TransportError as exc:
            # Covers connect errors and every timeout flavour.
            message = str(exc) or exc.__class__.__name__
            logger.error(
                "http_response_error method=%s path=%s target=%s attempt=%s status=%s error=%s",
                method,
                path,
                self.target,
                attempt,
                None,
                message,
            )
            raise TransientServiceError(f"{self.target} unreachable: {message}") from exc

        if response.is_success:
            logger.info(
                "http_response method=%s path=%s target=%s attempt=%s status=%s",
                method,
                path,
                self.target,
                attempt,
                response.status_code,
            )
            if not response.content:
                return None
            return response.json()

        message = _error_message(response)
        logger.error(
            "http_response_error method=%s path=%s target=%s attempt=%s status=%s error=%s",
            method,
            path,
            self.target,
            attempt,
            response.status_code,
            message,
        )
        raise error_for_status(response.status_code, message)

    async def get(self, path: str, headers: dict[str, str] | None = None) -> Any:
        return await self.call("GET", path, headers=headers)

    async def post(self, path: str, body: Any = None, headers: dict[str, str] | None = None) -> Any:
        return await self.call("POST", path, body, headers)

    async def put(self, path: str, body: Any = None, headers: dict[str, str] | None = None) -> Any:
        return await self.call("PUT", path, body, headers)

    async def patch(self, path: str, body: Any = None, headers: dict[str, str] | None = None) -> Any:
        return await self.call("PATCH", path, body, headers)

    async def delete(self, path: str, headers: dict[str, str] | None = None) -> Any:
        return await self.call("DELETE", path, headers=headers)

    async def close(self) -> None:
        await self._client.aclose()
