"""JSON logs carrying the trace id, event id and topic of the work in progress.

Correlation fields live in contextvars, so a log line written deep inside an
SDK call or a consumer handler still names the request or event it belongs to.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from minicrm.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
topic_ctx: ContextVar[str] = ContextVar("topic", default="")

_CONTEXT_VARS = {"trace_id": trace_id_ctx, "event_id": event_id_ctx, "topic": topic_ctx}
# Client libraries that log every poll/connection at INFO.
_CHATTY_LOGGERS = ("aiokafka", "httpx", "httpcore")


class ContextFilter(logging.Filter):
    """Stamp each record with the service name and current correlation ids."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for field, var in _CONTEXT_VARS.items():
            setattr(record, field, var.get())
        return True


@contextmanager
def log_context(**fields: str | None):
    """Bind correlation fields (trace_id, event_id, topic) for the enclosed block."""

    tokens = []
    for field, value in fields.items():
        var = _CONTEXT_VARS[field]
        tokens.append((var, var.set(value or "")))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    """Send JSON lines to stdout; safe to call more than once per process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(event_id)s %(topic)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))


logger = logging.getLogger("minicrm")
