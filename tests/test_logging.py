"""Correlation fields on log records."""

import logging

from minicrm.common.logging import ContextFilter, event_id_ctx, log_context, trace_id_ctx


def test_log_context_binds_and_restores():
    with log_context(trace_id="trace-1", event_id="evt-1"):
        assert trace_id_ctx.get() == "trace-1"
        assert event_id_ctx.get() == "evt-1"

    assert trace_id_ctx.get() == ""
    assert event_id_ctx.get() == ""


def test_filter_stamps_current_ids():
    record = logging.LogRecord("minicrm", logging.INFO, __file__, 1, "hello", None, None)

    with log_context(trace_id="trace-2", topic="user.created"):
        ContextFilter().filter(record)

    assert record.trace_id == "trace-2"
    assert record.topic == "user.created"
    assert record.event_id == ""
