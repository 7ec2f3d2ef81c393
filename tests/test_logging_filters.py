"""Tests for sensitive data filtering in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO

from admission.core.logging import (
    JsonFormatter,
    RequestIdFilter,
    SensitiveDataFilter,
    clear_request_id,
    set_request_id,
)


def _capture(name: str) -> tuple[logging.Logger, StringIO]:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger, stream


def test_sensitive_filter_redacts_api_keys():
    """Ensure SensitiveDataFilter redacts API key fields."""

    logger, stream = _capture("test_redaction")

    logger.info(
        "test_event",
        extra={
            "api_key": "sk-secret-123",
            "x-api-key": "another-secret",
            "safe_field": "visible",
        },
    )

    output = stream.getvalue()

    assert "sk-secret-123" not in output
    assert "another-secret" not in output
    assert "[REDACTED]" in output
    assert "visible" in output


def test_sensitive_filter_redacts_client_addresses():
    """Ensure client addresses and raw limiter keys never reach the log."""

    logger, stream = _capture("test_client_redaction")

    logger.warning(
        "rate_limit.exceeded",
        extra={
            "client_ip": "203.0.113.7",
            "limiter_key": "ip:198.51.100.4:/api/v1",
            "key_hash": "0f1e2d3c4b5a6978",
            "policy": "AUTH",
        },
    )

    output = stream.getvalue()

    assert "203.0.113.7" not in output
    assert "198.51.100.4" not in output
    assert "0f1e2d3c4b5a6978" in output
    assert "AUTH" in output


def test_sensitive_filter_redacts_redis_url():
    """Ensure connection strings with credentials are redacted."""

    logger, stream = _capture("test_redis_redaction")

    logger.info("rate_limit.configured", extra={"redis_url": "redis://:hunter2@cache:6379/0"})

    assert "hunter2" not in stream.getvalue()


def test_sensitive_filter_allows_safe_fields():
    """Verify safe fields pass through unmodified."""

    logger, stream = _capture("test_safe_fields")

    logger.info(
        "safe_event",
        extra={
            "request_id": "req-123",
            "route": "/v1/policies",
            "status": 200,
            "duration_ms": 150.5,
        },
    )

    output = stream.getvalue()

    assert "req-123" in output
    assert "/v1/policies" in output
    assert "200" in output
    assert "[REDACTED]" not in output


def test_sensitive_filter_redacts_nested_dicts():
    """Ensure nested sensitive fields are redacted."""

    logger, stream = _capture("test_nested")

    logger.info(
        "nested_event",
        extra={
            "headers": {
                "x-forwarded-for": "203.0.113.7, 10.0.0.1",
                "user-agent": "pytest",
            },
            "safe_data": {
                "count": 5,
                "type": "test",
            },
        },
    )

    output = stream.getvalue()

    assert "203.0.113.7" not in output
    assert "[REDACTED]" in output
    assert "pytest" in output
    assert "test" in output


def test_request_id_is_taken_from_context():
    """Ensure records logged during a request carry its correlation id."""

    logger, stream = _capture("test_request_id")

    set_request_id("req-ctx-1")
    try:
        logger.info("inside_request")
    finally:
        clear_request_id()
    logger.info("outside_request")

    first, second = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert first["request_id"] == "req-ctx-1"
    assert first["level"] == "info"
    assert first["logger"] == "test_request_id"
    assert "request_id" not in second


def test_json_formatter_includes_exception():
    """Ensure logger.exception output carries the formatted traceback."""

    logger, stream = _capture("test_exception")

    try:
        raise RuntimeError("sweep failed")
    except RuntimeError:
        logger.exception("rate_limit.fallback_sweep_failed")

    payload = json.loads(stream.getvalue())
    assert payload["message"] == "rate_limit.fallback_sweep_failed"
    assert "RuntimeError: sweep failed" in payload["exception"]
