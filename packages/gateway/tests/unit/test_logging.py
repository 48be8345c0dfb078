"""Unit tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

from cloudchan_gateway.logging_config import JsonFormatter, configure_logging
from cloudchan_gateway.middleware.request_id import current_request_id


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="cloudchan_gateway.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    def test_base_fields(self):
        entry = json.loads(JsonFormatter().format(_record("hello")))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "cloudchan_gateway.test"
        assert entry["message"] == "hello"
        assert "timestamp" in entry
        assert entry["request_id"] is None

    def test_context_fields_are_included(self):
        entry = json.loads(
            JsonFormatter().format(
                _record(
                    "probe",
                    gateway_url="https://a.example/ipfs/",
                    cid="bafy",
                    file_id="f1",
                    attempt=2,
                    latency_ms=120,
                    error_type="timeout",
                )
            )
        )

        assert entry["gateway_url"] == "https://a.example/ipfs/"
        assert entry["cid"] == "bafy"
        assert entry["file_id"] == "f1"
        assert entry["attempt"] == 2
        assert entry["latency_ms"] == 120
        assert entry["error_type"] == "timeout"

    def test_request_id_from_context(self):
        token = current_request_id.set("req-42")
        try:
            entry = json.loads(JsonFormatter().format(_record("in request")))
        finally:
            current_request_id.reset(token)

        assert entry["request_id"] == "req-42"

    def test_secrets_are_redacted(self):
        entry = json.loads(
            JsonFormatter().format(_record("connecting with api_key=abc123 and password: hunter2"))
        )

        assert "abc123" not in entry["message"]
        assert "hunter2" not in entry["message"]
        assert "[REDACTED]" in entry["message"]

    def test_exception_is_serialised(self):
        try:
            raise ValueError("token=s3cr3t broke")
        except ValueError:
            record = _record("failed")
            record.exc_info = sys.exc_info()

        entry = json.loads(JsonFormatter().format(record))
        assert "ValueError" in entry["exception"]
        assert "s3cr3t" not in entry["exception"]


def test_configure_logging_installs_json_handler():
    configure_logging("DEBUG")

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, JsonFormatter)
