"""
Tests for structured logging and request id propagation.
"""
import json
import logging
from fastapi.testclient import TestClient
from core.logging_config import CustomJsonFormatter, LogContextFilter, configure_logging, request_id_var

JSON_FORMAT = '%(timestamp)s %(level)s %(service)s %(request_id)s %(message)s'


def make_record(msg: str = "hello %s", args=("bob",)) -> logging.LogRecord:
    return logging.LogRecord("chat.test", logging.INFO, __file__, 10, msg, args, None)


class TestJsonFormatter:

    def test_mandatory_fields(self):
        record = make_record()
        token = request_id_var.set("req-1")
        try:
            LogContextFilter().filter(record)
        finally:
            request_id_var.reset(token)

        data = json.loads(CustomJsonFormatter(service_name="messaging-api", fmt=JSON_FORMAT).format(record))

        assert data["message"] == "hello bob"
        assert data["service"] == "messaging-api"
        assert data["level"] == "INFO"
        assert data["logger"] == "chat.test"
        assert data["request_id"] == "req-1"
        assert data["timestamp"].endswith("Z")

    def test_outside_request_uses_default_id(self):
        data = json.loads(CustomJsonFormatter(fmt=JSON_FORMAT).format(make_record("tick", ())))

        assert data["request_id"] == "no-request"
        assert data["service"] == "messaging"


class TestConfigureLogging:

    def test_single_handler_installed(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_logging(service_name="messaging-backfill", level="debug", enable_json=True)

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            handler = root.handlers[0]
            assert isinstance(handler.formatter, CustomJsonFormatter)
            assert any(isinstance(f, LogContextFilter) for f in handler.filters)
            assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)


class TestRequestIdMiddleware:

    def test_incoming_id_echoed(self, test_client: TestClient):
        response = test_client.get("/health", headers={"X-Request-ID": "trace-42"})

        assert response.headers["X-Request-ID"] == "trace-42"

    def test_id_generated_when_missing(self, test_client: TestClient):
        response = test_client.get("/health")

        assert len(response.headers["X-Request-ID"]) == 36
