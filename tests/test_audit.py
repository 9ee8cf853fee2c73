"""Tests for src/logging/audit.py — JSON audit logging."""

import json
import logging
import sys

import pytest

from src.config.settings import Settings
from src.logging.audit import (
    AUDIT_LOGGER,
    JSONFormatter,
    RequestTimer,
    generate_request_id,
    get_audit_logger,
    mask_secret,
    request_id_var,
    setup_logging,
)


def make_record(msg="test", level=logging.INFO, exc_info=None, **audit_data) -> logging.LogRecord:
    record = logging.LogRecord(
        name=AUDIT_LOGGER, level=level, pathname="",
        lineno=0, msg=msg, args=(), exc_info=exc_info,
    )
    if audit_data:
        record.audit_data = audit_data
    return record


@pytest.fixture
def restore_audit_logger():
    yield
    logger = get_audit_logger()
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()


class TestJSONFormatter:

    def test_output_is_valid_json(self):
        parsed = json.loads(JSONFormatter().format(make_record("hello")))
        assert parsed["message"] == "hello"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "gateway.audit"
        assert "timestamp" in parsed

    def test_includes_request_id(self):
        token = request_id_var.set("req-abc123")
        try:
            parsed = json.loads(JSONFormatter().format(make_record()))
            assert parsed["request_id"] == "req-abc123"
        finally:
            request_id_var.reset(token)

    def test_empty_request_id_default(self):
        parsed = json.loads(JSONFormatter().format(make_record()))
        assert parsed["request_id"] == ""

    def test_includes_audit_data(self):
        record = make_record(key_id="key-1", backend_id="backend-2", upstream_status=200)
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["key_id"] == "key-1"
        assert parsed["backend_id"] == "backend-2"
        assert parsed["upstream_status"] == 200

    def test_secret_fields_scrubbed(self):
        record = make_record(backend_secret="sk-backend", Authorization="Bearer sk-client", model="gpt-4")
        output = JSONFormatter().format(record)
        assert "sk-backend" not in output
        assert "sk-client" not in output
        assert json.loads(output)["model"] == "gpt-4"

    def test_exception_serialized(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            exc_info = sys.exc_info()
        parsed = json.loads(JSONFormatter().format(make_record(level=logging.ERROR, exc_info=exc_info)))
        assert "RuntimeError: boom" in parsed["exception"]


class TestMaskSecret:

    def test_long_key(self):
        assert mask_secret("sk-client-aaa") == "sk-c...aaa"

    def test_short_key_fully_masked(self):
        assert mask_secret("abc") == "***"

    def test_empty(self):
        assert mask_secret(None) == ""


class TestGenerateRequestId:

    def test_length(self):
        assert len(generate_request_id()) == 12

    def test_uniqueness(self):
        ids = {generate_request_id() for _ in range(100)}
        assert len(ids) == 100

    def test_hex_chars_only(self):
        assert all(c in "0123456789abcdef" for c in generate_request_id())


class TestRequestTimer:

    def test_context_manager(self):
        with RequestTimer() as timer:
            _ = sum(range(1000))
        assert timer.elapsed_ms > 0
        assert isinstance(timer.elapsed_ms, float)

    def test_manual_start_stop(self):
        timer = RequestTimer().start()
        _ = sum(range(1000))
        elapsed = timer.stop()
        assert elapsed == timer.elapsed_ms
        assert elapsed > 0

    def test_stop_before_start(self):
        with pytest.raises(RuntimeError):
            RequestTimer().stop()


class TestSetupLogging:

    def test_stdout_handler(self, restore_audit_logger):
        logger = setup_logging(Settings(audit_log_file=""))
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.StreamHandler)
        assert logger.propagate is False

    def test_level(self, restore_audit_logger):
        logger = setup_logging(Settings(log_level="warning"))
        assert logger.level == logging.WARNING

    def test_file_handler(self, restore_audit_logger, tmp_path):
        path = tmp_path / "audit.log"
        logger = setup_logging(Settings(audit_log_file=str(path)))
        assert any(isinstance(h, logging.FileHandler) for h in logger.handlers)

        logger.info("written", extra={"audit_data": {"key_id": "key-1"}})
        for handler in logger.handlers:
            handler.flush()
        line = json.loads(path.read_text(encoding="utf-8").splitlines()[-1])
        assert line["message"] == "written"
        assert line["key_id"] == "key-1"

    def test_idempotent(self, restore_audit_logger):
        setup_logging(Settings())
        logger = setup_logging(Settings())
        assert len(logger.handlers) == 1

    def test_reads_env_by_default(self, restore_audit_logger, override_settings):
        override_settings(LOG_LEVEL="DEBUG")
        assert setup_logging().level == logging.DEBUG
