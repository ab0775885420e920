"""
Structured logging tests - JSON lines, correlation IDs, token masking.
"""
import json
import logging
import sys

from src.utils.logging import (
    StructuredJsonFormatter,
    TokenRedactionFilter,
    configure_structured_logging,
    correlation_id_ctx,
    generate_correlation_id,
    get_correlation_id,
    mask_token,
    redact_tokens,
    set_correlation_id,
)


def _record(msg="hello %s", args=("world",), level=logging.INFO, **extra):
    record = logging.LogRecord("relate.test", level, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestCorrelationId:
    def test_set_and_get(self):
        token = correlation_id_ctx.set(None)
        try:
            set_correlation_id("req-1")
            assert get_correlation_id() == "req-1"
        finally:
            correlation_id_ctx.reset(token)

    def test_generated_ids_are_unique_hex(self):
        first, second = generate_correlation_id(), generate_correlation_id()
        assert first != second
        assert len(first) == 32
        int(first, 16)


class TestStructuredJsonFormatter:
    def test_single_line_json(self):
        token = correlation_id_ctx.set("req-9")
        try:
            line = StructuredJsonFormatter().format(_record())
        finally:
            correlation_id_ctx.reset(token)

        entry = json.loads(line)
        assert entry["message"] == "hello world"
        assert entry["level"] == "INFO"
        assert entry["module"] == "relate.test"
        assert entry["correlation_id"] == "req-9"
        assert "\n" not in line

    def test_engagement_fields_copied(self):
        entry = json.loads(StructuredJsonFormatter().format(
            _record(message_id="m1", event_type="open", policy="default")
        ))
        assert entry["message_id"] == "m1"
        assert entry["event_type"] == "open"
        assert entry["policy"] == "default"
        assert "client_ip" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()
        entry = json.loads(StructuredJsonFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]


class TestMaskToken:
    def test_masks_long_token(self):
        assert mask_token("abcdefghijklmnopqrstuvwxyz") == "abcdefghij..."

    def test_empty(self):
        assert mask_token("") == "<none>"
        assert mask_token(None) == "<none>"


class TestTokenRedaction:
    TOKEN = "eyJkYXRhIjoieyJtZXNzYWdlX2lkIjoibTEifSJ9"

    def test_redacts_pixel_and_redirect_paths(self):
        text = f"GET /pixel/{self.TOKEN} and /redirect/{self.TOKEN}?url=x"
        redacted = redact_tokens(text)
        assert self.TOKEN not in redacted
        assert "/pixel/eyJkYXRhIj..." in redacted
        assert "/redirect/eyJkYXRhIj...?url=x" in redacted

    def test_other_paths_untouched(self):
        assert redact_tokens("GET /health/ready") == "GET /health/ready"

    def test_access_log_filter(self):
        # uvicorn.access formats: '%s - "%s %s HTTP/%s" %d'
        record = logging.LogRecord(
            "uvicorn.access", logging.INFO, __file__, 1,
            '%s - "%s %s HTTP/%s" %d',
            ("127.0.0.1:5000", "GET", f"/webhook/reply/{self.TOKEN}", "1.1", 200),
            None,
        )
        assert TokenRedactionFilter().filter(record) is True
        assert self.TOKEN not in record.getMessage()
        assert record.args[4] == 200


class TestConfigureStructuredLogging:
    def test_installs_json_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            configure_structured_logging("debug")
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, StructuredJsonFormatter)
            assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
