"""
Tests for comfy_local/logging_config.py
"""

import json
import logging

from comfy_local.logging_config import ContextFilter, LogContext, StructuredFormatter, get_logger


def make_record(**extra):
    record = logging.LogRecord("comfy_local.test", logging.INFO, __file__, 1, "queued %s", ("p1",), None)
    record.__dict__.update(extra)
    return record


class TestStructuredFormatter:
    def test_json_includes_extra_fields(self):
        record = make_record(prompt_id="p1", polls=3)
        ContextFilter().filter(record)

        data = json.loads(StructuredFormatter(json_output=True).format(record))

        assert data["message"] == "queued p1"
        assert data["prompt_id"] == "p1"
        assert data["polls"] == 3
        assert data["request_id"] == "-"

    def test_text_appends_extra_fields(self):
        record = make_record(seed=42)
        ContextFilter().filter(record)

        text = StructuredFormatter(fmt="%(request_id)s %(message)s").format(record)

        assert text == "- queued p1 | seed=42"

    def test_request_id_from_context(self):
        record = make_record()
        with LogContext("abc123"):
            ContextFilter().filter(record)

        assert record.request_id == "abc123"


def test_logger_names_are_nested():
    assert get_logger("comfy_local.client").name == "comfy_local.client"
    assert get_logger("scripts.run").name == "comfy_local.scripts.run"
