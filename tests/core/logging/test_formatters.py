"""Tests for JSON and console log formatters."""

import json
import logging
import sys

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter
from core.logging.kafka_context import KafkaLogContext


def _make_record(
    msg="test message",
    level=logging.INFO,
    name="test.logger",
    exc_info=None,
    **extras,
):
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extras.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_base_fields(self):
        output = json.loads(JSONFormatter().format(_make_record()))
        assert output["level"] == "INFO"
        assert output["logger"] == "test.logger"
        assert output["message"] == "test message"
        assert output["ts"].endswith("Z")
        assert "file" not in output

    def test_file_location_for_errors(self):
        output = json.loads(JSONFormatter().format(_make_record(level=logging.ERROR)))
        assert output["file"] == "test.py:42"

    def test_injects_log_context(self):
        set_log_context(stage="summarizer", issue_id="123")
        output = json.loads(JSONFormatter().format(_make_record()))
        assert output["stage"] == "summarizer"
        assert output["issue_id"] == "123"
        assert "cycle_id" not in output

    def test_injects_kafka_context(self):
        with KafkaLogContext(topic="github-issues", partition=1, offset=99):
            output = json.loads(JSONFormatter().format(_make_record()))
        assert output["kafka_topic"] == "github-issues"
        assert output["kafka_partition"] == 1
        assert output["kafka_offset"] == 99

    def test_extra_fields_and_numeric_coercion(self):
        record = _make_record(http_status="503", outcome="retry_pending", unrelated="x")
        output = json.loads(JSONFormatter().format(record))
        assert output["http_status"] == 503
        assert output["outcome"] == "retry_pending"
        assert "unrelated" not in output

    def test_uncoercible_numeric_becomes_null(self):
        output = json.loads(JSONFormatter().format(_make_record(attempt="many")))
        assert output["attempt"] is None

    def test_redacts_url_secrets(self):
        record = _make_record(http_url="https://api.example.com/x?token=abc123&page=2")
        output = json.loads(JSONFormatter().format(record))
        assert "abc123" not in output["http_url"]
        assert "page=2" in output["http_url"]

    def test_redacts_auth_headers_in_errors(self):
        record = _make_record(error_message="rejected header Bearer sk-secret-value")
        output = json.loads(JSONFormatter().format(record))
        assert "sk-secret-value" not in output["error_message"]
        assert "[REDACTED]" in output["error_message"]

    def test_exception_structure(self):
        try:
            raise ValueError("broken")
        except ValueError:
            record = _make_record(level=logging.ERROR, exc_info=sys.exc_info())
        output = json.loads(JSONFormatter().format(record))
        assert output["exception"]["type"] == "ValueError"
        assert output["exception"]["message"] == "broken"
        assert "Traceback" in output["exception"]["stacktrace"]


class TestConsoleFormatter:
    def test_includes_stage_and_tags(self):
        set_log_context(stage="issue_summarizer")
        formatter = ConsoleFormatter()
        formatter._use_colors = False

        with KafkaLogContext(topic="github-issues", partition=0, offset=7):
            line = formatter.format(_make_record(issue_id=812))

        assert "[issue_summarizer]" in line
        assert "[issue:812]" in line
        assert "[github-issues:0@7]" in line
        assert line.endswith("test message")

    def test_plain_message_without_context(self):
        formatter = ConsoleFormatter()
        formatter._use_colors = False
        line = formatter.format(_make_record(level=logging.WARNING))
        assert " - WARNING - test message" in line
