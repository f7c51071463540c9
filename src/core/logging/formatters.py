"""JSON (file/stdout) and console formatters."""

import json
import logging
import re
import sys
from datetime import UTC, date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from core.logging.context import get_log_context
from core.logging.kafka_context import get_kafka_context

# Structured fields copied from record extras, with the type numeric ones are
# coerced to (None keeps the value as is). Anything not listed is dropped.
STRUCTURED_FIELDS: dict[str, type | None] = {
    "duration_ms": float,
    # tracker / summarizer HTTP calls
    "http_status": int,
    "http_method": None,
    "http_url": None,
    "api_endpoint": None,
    "response_body": None,
    "page": int,
    "pages": int,
    # failures and retries
    "error_category": None,
    "error_message": None,
    "error_type": None,
    "error": None,
    "field": None,
    "outcome": None,
    "state": None,
    "attempt": int,
    "max_attempts": int,
    "delay_seconds": float,
    "delay_source": None,
    "server_retry_after": float,
    "retry_after": float,
    "operation": None,
    # poll cycles
    "since": None,
    "cycle_start": None,
    "issues_fetched": int,
    "records_succeeded": int,
    "records_failed": int,
    "records_skipped": int,
    "watermark_advanced": None,
    # issues and records
    "issue_id": None,
    "issue_number": int,
    "topic": None,
    "partition": int,
    "offset": int,
    "key": None,
    "dlq_topic": None,
    "group_id": None,
    "value_size": int,
    "pending_redeliveries": int,
    # watermark store
    "path": None,
}

# Levels that also get "file": "module.py:123"
LOCATION_LEVELS = frozenset({logging.DEBUG, logging.ERROR, logging.CRITICAL})

_URL_FIELDS = frozenset({"http_url", "url"})
_FREE_TEXT_FIELDS = frozenset({"error_message", "response_body", "error"})

_QUERY_SECRET = re.compile(
    r"([?&])(sig|token|key|secret|password|access_token)=[^&]*",
    re.IGNORECASE,
)
# GitHub uses "token X", OpenAI "Bearer X"
_AUTH_CREDENTIAL = re.compile(r"(Bearer|token)\s+[A-Za-z0-9_\-\.]+", re.IGNORECASE)


def json_serializer(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, Path):
        return str(obj)
    return str(obj)


def redact(field: str, value: Any) -> Any:
    """Strip credentials from URL query strings and auth headers in error text."""
    if not isinstance(value, str):
        return value
    if field in _URL_FIELDS:
        return _QUERY_SECRET.sub(r"\1\2=[REDACTED]", value)
    if field in _FREE_TEXT_FIELDS:
        return _AUTH_CREDENTIAL.sub(r"\1 [REDACTED]", value)
    return value


def _coerce(field: str, value: Any) -> Any:
    cast = STRUCTURED_FIELDS.get(field)
    if cast is None:
        return value
    try:
        return cast(value)
    except (TypeError, ValueError):
        return None


def _utc_timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Each line carries the timestamp, level, logger and message, then the
    ambient log context (stage, worker, cycle, issue) and Kafka record
    coordinates, then whitelisted extras from STRUCTURED_FIELDS. Credentials
    are redacted before serialization.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": _utc_timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        entry.update({k: v for k, v in get_log_context().items() if v})
        entry.update(get_kafka_context())

        if record.levelno in LOCATION_LEVELS:
            entry["file"] = f"{record.filename}:{record.lineno}"

        for field in STRUCTURED_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = redact(field, _coerce(field, value))

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "stacktrace": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=json_serializer, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """
    Readable single-line output for terminals.

        2026-01-05 10:00:01 - INFO - [summarizer] - [issue:812] [github-issues:0@7] Summarized

    Level names are colored only when stdout is a TTY.
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._use_colors = sys.stdout.isatty()

    def _level(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno) if self._use_colors else None
        return f"{color}{record.levelname}{self.RESET}" if color else record.levelname

    def format(self, record: logging.LogRecord) -> str:
        context = get_log_context()
        head = [datetime.now().strftime("%Y-%m-%d %H:%M:%S"), self._level(record)]
        if context["stage"]:
            head.append(f"[{context['stage']}]")

        tags = []
        issue_id = getattr(record, "issue_id", None) or context.get("issue_id")
        if issue_id:
            tags.append(f"[issue:{issue_id}]")
        kafka = get_kafka_context()
        if kafka:
            tags.append(f"[{kafka['kafka_topic']}:{kafka['kafka_partition']}@{kafka['kafka_offset']}]")

        body = " ".join(tags + [record.getMessage()])
        if record.exc_info:
            body = f"{body}\n{self.formatException(record.exc_info)}"

        return " - ".join(head + [body])
