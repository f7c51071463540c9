"""Helpers for emitting structured log records."""

import logging
from typing import Any

# Attribute names LogRecord already owns; passing them in extra raises KeyError
_RESERVED_LOG_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {
    "message",
    "asctime",
    "taskName",
}

MAX_ERROR_MESSAGE_LENGTH = 500


def _safe_extra(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if key not in _RESERVED_LOG_KEYS}


def _truncate(text: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log msg with keyword arguments as structured fields.

    exc_info is forwarded to logger.log(); names that collide with LogRecord
    attributes are dropped.

    Example:
        log_with_context(logger, logging.INFO, "Issue summarized", issue_id=812, duration_ms=420)
    """
    exc_info = kwargs.pop("exc_info", None)
    logger.log(level, msg, exc_info=exc_info, extra=_safe_extra(kwargs))


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exc with its type, category and (truncated) message as fields.

    The category is taken from PipelineError.category when present, so
    dashboards can split transient from permanent failures. Messages are
    capped because upstream error bodies can be arbitrarily large.
    """
    category = getattr(exc, "category", None)
    if kwargs.get("error_category") is None and category is not None:
        kwargs["error_category"] = getattr(category, "value", str(category))
    kwargs.setdefault("error_type", type(exc).__name__)
    kwargs["error_message"] = _truncate(str(exc))

    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=_safe_extra(kwargs))
    else:
        logger.log(level, msg, extra=_safe_extra(kwargs))


def format_cycle_output(
    cycle_count: int,
    succeeded: int,
    failed: int,
    skipped: int = 0,
    since_last: dict[str, int] | None = None,
    interval_seconds: int = 30,
) -> str:
    """
    One-line progress summary for periodic cycle logs.

    Totals only:
        >>> format_cycle_output(1, 12, 3, 1)
        'Cycle 1: processed=16, succeeded=12, failed=3, skipped=1'

    With since_last (counts since the previous cycle) a throughput figure
    is added:
        >>> format_cycle_output(5, 120, 0, 0, {"succeeded": 30}, 30)
        'Cycle 5: +30 this cycle | total: 120 succeeded | 1.0 msg/s'
    """
    if since_last is None:
        fields = {
            "processed": succeeded + failed + skipped,
            "succeeded": succeeded,
            "failed": failed,
        }
        if skipped:
            fields["skipped"] = skipped
        body = ", ".join(f"{key}={value}" for key, value in fields.items())
        return f"Cycle {cycle_count}: {body}"

    delta = sum(since_last.get(key, 0) for key in ("succeeded", "failed", "skipped"))
    rate = delta / interval_seconds if interval_seconds > 0 else 0

    totals = [f"{succeeded} succeeded"]
    totals += [f"{count} {label}" for count, label in ((failed, "failed"), (skipped, "skipped")) if count]
    return f"Cycle {cycle_count}: +{delta} this cycle | total: {', '.join(totals)} | {rate:.1f} msg/s"
