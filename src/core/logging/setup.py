"""Root logger configuration for pipeline processes."""

import logging
import os
import secrets
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

# Rotated daily, one week retained
ROTATION_WHEN = "midnight"
BACKUP_COUNT = 7

PLAIN_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [%(filename)s:%(lineno)d] %(message)s"

# Client libraries that log every request or heartbeat at INFO/DEBUG
QUIETED_LOGGERS = ("aiohttp", "aiokafka", "asyncio")

BANNER_WIDTH = 70


def get_log_file_path(
    log_dir: Path,
    stage: str | None = None,
    instance_id: str | None = None,
) -> Path:
    """
    Per-process log file under a dated folder.

    {log_dir}/{YYYY-MM-DD}/{stage}_{MMDD}_{HHMM}[_{instance_id}].log,
    e.g. logs/2026-01-05/summarizer_0105_0930_1.log
    """
    started = datetime.now()
    parts = [stage or "pipeline", started.strftime("%m%d"), started.strftime("%H%M")]
    if instance_id:
        parts.append(str(instance_id))
    return log_dir / started.strftime("%Y-%m-%d") / ("_".join(parts) + ".log")


def _stdout_handler(level: int, json_format: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if json_format else ConsoleFormatter())
    return handler


def _file_handler(log_file: Path, level: int, json_format: bool) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        log_file, when=ROTATION_WHEN, backupCount=BACKUP_COUNT, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(PLAIN_FILE_FORMAT))
    return handler


def setup_logging(
    name: str = "issue_pipeline",
    stage: str | None = None,
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    worker_id: str | None = None,
    log_to_stdout: bool = False,
) -> logging.Logger:
    """
    Replace root handlers with the pipeline's own.

    File mode (default): human-readable console on stdout at console_level,
    plus a daily-rotated file at file_level (JSON unless json_format=False).

    Stdout mode (log_to_stdout=True): a single stdout handler at the more
    verbose of the two levels, JSON unless json_format=False. Meant for
    containers where the runtime collects stdout.

    stage and worker_id are also stored in the log context so every record
    carries them.
    """
    if stage:
        set_log_context(stage=stage)
    if worker_id:
        set_log_context(worker_id=worker_id)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    log_file = None
    if log_to_stdout:
        root.addHandler(_stdout_handler(min(console_level, file_level), json_format))
    else:
        log_file = get_log_file_path(log_dir or DEFAULT_LOG_DIR, stage=stage, instance_id=worker_id)
        root.addHandler(_file_handler(log_file, file_level, json_format))
        root.addHandler(_stdout_handler(console_level, json_format=False))

    for noisy in QUIETED_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    logger.debug(
        "Logging configured",
        extra={"log_file": str(log_file) if log_file else "stdout", "json_logs": json_format},
    )
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_worker_startup(
    logger: logging.Logger,
    worker_name: str,
    kafka_bootstrap_servers: str | None = None,
    input_topic: str | None = None,
    output_topic: str | None = None,
    consumer_group: str | None = None,
    extra_config: dict | None = None,
) -> None:
    """
    Print a startup banner with the broker, topics and worker settings.

    Wrong broker or topic names are the most common misconfiguration, so
    they go at the top of every log.
    """
    rows = [
        ("Kafka bootstrap servers", kafka_bootstrap_servers or os.environ.get("KAFKA_BOOTSTRAP_SERVERS", "not set")),
        ("Input topic", input_topic),
        ("Output topic", output_topic),
        ("Consumer group", consumer_group),
    ]
    rows.extend((extra_config or {}).items())

    logger.info("=" * BANNER_WIDTH)
    logger.info("Starting %s", worker_name)
    logger.info("-" * BANNER_WIDTH)
    for label, value in rows:
        if value is not None:
            logger.info("%s: %s", label, value)
    logger.info("=" * BANNER_WIDTH)


def generate_cycle_id() -> str:
    """Poll cycle identifier: c-YYYYMMDD-HHMMSS-xxxx (4 random hex chars)."""
    return f"c-{datetime.now():%Y%m%d-%H%M%S}-{secrets.token_hex(2)}"
