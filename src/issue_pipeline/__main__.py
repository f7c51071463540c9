"""Issue pipeline worker orchestration. Use --help for usage."""

import argparse
import asyncio
import errno
import logging
import os
import socket
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from prometheus_client import start_http_server

from config.config import PipelineConfig, load_config
from core.errors.exceptions import ConfigurationError
from core.logging.setup import setup_logging
from issue_pipeline.common.signals import install_shutdown_handlers
from issue_pipeline.runners.registry import WORKER_REGISTRY, run_worker_from_registry

# __main__.py is at src/issue_pipeline/__main__.py, so root is 3 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent

WORKER_CHOICES = list(WORKER_REGISTRY.keys()) + ["all"]

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)


async def run_worker_pool(
    worker_fn: Callable[..., Coroutine[Any, Any, None]],
    count: int,
    worker_name: str,
    *args: Any,
    **kwargs: Any,
) -> None:
    """Run count copies of worker_fn, instance_id "0" .. str(count - 1).

    Summarizer instances share one consumer group, so Kafka spreads the
    partitions across them.
    """
    logger.info("Starting %d %s instance(s)", count, worker_name)

    tasks = [
        asyncio.create_task(
            worker_fn(*args, **{**kwargs, "instance_id": str(i)}),
            name=f"{worker_name}-{i}",
        )
        for i in range(count)
    ]
    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        logger.info("Worker pool cancelled", extra={"operation": worker_name})
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def run_all_workers(
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
    count: int = 1,
    run_once: bool = False,
) -> None:
    """Run the poller and summarizer worker(s) in one process."""
    tasks = [
        asyncio.create_task(
            run_worker_from_registry("poller", pipeline_config, shutdown_event, run_once),
            name="poller",
        ),
        asyncio.create_task(
            run_worker_pool(
                run_worker_from_registry,
                count,
                "summarizer",
                "summarizer",
                pipeline_config,
                shutdown_event,
            ),
            name="summarizer-pool",
        ),
    ]
    try:
        await asyncio.gather(*tasks)
    except Exception:
        # One side failed; stop the other before surfacing the error
        shutdown_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run issue pipeline workers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run poller and summarizer together
    python -m issue_pipeline

    # Poll once and exit
    python -m issue_pipeline --worker poller --once

    # Run three summarizer instances sharing the consumer group
    python -m issue_pipeline --worker summarizer --count 3

    # Run with custom config and metrics port
    python -m issue_pipeline --config ./config.yaml --metrics-port 9090
        """,
    )

    parser.add_argument(
        "--worker",
        choices=WORKER_CHOICES,
        default="all",
        help="Which worker(s) to run (default: all)",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle and exit (poller only)",
    )

    parser.add_argument(
        "--count",
        "-c",
        type=int,
        default=1,
        help="Number of summarizer instances to run concurrently (default: 1). "
        "Instances share the consumer group for automatic partition distribution.",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.yaml (default: $ISSUE_PIPELINE_CONFIG or bundled config)",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server (default: 8000, 0 disables)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)",
    )

    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Log directory path (default: from LOG_DIR env var or ./logs)",
    )

    parser.add_argument(
        "--log-to-stdout",
        action="store_true",
        help="Send all log output to stdout only, skipping file handlers. "
        "Can also be set via LOG_TO_STDOUT environment variable.",
    )

    args = parser.parse_args(argv)

    if args.count < 1:
        parser.error("--count must be at least 1")
    if args.once and args.worker == "summarizer":
        parser.error("--once applies to the poller only")

    return args


def start_metrics_server(preferred_port: int) -> int:
    """Serve Prometheus metrics, moving to a free port if preferred_port is taken.

    Returns the port actually bound.
    """
    try:
        start_http_server(preferred_port)
        return preferred_port
    except OSError as e:
        if e.errno != errno.EADDRINUSE:
            raise

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("", 0))
        free_port = probe.getsockname()[1]

    start_http_server(free_port)
    return free_port


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _env_flag(name: str, default: str = "false") -> bool:
    return _truthy(os.getenv(name, default))


def _json_logs(config: PipelineConfig | None) -> bool:
    """JSON_LOGS wins over logging.json_format; JSON is the default."""
    if os.getenv("JSON_LOGS") is not None:
        return _env_flag("JSON_LOGS")
    if config is None:
        return True
    return _truthy(config.logging_config.get("json_format", True))


def _setup_logging(args: argparse.Namespace, config: PipelineConfig | None) -> None:
    log_dir_str = args.log_dir or os.getenv("LOG_DIR") or (
        config.logging_config.get("log_dir") if config else None
    ) or "logs"

    setup_logging(
        name="issue_pipeline",
        stage=args.worker,
        log_dir=Path(log_dir_str),
        json_format=_json_logs(config),
        console_level=getattr(logging, args.log_level),
        worker_id=os.getenv("WORKER_ID"),
        log_to_stdout=args.log_to_stdout or _env_flag("LOG_TO_STDOUT"),
    )


def _start_workers(
    args: argparse.Namespace,
    pipeline_config: PipelineConfig,
    shutdown_event: asyncio.Event,
) -> Coroutine[Any, Any, None]:
    if args.worker == "all":
        return run_all_workers(pipeline_config, shutdown_event, args.count, args.once)
    if args.count > 1 and args.worker == "summarizer":
        return run_worker_pool(
            run_worker_from_registry,
            args.count,
            args.worker,
            args.worker,
            pipeline_config,
            shutdown_event,
        )
    return run_worker_from_registry(
        args.worker, pipeline_config, shutdown_event, run_once=args.once
    )


def main(argv: list[str] | None = None) -> int:
    global logger

    load_dotenv(PROJECT_ROOT / ".env")
    args = parse_args(argv)

    config_error: Exception | None = None
    pipeline_config: PipelineConfig | None = None
    try:
        pipeline_config = load_config(args.config)
    except (ValueError, FileNotFoundError, KeyError) as e:
        config_error = e

    _setup_logging(args, pipeline_config)
    logger = logging.getLogger(__name__)

    if config_error is not None:
        logger.error("Configuration error", extra={"error": str(config_error)})
        return 2

    if args.metrics_port:
        actual_port = start_metrics_server(args.metrics_port)
        if actual_port != args.metrics_port:
            logger.info(
                "Metrics server started on fallback port",
                extra={"actual_port": actual_port, "preferred_port": args.metrics_port},
            )
        else:
            logger.info("Metrics server started", extra={"port": actual_port})

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    shutdown_event = asyncio.Event()
    install_shutdown_handlers(loop, shutdown_event)

    exit_code = 0
    try:
        loop.run_until_complete(_start_workers(args, pipeline_config, shutdown_event))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except asyncio.CancelledError:
        logger.info("Tasks cancelled, shutting down...")
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        exit_code = 2
    except Exception as e:
        logger.exception("Fatal error", extra={"error": str(e)})
        exit_code = 1
    finally:
        loop.close()
        logger.info("Pipeline shutdown complete")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
