"""Worker lifecycle: retried startup, run, and stop on shutdown signal."""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Optional

from core.logging import log_with_context
from core.logging.context import set_log_context

logger = logging.getLogger(__name__)

# Kafka brokers often come up after the workers in compose/k8s deployments
DEFAULT_STARTUP_RETRIES = 5
DEFAULT_STARTUP_BACKOFF_BASE = 5


def _startup_settings(
    max_retries: Optional[int], backoff_base: Optional[float]
) -> tuple[int, float]:
    if not max_retries:
        max_retries = int(os.getenv("STARTUP_MAX_RETRIES", DEFAULT_STARTUP_RETRIES))
    if backoff_base is None:
        backoff_base = float(os.getenv("STARTUP_BACKOFF_SECONDS", DEFAULT_STARTUP_BACKOFF_BASE))
    return max_retries, backoff_base


async def _start_with_retry(
    start_fn: Callable[[], Awaitable[None]],
    label: str,
    max_retries: Optional[int] = None,
    backoff_base: Optional[float] = None,
    shutdown_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Await start_fn until it succeeds, waiting backoff_base * attempt between tries.

    The last error is re-raised once attempts run out, or as soon as
    shutdown_event is set during a wait.
    """
    max_retries, backoff_base = _startup_settings(max_retries, backoff_base)
    stop_waiting = shutdown_event or asyncio.Event()

    attempt = 0
    while True:
        attempt += 1
        try:
            await start_fn()
            return
        except Exception as e:
            if attempt >= max_retries:
                log_with_context(
                    logger,
                    logging.ERROR,
                    f"Could not start {label}, giving up",
                    attempt=attempt,
                    max_attempts=max_retries,
                    error=str(e),
                )
                raise

            delay = backoff_base * attempt
            log_with_context(
                logger,
                logging.WARNING,
                f"Could not start {label}, retrying",
                attempt=attempt,
                max_attempts=max_retries,
                delay_seconds=delay,
                error=str(e),
            )
            try:
                await asyncio.wait_for(stop_waiting.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
            logger.info("Shutdown requested while starting %s", label)
            raise


async def execute_worker_with_shutdown(
    worker_instance,
    stage_name: str,
    shutdown_event: asyncio.Event,
    run_method: Optional[str] = None,
    instance_id: Optional[str] = None,
) -> None:
    """
    Start worker_instance, run it, and stop it when shutdown_event fires.

    Workers whose start() blocks until stopped (the summarizer) leave
    run_method unset. Workers with a separate loop (the poller) name it,
    and it is skipped if shutdown arrived during startup. stop() always
    runs on the way out, and may run twice: once from the watcher and once
    here.
    """
    worker_label = stage_name if instance_id is None else f"{stage_name}-{instance_id}"
    if instance_id is None:
        set_log_context(stage=stage_name)
    else:
        set_log_context(stage=stage_name, worker_id=worker_label)

    async def stop_on_shutdown():
        await shutdown_event.wait()
        logger.info("Shutdown signal received, stopping %s", worker_label)
        await worker_instance.stop()

    watcher = asyncio.create_task(stop_on_shutdown())
    logger.info("Starting %s", worker_label)

    try:
        await _start_with_retry(worker_instance.start, worker_label, shutdown_event=shutdown_event)
        if run_method is not None and not shutdown_event.is_set():
            await getattr(worker_instance, run_method)()
    finally:
        watcher.cancel()
        try:
            await watcher
        except (asyncio.CancelledError, RuntimeError):
            # RuntimeError: loop already closing
            pass
        await worker_instance.stop()
