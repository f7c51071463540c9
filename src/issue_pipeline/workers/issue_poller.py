"""
Issue poller worker.

Fetches issues updated since the watermark on a fixed interval and publishes
each one to the source topic keyed by issue id.

Each cycle:
1. Read the watermark (first run: now minus initial_lookback_hours)
2. Capture the cycle start time
3. Fetch every page of issues updated since the watermark
4. Publish each issue (best effort, per-item results)
5. Advance the watermark to the cycle start time

A failed fetch leaves the watermark where it was, so the next cycle asks for
the same window again. Publish failures do not hold the watermark back;
issues that fail to publish are picked up again only if they are updated.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from config.config import PipelineConfig
from core.errors.exceptions import PipelineError, RateLimitError
from core.logging import (
    format_cycle_output,
    generate_cycle_id,
    get_logger,
    log_exception,
    log_with_context,
    set_log_context,
)
from issue_pipeline.common.metrics import record_poll_cycle
from issue_pipeline.common.producer import BaseKafkaProducer, PublishResult
from issue_pipeline.schemas.issues import format_rfc3339
from issue_pipeline.tracker.client import GitHubIssuesClient
from issue_pipeline.watermark.store import (
    Watermark,
    WatermarkStore,
    create_watermark_store,
    initial_watermark,
)

logger = get_logger(__name__)


@dataclass
class PollCycleResult:
    """What one poll cycle did."""

    since: datetime
    cycle_start: datetime
    fetched: int = 0
    publish_results: list[PublishResult] = field(default_factory=list)
    watermark_advanced: bool = False
    error: Exception | None = None

    @property
    def published(self) -> int:
        return sum(1 for r in self.publish_results if r.success)

    @property
    def publish_failed(self) -> int:
        return sum(1 for r in self.publish_results if not r.success)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class IssuePoller:
    """
    Periodically moves new and updated issues from the tracker onto Kafka.

    Collaborators may be injected (tests, single-process wiring); anything not
    injected is created in start() and closed in stop().

    Usage:
        poller = IssuePoller(config)
        await poller.start()
        try:
            await poller.run()
        finally:
            await poller.stop()
    """

    WORKER_NAME = "issue_poller"

    def __init__(
        self,
        config: PipelineConfig,
        tracker: GitHubIssuesClient | None = None,
        producer: BaseKafkaProducer | None = None,
        watermark_store: WatermarkStore | None = None,
        run_once: bool = False,
        clock: Callable[[], datetime] | None = None,
        instance_id: str | None = None,
    ):
        self.config = config
        self.source_topic = config.kafka.source_topic
        self.poll_interval_seconds = config.poller.poll_interval_seconds
        self.run_once = run_once
        self.instance_id = instance_id

        self._tracker = tracker
        self._owns_tracker = tracker is None
        self._producer = producer
        self._owns_producer = producer is None
        self._store = watermark_store
        self._owns_store = watermark_store is None
        self._clock = clock or (lambda: datetime.now(UTC))

        self._running = False
        self._shutdown_event = asyncio.Event()
        # Cleared while a cycle is fetching or publishing
        self._idle = asyncio.Event()
        self._idle.set()
        self._initial: Watermark | None = None

        self._cycle_count = 0
        self._cycles_failed = 0
        self._issues_published = 0
        self._issues_failed = 0
        self.last_result: PollCycleResult | None = None

        if instance_id:
            self.worker_id = f"{self.WORKER_NAME}-{instance_id}"
        else:
            self.worker_id = self.WORKER_NAME

    async def start(self) -> None:
        """Create and connect any collaborators that were not injected."""
        if self._store is None:
            self._store = create_watermark_store(self.config.poller)
        if self._tracker is None:
            self._tracker = GitHubIssuesClient(self.config.tracker)
        if self._producer is None:
            self._producer = BaseKafkaProducer(
                self.config.kafka,
                worker_name=self.worker_id,
                send_timeout_seconds=self.config.processing.send_timeout_seconds,
            )
        if not self._producer.is_started:
            await self._producer.start()

        self._running = True
        log_with_context(
            logger,
            logging.INFO,
            "Issue poller started",
            topic=self.source_topic,
            since=format_rfc3339((await self._current_watermark()).since),
            operation="run_once" if self.run_once else "loop",
        )

    async def stop(self) -> None:
        """Interrupt the interval wait and release owned resources.

        A cycle already in progress is given shutdown_timeout_seconds to
        finish its fetch, publish and watermark save before the producer,
        tracker and store are closed underneath it.
        """
        if not self._running and self._shutdown_event.is_set():
            return

        logger.info("Stopping issue poller")
        self._running = False
        self._shutdown_event.set()

        try:
            await asyncio.wait_for(
                self._idle.wait(),
                timeout=self.config.processing.shutdown_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Poll cycle did not finish before shutdown timeout; "
                "its remaining publishes will be reported as failed"
            )

        if self._producer is not None and self._owns_producer:
            await self._producer.stop()
        if self._tracker is not None and self._owns_tracker:
            await self._tracker.close()
        if self._store is not None and self._owns_store:
            await self._store.close()

    async def run(self) -> None:
        """Poll until stopped, or exactly once in run_once mode.

        Raises:
            PipelineError: In run_once mode, when the single cycle's fetch failed
        """
        if self.run_once:
            result = await self.run_cycle()
            if result.error is not None:
                raise result.error
            return

        while self._running and not self._shutdown_event.is_set():
            wait_seconds = self.poll_interval_seconds
            try:
                result = await self.run_cycle()
                wait_seconds = self._next_wait(result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_exception(logger, e, "Error in poll cycle")

            if self._shutdown_event.is_set():
                break

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=wait_seconds)
            except asyncio.TimeoutError:
                pass

    def _next_wait(self, result: PollCycleResult) -> float:
        if isinstance(result.error, RateLimitError) and result.error.retry_after:
            wait_seconds = max(self.poll_interval_seconds, result.error.retry_after)
            if wait_seconds > self.poll_interval_seconds:
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Extending poll interval to honour tracker rate limit",
                    retry_after=result.error.retry_after,
                    delay_seconds=wait_seconds,
                )
            return wait_seconds
        return self.poll_interval_seconds

    async def _current_watermark(self) -> Watermark:
        watermark = await self._store.load()
        if watermark is not None:
            return watermark
        # Cache so repeated failures on a fresh store keep asking for the same window
        if self._initial is None:
            self._initial = initial_watermark(
                self.config.poller.initial_lookback_hours, now=self._clock()
            )
        return self._initial

    async def run_cycle(self) -> PollCycleResult:
        """Execute one fetch, publish, advance cycle."""
        self._idle.clear()
        try:
            return await self._run_cycle()
        finally:
            self._idle.set()

    async def _run_cycle(self) -> PollCycleResult:
        self._cycle_count += 1
        set_log_context(cycle_id=generate_cycle_id(), stage=self.WORKER_NAME)
        start_time = time.perf_counter()

        watermark = await self._current_watermark()
        cycle_start = self._clock()
        result = PollCycleResult(since=watermark.since, cycle_start=cycle_start)

        log_with_context(
            logger,
            logging.DEBUG,
            "Poll cycle starting",
            since=format_rfc3339(watermark.since),
            cycle_start=format_rfc3339(cycle_start),
        )

        try:
            issues = await self._tracker.fetch_issues(watermark.since)
        except PipelineError as e:
            result.error = e
            self._cycles_failed += 1
            record_poll_cycle("rate_limited" if isinstance(e, RateLimitError) else "error")
            log_exception(
                logger,
                e,
                "Failed to fetch issues, watermark not advanced",
                level=logging.WARNING,
                include_traceback=False,
                since=format_rfc3339(watermark.since),
            )
            self.last_result = result
            return result

        result.fetched = len(issues)
        result.publish_results = await self._producer.send_batch(self.source_topic, issues)

        result.watermark_advanced = await self._store.save(Watermark(since=cycle_start))
        if not result.watermark_advanced:
            logger.warning(
                "Watermark was not advanced",
                extra={"cycle_start": format_rfc3339(cycle_start)},
            )

        self._issues_published += result.published
        self._issues_failed += result.publish_failed
        record_poll_cycle("success", fetched=result.fetched)

        log_with_context(
            logger,
            logging.INFO,
            format_cycle_output(
                self._cycle_count,
                succeeded=self._issues_published,
                failed=self._issues_failed,
            ),
            since=format_rfc3339(watermark.since),
            issues_fetched=result.fetched,
            records_succeeded=result.published,
            records_failed=result.publish_failed,
            watermark_advanced=result.watermark_advanced,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )

        self.last_result = result
        return result

    @property
    def stats(self) -> dict:
        return {
            "cycles": self._cycle_count,
            "cycles_failed": self._cycles_failed,
            "issues_published": self._issues_published,
            "issues_failed": self._issues_failed,
        }
