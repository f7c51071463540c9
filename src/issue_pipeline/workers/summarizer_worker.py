"""
Issue summarizer worker.

Consumes issues from the source topic, summarizes each one and publishes the
result to the derived topic, committing the source offset only once the
derived record has been acknowledged.

Per-record states:
    RECEIVED -> DECODED -> ENRICHED -> PUBLISHED -> COMMITTED

Outcomes:
- COMMITTED: summarized, published and committed
- SKIPPED_POISON: undecodable; copied to the DLQ (best effort) and committed
- RETRY_PENDING: summarize or publish failed; not committed, redelivered
- DEAD_LETTERED: exhausted max_delivery_attempts; written to the DLQ, then committed
- COMMIT_FAILED: derived record published but the commit was rejected;
  the record may be redelivered and summarized again

Redelivery: on RETRY_PENDING the partition is rewound to the failed offset
and the rest of that partition's fetched records are dropped, so a later
commit on the partition can never move past the failed record. The loop
then backs off before fetching again. A partition revoked before it can be
rewound is resumed by its new owner from the last committed offset, and
its redelivery attempt counts are dropped here.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import IllegalStateError
from aiokafka.structs import ConsumerRecord, TopicPartition
from pydantic import ValidationError

from config.config import PipelineConfig
from core.errors.exceptions import (
    DecodeError,
    KafkaError,
    PipelineError,
    classify_exception,
    wrap_exception,
)
from core.logging import (
    KafkaLogContext,
    format_cycle_output,
    get_logger,
    log_exception,
    log_with_context,
    set_log_context,
)
from core.resilience.retry import RetryConfig
from core.types import ErrorCategory
from issue_pipeline.common.consumer import commit_record, create_consumer
from issue_pipeline.common.metrics import (
    record_commit_failure,
    record_dlq_message,
    record_message_consumed,
    record_outcome,
    record_poison_message,
    record_processing_error,
    update_connection_status,
)
from issue_pipeline.common.producer import BaseKafkaProducer
from issue_pipeline.schemas.dlq import DeadLetterMessage
from issue_pipeline.schemas.issues import Issue
from issue_pipeline.summarizer.client import SummarizerClient

logger = get_logger(__name__)

CYCLE_LOG_INTERVAL_SECONDS = 30


class RecordState(str, Enum):
    RECEIVED = "received"
    DECODED = "decoded"
    ENRICHED = "enriched"
    PUBLISHED = "published"
    COMMITTED = "committed"


class RecordOutcome(str, Enum):
    COMMITTED = "committed"
    SKIPPED_POISON = "skipped_poison"
    RETRY_PENDING = "retry_pending"
    COMMIT_FAILED = "commit_failed"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class RecordResult:
    """Result of processing one source record.

    state is the furthest state reached before the outcome was decided.
    """

    outcome: RecordOutcome
    state: RecordState
    issue_id: Optional[int] = None
    error: Optional[Exception] = None
    attempt: int = 1

    @property
    def needs_redelivery(self) -> bool:
        return self.outcome == RecordOutcome.RETRY_PENDING


def decode_issue(record: ConsumerRecord) -> Issue:
    """Decode a source record value into an Issue.

    Raises:
        DecodeError: If the value is missing, not JSON or not an issue
    """
    if record.value is None:
        raise DecodeError("Record has no value")
    try:
        return Issue.model_validate_json(record.value)
    except (ValidationError, ValueError) as e:
        raise DecodeError(f"Record value is not a valid issue: {e}", cause=e) from e


class IssueSummarizerWorker:
    """
    Worker that turns source issues into summarized issues.

    One record is processed at a time. Several instances may share the
    consumer group to split partitions between them.

    Usage:
        >>> worker = IssueSummarizerWorker(config)
        >>> await worker.start()   # runs until stop()
        >>> await worker.stop()
    """

    WORKER_NAME = "issue_summarizer"

    def __init__(
        self,
        config: PipelineConfig,
        summarizer: Optional[SummarizerClient] = None,
        producer: Optional[BaseKafkaProducer] = None,
        consumer: Optional[AIOKafkaConsumer] = None,
        instance_id: Optional[str] = None,
    ):
        """
        Args:
            config: Pipeline configuration
            summarizer: Summarizer client; created from config when omitted,
                which raises MissingCredentialError without an API key
            producer: Producer for derived and dead-letter records
            consumer: Consumer subscribed to the source topic
            instance_id: Instance number when running several workers
        """
        self.config = config
        self.source_topic = config.kafka.source_topic
        self.derived_topic = config.kafka.derived_topic
        self.dlq_topic = config.kafka.get_dlq_topic()
        self.group_id = config.kafka.group_id
        self.max_delivery_attempts = config.processing.max_delivery_attempts
        self.instance_id = instance_id

        if instance_id:
            self.worker_id = f"{self.WORKER_NAME}-{instance_id}"
        else:
            self.worker_id = self.WORKER_NAME

        self.retry_config = RetryConfig(
            max_attempts=0,
            base_delay=config.processing.retry_base_delay_seconds,
            max_delay=config.processing.retry_max_delay_seconds,
        )

        self._summarizer = summarizer or SummarizerClient(config.summarizer)
        self._owns_summarizer = summarizer is None
        self._producer = producer
        self._owns_producer = producer is None
        self._consumer = consumer
        self._owns_consumer = consumer is None

        self._running = False
        self._stopped = False
        self._shutdown_event = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

        self._attempts: Dict[Tuple[str, int, int], int] = {}

        self._records_processed = 0
        self._records_succeeded = 0
        self._records_failed = 0
        self._records_skipped = 0
        self._cycle_count = 0
        self._last_cycle_log = time.monotonic()

        log_with_context(
            logger,
            logging.INFO,
            "Initialized issue summarizer worker",
            topic=self.source_topic,
            group_id=self.group_id,
            dlq_topic=self.dlq_topic,
            max_attempts=self.max_delivery_attempts,
        )

    async def start(self) -> None:
        """
        Connect producer and consumer, then process records until stopped.

        Raises:
            Exception: If the producer or consumer cannot connect
        """
        if self._running:
            logger.warning("Worker already running, ignoring duplicate start call")
            return

        set_log_context(stage=self.WORKER_NAME, worker_id=self.worker_id)

        if self._producer is None:
            self._producer = BaseKafkaProducer(
                self.config.kafka,
                worker_name=self.worker_id,
                send_timeout_seconds=self.config.processing.send_timeout_seconds,
            )
        if not self._producer.is_started:
            await self._producer.start()

        if self._consumer is None:
            self._consumer = create_consumer(
                self.config.kafka,
                topics=[self.source_topic],
                group_id=self.group_id,
                client_id=f"{self.worker_id}-consumer",
            )
        await self._consumer.start()
        update_connection_status("consumer", connected=True)

        self._running = True
        self._stopped = False
        log_with_context(
            logger,
            logging.INFO,
            "Issue summarizer worker started",
            topic=self.source_topic,
            group_id=self.group_id,
        )

        try:
            await self._consume_loop()
        except asyncio.CancelledError:
            logger.info("Summarizer loop cancelled, shutting down")
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        """
        Stop accepting records, let the in-flight record finish, then close
        the consumer, producer and summarizer. Safe to call multiple times.
        """
        if self._stopped:
            return
        self._stopped = True

        logger.info("Stopping issue summarizer worker")
        self._running = False
        self._shutdown_event.set()

        try:
            await asyncio.wait_for(
                self._idle.wait(),
                timeout=self.config.processing.shutdown_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "In-flight record did not finish before shutdown timeout; "
                "it stays uncommitted and will be redelivered"
            )

        try:
            if self._consumer is not None:
                await self._consumer.stop()
        except Exception as e:
            log_exception(logger, e, "Error stopping Kafka consumer")
        finally:
            update_connection_status("consumer", connected=False)
            if self._owns_consumer:
                self._consumer = None

        if self._producer is not None and self._owns_producer:
            await self._producer.stop()
        if self._owns_summarizer:
            await self._summarizer.close()

        logger.info("Issue summarizer worker stopped", extra={"records_succeeded": self._records_succeeded})

    async def _consume_loop(self) -> None:
        logged_waiting_for_assignment = False
        logged_assignment_received = False
        last_assignment: set = set()

        while self._running and self._consumer is not None:
            try:
                # getmany() can block past timeout_ms while a rebalance is in progress
                assignment = self._consumer.assignment()
                if assignment != last_assignment:
                    self._forget_unassigned(assignment)
                    last_assignment = set(assignment)

                if not assignment:
                    if not logged_waiting_for_assignment:
                        log_with_context(
                            logger,
                            logging.INFO,
                            "Waiting for partition assignment (consumer group rebalance in progress)",
                            group_id=self.group_id,
                        )
                        logged_waiting_for_assignment = True
                    await asyncio.sleep(0.5)
                    continue

                if not logged_assignment_received:
                    log_with_context(
                        logger,
                        logging.INFO,
                        "Partition assignment received, starting message consumption",
                        group_id=self.group_id,
                        partitions=len(assignment),
                    )
                    logged_assignment_received = True

                data = await self._consumer.getmany(timeout_ms=1000)
                delay = await self.process_batch(data)
                self._maybe_log_cycle()

                if delay is not None and self._running:
                    await self._backoff(delay)

            except asyncio.CancelledError:
                logger.info("Consumption loop cancelled")
                raise
            except Exception as e:
                log_exception(logger, e, "Error in consumption loop")
                await asyncio.sleep(1)

    async def _backoff(self, delay: float) -> None:
        log_with_context(
            logger,
            logging.INFO,
            "Backing off before redelivery",
            delay_seconds=round(delay, 2),
        )
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def process_batch(
        self, data: Dict[TopicPartition, List[ConsumerRecord]]
    ) -> Optional[float]:
        """
        Process a fetched batch in partition order.

        If an unexpected error escapes mid-batch, every partition that still
        has unprocessed records is rewound to its first unprocessed offset
        before the error propagates, so no later commit can skip them.

        Returns:
            Backoff delay in seconds if any record needs redelivery, else None
        """
        retry_delay: Optional[float] = None
        # First offset not yet handled, per partition still in progress
        pending = {tp: records[0].offset for tp, records in data.items() if records}

        try:
            for tp, records in data.items():
                for record in records:
                    if not self._running:
                        # Unprocessed records were never committed; they are redelivered
                        return retry_delay

                    self._idle.clear()
                    try:
                        result = await self.process_record(record)
                    finally:
                        self._idle.set()

                    if result.needs_redelivery:
                        pending.pop(tp, None)
                        self._seek(tp, record.offset)
                        delay = self.retry_config.get_delay(result.attempt - 1, result.error)
                        retry_delay = delay if retry_delay is None else max(retry_delay, delay)
                        break
                    pending[tp] = record.offset + 1

                pending.pop(tp, None)
        except Exception:
            self._rewind(pending)
            raise

        return retry_delay

    def _seek(self, tp: TopicPartition, offset: int) -> bool:
        try:
            self._consumer.seek(tp, offset)
        except IllegalStateError as e:
            # Revoked: the new owner resumes from the last committed offset
            log_exception(
                logger,
                e,
                "Could not rewind partition, no longer assigned",
                level=logging.WARNING,
                include_traceback=False,
                topic=tp.topic,
                partition=tp.partition,
                offset=offset,
            )
            return False
        return True

    def _rewind(self, pending: Dict[TopicPartition, int]) -> None:
        assignment = self._consumer.assignment()
        for tp, offset in pending.items():
            if tp in assignment and self._seek(tp, offset):
                log_with_context(
                    logger,
                    logging.WARNING,
                    "Rewound partition after batch error",
                    topic=tp.topic,
                    partition=tp.partition,
                    offset=offset,
                )

    def _forget_unassigned(self, assignment) -> None:
        """Drop attempt counts for partitions this consumer no longer owns."""
        owned = {(tp.topic, tp.partition) for tp in assignment}
        stale = [key for key in self._attempts if key[:2] not in owned]
        for key in stale:
            del self._attempts[key]
        if stale:
            log_with_context(
                logger,
                logging.INFO,
                "Cleared redelivery attempts for revoked partitions",
                pending_redeliveries=len(stale),
            )

    async def process_record(self, record: ConsumerRecord) -> RecordResult:
        """Take one record through decode, summarize, publish and commit."""
        attempt_key = (record.topic, record.partition, record.offset)
        attempt = self._attempts.get(attempt_key, 0) + 1
        self._attempts[attempt_key] = attempt
        self._records_processed += 1

        record_key = record.key.decode("utf-8", errors="replace") if record.key else None

        with KafkaLogContext(
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
            key=record_key,
            consumer_group=self.group_id,
        ):
            record_message_consumed(record.topic, self.group_id)
            result = await self._process(record, attempt)

        if not result.needs_redelivery:
            self._attempts.pop(attempt_key, None)

        record_outcome(record.topic, result.outcome.value)
        if result.outcome in (RecordOutcome.COMMITTED, RecordOutcome.COMMIT_FAILED):
            self._records_succeeded += 1
        elif result.outcome == RecordOutcome.SKIPPED_POISON:
            self._records_skipped += 1
        else:
            self._records_failed += 1

        return result

    async def _process(self, record: ConsumerRecord, attempt: int) -> RecordResult:
        state = RecordState.RECEIVED
        set_log_context(issue_id="")

        try:
            issue = decode_issue(record)
        except DecodeError as e:
            return await self._handle_poison(record, e, attempt)

        state = RecordState.DECODED
        set_log_context(issue_id=str(issue.id))

        try:
            enriched = await self._summarizer.summarize(issue)
        except Exception as e:
            return await self._handle_failure(
                record, wrap_exception(e), state, "summarize", issue.id, attempt
            )

        state = RecordState.ENRICHED

        try:
            await self._producer.send(self.derived_topic, enriched.key, enriched)
        except Exception as e:
            return await self._handle_failure(
                record, wrap_exception(e), state, "publish", issue.id, attempt
            )

        state = RecordState.PUBLISHED
        log_with_context(
            logger,
            logging.INFO,
            "Summarized issue published",
            issue_id=issue.id,
            issue_number=issue.number,
            attempt=attempt,
        )
        return await self._commit(record, state, RecordOutcome.COMMITTED, issue.id, attempt)

    async def _commit(
        self,
        record: ConsumerRecord,
        state: RecordState,
        outcome: RecordOutcome,
        issue_id: Optional[int],
        attempt: int,
    ) -> RecordResult:
        try:
            await commit_record(self._consumer, record)
        except KafkaError as e:
            record_commit_failure(record.topic)
            log_exception(
                logger,
                e,
                "Offset commit failed; record may be redelivered and processed again",
                issue_id=issue_id,
                state=state.value,
            )
            return RecordResult(RecordOutcome.COMMIT_FAILED, state, issue_id, e, attempt)

        if outcome == RecordOutcome.COMMITTED:
            state = RecordState.COMMITTED
        return RecordResult(outcome, state, issue_id, None, attempt)

    async def _handle_poison(
        self, record: ConsumerRecord, error: DecodeError, attempt: int
    ) -> RecordResult:
        """Best-effort copy to the DLQ, then commit so the partition can advance."""
        record_poison_message(record.topic)
        record_processing_error(record.topic, "decode", ErrorCategory.PERMANENT.value)
        log_exception(
            logger,
            error,
            "Undecodable record, skipping",
            level=logging.WARNING,
            include_traceback=False,
            state=RecordState.RECEIVED.value,
        )

        try:
            await self._send_to_dlq(record, error, ErrorCategory.PERMANENT, attempt, "poison")
        except PipelineError as dlq_error:
            log_exception(
                logger,
                dlq_error,
                "Failed to copy poison record to DLQ, skipping anyway",
                level=logging.WARNING,
                dlq_topic=self.dlq_topic,
            )

        return await self._commit(
            record, RecordState.RECEIVED, RecordOutcome.SKIPPED_POISON, None, attempt
        )

    async def _handle_failure(
        self,
        record: ConsumerRecord,
        error: PipelineError,
        state: RecordState,
        stage: str,
        issue_id: int,
        attempt: int,
    ) -> RecordResult:
        category = classify_exception(error)
        record_processing_error(record.topic, stage, category.value)
        log_exception(
            logger,
            error,
            f"Failed to {stage} issue, record left uncommitted",
            level=logging.WARNING,
            include_traceback=False,
            issue_id=issue_id,
            state=state.value,
            attempt=attempt,
            max_attempts=self.max_delivery_attempts,
        )

        if self.max_delivery_attempts and attempt >= self.max_delivery_attempts:
            return await self._dead_letter(record, error, category, state, issue_id, attempt)

        return RecordResult(RecordOutcome.RETRY_PENDING, state, issue_id, error, attempt)

    async def _dead_letter(
        self,
        record: ConsumerRecord,
        error: PipelineError,
        category: ErrorCategory,
        state: RecordState,
        issue_id: int,
        attempt: int,
    ) -> RecordResult:
        """Route an exhausted record to the DLQ; commit only once the DLQ write is acknowledged."""
        try:
            await self._send_to_dlq(record, error, category, attempt, "exhausted")
        except PipelineError as dlq_error:
            log_exception(
                logger,
                dlq_error,
                "Failed to send exhausted record to DLQ, will retry",
                dlq_topic=self.dlq_topic,
                issue_id=issue_id,
            )
            return RecordResult(RecordOutcome.RETRY_PENDING, state, issue_id, error, attempt)

        return await self._commit(record, state, RecordOutcome.DEAD_LETTERED, issue_id, attempt)

    async def _send_to_dlq(
        self,
        record: ConsumerRecord,
        error: Exception,
        category: ErrorCategory,
        attempt: int,
        reason: str,
    ) -> None:
        dlq_message = DeadLetterMessage.from_record(
            record,
            error,
            error_category=category.value,
            attempts=attempt,
            consumer_group=self.group_id,
            worker_id=self.worker_id,
        )
        await self._producer.send(
            self.dlq_topic,
            dlq_message.key,
            dlq_message,
            headers={
                "dlq_source_topic": record.topic,
                "dlq_error_category": category.value,
                "dlq_consumer_group": self.group_id,
            },
        )
        record_dlq_message(record.topic, reason)
        log_with_context(
            logger,
            logging.INFO,
            "Record sent to DLQ",
            dlq_topic=self.dlq_topic,
            offset=record.offset,
            attempt=attempt,
            error_category=category.value,
            operation=reason,
        )

    def _maybe_log_cycle(self) -> None:
        now = time.monotonic()
        if now - self._last_cycle_log < CYCLE_LOG_INTERVAL_SECONDS:
            return
        self._last_cycle_log = now
        self._cycle_count += 1
        logger.info(
            format_cycle_output(
                self._cycle_count,
                succeeded=self._records_succeeded,
                failed=self._records_failed,
                skipped=self._records_skipped,
            )
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        return {
            "records_processed": self._records_processed,
            "records_succeeded": self._records_succeeded,
            "records_failed": self._records_failed,
            "records_skipped": self._records_skipped,
            "pending_redeliveries": len(self._attempts),
        }
