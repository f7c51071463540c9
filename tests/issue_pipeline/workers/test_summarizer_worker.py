"""Tests for the issue summarizer worker."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiokafka.errors import CommitFailedError, IllegalStateError
from aiokafka.structs import ConsumerRecord, TopicPartition

from config.config import PipelineConfig
from core.errors.exceptions import (
    DecodeError,
    MissingCredentialError,
    TransportError,
    UpstreamError,
)
from issue_pipeline.schemas.dlq import DeadLetterMessage
from issue_pipeline.schemas.issues import Issue, SummarizedIssue
from issue_pipeline.workers.summarizer_worker import (
    IssueSummarizerWorker,
    RecordOutcome,
    RecordState,
    decode_issue,
)

SOURCE = "github-issues"
DERIVED = "github-issues-summarized"
DLQ = "github-issues.dlq"
TP0 = TopicPartition(SOURCE, 0)
TP1 = TopicPartition(SOURCE, 1)


def _issue_value(issue_id=2468013579, title="Crash on boot"):
    return json.dumps(
        {
            "id": issue_id,
            "number": 812,
            "title": title,
            "body": "Steps to reproduce...",
            "html_url": "https://github.com/bootc-dev/bootc/issues/812",
        }
    ).encode("utf-8")


def _record(offset=0, value=None, key=b"2468013579", partition=0):
    value = _issue_value() if value is None else value
    return ConsumerRecord(
        topic=SOURCE,
        partition=partition,
        offset=offset,
        timestamp=0,
        timestamp_type=0,
        key=key,
        value=value,
        checksum=None,
        serialized_key_size=len(key) if key else -1,
        serialized_value_size=len(value),
        headers=[],
    )


class FakeConsumer:
    def __init__(self, batches=None, commit_error=None, assigned=None, revoked=()):
        self.batches = list(batches or [])
        self.commit_error = commit_error
        self.assigned = set(assigned or {TP0})
        self.revoked = set(revoked)
        self.commits = []
        self.seeks = []
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    def assignment(self):
        return set(self.assigned)

    async def getmany(self, timeout_ms=0):
        if self.batches:
            return self.batches.pop(0)
        await asyncio.sleep(0.01)
        return {}

    def seek(self, tp, offset):
        if tp in self.revoked:
            raise IllegalStateError(f"No current assignment for partition {tp}")
        self.seeks.append((tp, offset))

    async def commit(self, offsets):
        if self.commit_error is not None:
            raise self.commit_error
        self.commits.append({tp: meta.offset for tp, meta in offsets.items()})


class FakeProducer:
    is_started = True

    def __init__(self, fail_topics=()):
        self.fail_topics = set(fail_topics)
        self.sent = []

    async def start(self):
        pass

    async def stop(self):
        pass

    async def send(self, topic, key, value, headers=None):
        if topic in self.fail_topics:
            raise TransportError(f"No acknowledgement from broker for {topic}")
        self.sent.append((topic, key, value, headers))
        return MagicMock(topic=topic, partition=0, offset=len(self.sent))

    def sent_to(self, topic):
        return [s for s in self.sent if s[0] == topic]


def _summarizer(side_effect=None):
    def summarize(issue):
        return SummarizedIssue.from_issue(
            issue, "The system crashes during boot after the latest update."
        )

    summarizer = MagicMock()
    summarizer.summarize = AsyncMock(side_effect=side_effect or summarize)
    summarizer.close = AsyncMock()
    return summarizer


@pytest.fixture
def config():
    config = PipelineConfig()
    config.processing.max_delivery_attempts = 3
    config.processing.retry_base_delay_seconds = 1.0
    config.processing.retry_max_delay_seconds = 60.0
    config.processing.shutdown_timeout_seconds = 1.0
    return config


def _worker(config, summarizer=None, producer=None, consumer=None):
    worker = IssueSummarizerWorker(
        config,
        summarizer=summarizer or _summarizer(),
        producer=producer or FakeProducer(),
        consumer=consumer or FakeConsumer(),
    )
    worker._running = True
    return worker


class TestDecodeIssue:
    def test_valid(self):
        assert decode_issue(_record()).title == "Crash on boot"

    @pytest.mark.parametrize("value", [b"not-json", b"{}", b"[1, 2]"])
    def test_invalid(self, value):
        with pytest.raises(DecodeError):
            decode_issue(_record(value=value))

    def test_missing_value(self):
        record = _record()
        record.value = None
        with pytest.raises(DecodeError):
            decode_issue(record)


class TestProcessRecord:
    @pytest.mark.asyncio
    async def test_happy_path(self, config):
        producer = FakeProducer()
        consumer = FakeConsumer()
        worker = _worker(config, producer=producer, consumer=consumer)

        result = await worker.process_record(_record(offset=7))

        assert result.outcome == RecordOutcome.COMMITTED
        assert result.state == RecordState.COMMITTED
        assert result.issue_id == 2468013579

        (topic, key, value, _), = producer.sent
        assert topic == DERIVED
        assert key == "2468013579"
        assert value.title == "Crash on boot"
        assert value.summary.startswith("The system crashes")
        assert consumer.commits == [{TP0: 8}]

    @pytest.mark.asyncio
    async def test_poison_record_dead_lettered_and_committed(self, config):
        summarizer = _summarizer()
        producer = FakeProducer()
        consumer = FakeConsumer()
        worker = _worker(config, summarizer, producer, consumer)

        result = await worker.process_record(_record(offset=3, value=b"not-json"))

        assert result.outcome == RecordOutcome.SKIPPED_POISON
        assert result.state == RecordState.RECEIVED
        summarizer.summarize.assert_not_awaited()
        (topic, key, message, headers), = producer.sent
        assert topic == DLQ
        assert isinstance(message, DeadLetterMessage)
        assert message.original_value == "not-json"
        assert message.original_offset == 3
        assert headers == {
            "dlq_source_topic": SOURCE,
            "dlq_error_category": "permanent",
            "dlq_consumer_group": "github-issues-summarizer",
        }
        assert consumer.commits == [{TP0: 4}]
        assert worker.stats["records_skipped"] == 1

    @pytest.mark.asyncio
    async def test_poison_committed_even_if_dlq_unavailable(self, config):
        consumer = FakeConsumer()
        worker = _worker(config, producer=FakeProducer(fail_topics={DLQ}), consumer=consumer)

        result = await worker.process_record(_record(offset=3, value=b"not-json"))

        assert result.outcome == RecordOutcome.SKIPPED_POISON
        assert consumer.commits == [{TP0: 4}]

    @pytest.mark.asyncio
    async def test_summarizer_failure_leaves_record_uncommitted(self, config):
        summarizer = _summarizer(side_effect=UpstreamError(500, body="internal error"))
        producer = FakeProducer()
        consumer = FakeConsumer()
        worker = _worker(config, summarizer, producer, consumer)

        result = await worker.process_record(_record(offset=5))

        assert result.outcome == RecordOutcome.RETRY_PENDING
        assert result.state == RecordState.DECODED
        assert result.needs_redelivery
        assert isinstance(result.error, UpstreamError)
        assert producer.sent == []
        assert consumer.commits == []

    @pytest.mark.asyncio
    async def test_publish_failure_leaves_record_uncommitted(self, config):
        consumer = FakeConsumer()
        worker = _worker(config, producer=FakeProducer(fail_topics={DERIVED}), consumer=consumer)

        result = await worker.process_record(_record(offset=5))

        assert result.outcome == RecordOutcome.RETRY_PENDING
        assert result.state == RecordState.ENRICHED
        assert consumer.commits == []

    @pytest.mark.asyncio
    async def test_attempts_counted_per_offset(self, config):
        summarizer = _summarizer(side_effect=TransportError("timeout"))
        worker = _worker(config, summarizer)

        first = await worker.process_record(_record(offset=5))
        second = await worker.process_record(_record(offset=5))
        other = await worker.process_record(_record(offset=6))

        assert (first.attempt, second.attempt, other.attempt) == (1, 2, 1)
        assert worker.stats["pending_redeliveries"] == 2

    @pytest.mark.asyncio
    async def test_exhausted_record_dead_lettered(self, config):
        summarizer = _summarizer(side_effect=UpstreamError(503, body="overloaded"))
        producer = FakeProducer()
        consumer = FakeConsumer()
        worker = _worker(config, summarizer, producer, consumer)

        outcomes = [
            (await worker.process_record(_record(offset=9))).outcome for _ in range(3)
        ]

        assert outcomes == [
            RecordOutcome.RETRY_PENDING,
            RecordOutcome.RETRY_PENDING,
            RecordOutcome.DEAD_LETTERED,
        ]
        (topic, _, message, headers), = producer.sent
        assert topic == DLQ
        assert message.attempts == 3
        assert message.error_category == "transient"
        assert headers["dlq_error_category"] == "transient"
        assert consumer.commits == [{TP0: 10}]
        assert worker.stats["pending_redeliveries"] == 0

    @pytest.mark.asyncio
    async def test_exhausted_record_kept_when_dlq_unavailable(self, config):
        config.processing.max_delivery_attempts = 1
        summarizer = _summarizer(side_effect=UpstreamError(500))
        consumer = FakeConsumer()
        worker = _worker(config, summarizer, FakeProducer(fail_topics={DLQ}), consumer)

        result = await worker.process_record(_record(offset=2))

        assert result.outcome == RecordOutcome.RETRY_PENDING
        assert consumer.commits == []

    @pytest.mark.asyncio
    async def test_unbounded_attempts(self, config):
        config.processing.max_delivery_attempts = 0
        summarizer = _summarizer(side_effect=UpstreamError(500))
        worker = _worker(config, summarizer)

        for _ in range(10):
            result = await worker.process_record(_record(offset=2))
            assert result.outcome == RecordOutcome.RETRY_PENDING

    @pytest.mark.asyncio
    async def test_commit_failure_reported(self, config):
        producer = FakeProducer()
        consumer = FakeConsumer(commit_error=CommitFailedError("rebalanced"))
        worker = _worker(config, producer=producer, consumer=consumer)

        result = await worker.process_record(_record(offset=1))

        assert result.outcome == RecordOutcome.COMMIT_FAILED
        assert result.state == RecordState.PUBLISHED
        assert len(producer.sent_to(DERIVED)) == 1


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_poison_then_valid_record(self, config):
        producer = FakeProducer()
        consumer = FakeConsumer()
        worker = _worker(config, producer=producer, consumer=consumer)

        delay = await worker.process_batch(
            {TP0: [_record(offset=0, value=b"not-json"), _record(offset=1)]}
        )

        assert delay is None
        assert consumer.commits == [{TP0: 1}, {TP0: 2}]
        assert len(producer.sent_to(DLQ)) == 1
        assert len(producer.sent_to(DERIVED)) == 1

    @pytest.mark.asyncio
    async def test_failure_rewinds_partition(self, config):
        calls = []

        def summarize(issue):
            calls.append(issue.id)
            if issue.id == 2:
                raise TransportError("timeout")
            return SummarizedIssue.from_issue(issue, "summary")

        tp1 = TopicPartition(SOURCE, 1)
        consumer = FakeConsumer()
        worker = _worker(config, _summarizer(side_effect=summarize), consumer=consumer)

        delay = await worker.process_batch(
            {
                TP0: [
                    _record(offset=0, value=_issue_value(1)),
                    _record(offset=1, value=_issue_value(2)),
                    _record(offset=2, value=_issue_value(3)),
                ],
                tp1: [_record(offset=0, value=_issue_value(4), partition=1)],
            }
        )

        # Offset 2 on partition 0 is not processed ahead of the failed offset 1
        assert calls == [1, 2, 4]
        assert consumer.seeks == [(TP0, 1)]
        assert consumer.commits == [{TP0: 1}, {tp1: 1}]
        assert 0 < delay <= 1.0

    @pytest.mark.asyncio
    async def test_revoked_partition_does_not_drop_other_partitions(self, config):
        calls = []

        def summarize(issue):
            calls.append(issue.id)
            if issue.id == 1:
                raise TransportError("timeout")
            return SummarizedIssue.from_issue(issue, "summary")

        consumer = FakeConsumer(assigned={TP1}, revoked={TP0})
        worker = _worker(config, _summarizer(side_effect=summarize), consumer=consumer)

        delay = await worker.process_batch(
            {
                TP0: [_record(offset=5, value=_issue_value(1))],
                TP1: [
                    _record(offset=0, value=_issue_value(2), partition=1),
                    _record(offset=1, value=_issue_value(3), partition=1),
                ],
            }
        )

        assert calls == [1, 2, 3]
        assert consumer.seeks == []
        assert consumer.commits == [{TP1: 1}, {TP1: 2}]
        assert delay is not None

    @pytest.mark.asyncio
    async def test_unexpected_error_rewinds_unprocessed_partitions(self, config):
        consumer = FakeConsumer(assigned={TP0, TP1})
        worker = _worker(config, consumer=consumer)
        process_record = worker.process_record

        async def failing_process_record(record):
            if (record.partition, record.offset) == (0, 6):
                raise RuntimeError("unexpected")
            return await process_record(record)

        worker.process_record = failing_process_record

        with pytest.raises(RuntimeError):
            await worker.process_batch(
                {
                    TP0: [_record(offset=5), _record(offset=6), _record(offset=7)],
                    TP1: [_record(offset=0, partition=1), _record(offset=1, partition=1)],
                }
            )

        assert consumer.commits == [{TP0: 6}]
        assert consumer.seeks == [(TP0, 6), (TP1, 0)]

    @pytest.mark.asyncio
    async def test_unexpected_error_skips_revoked_partitions(self, config):
        consumer = FakeConsumer(assigned={TP0})
        worker = _worker(config, consumer=consumer)
        worker.process_record = AsyncMock(side_effect=RuntimeError("unexpected"))

        with pytest.raises(RuntimeError):
            await worker.process_batch(
                {
                    TP0: [_record(offset=3)],
                    TP1: [_record(offset=8, partition=1)],
                }
            )

        assert consumer.seeks == [(TP0, 3)]

    @pytest.mark.asyncio
    async def test_backoff_grows_with_attempts(self, config):
        config.processing.max_delivery_attempts = 0
        worker = _worker(config, _summarizer(side_effect=TransportError("down")))

        for _ in range(4):
            delay = await worker.process_batch({TP0: [_record(offset=0)]})

        # Fourth attempt: base 1.0 * 2**3 = 8, equal jitter gives [4, 8]
        assert 4.0 <= delay <= 8.0

    @pytest.mark.asyncio
    async def test_stops_between_records(self, config):
        consumer = FakeConsumer()
        worker = _worker(config, consumer=consumer)
        worker._running = False

        assert await worker.process_batch({TP0: [_record(offset=0)]}) is None
        assert consumer.commits == []


class TestLifecycle:
    def test_missing_api_key_fails_fast(self, config):
        config.summarizer.api_key = ""
        with pytest.raises(MissingCredentialError):
            IssueSummarizerWorker(config, producer=FakeProducer(), consumer=FakeConsumer())

    @pytest.mark.asyncio
    async def test_start_consumes_until_stopped(self, config):
        consumer = FakeConsumer(batches=[{TP0: [_record(offset=0), _record(offset=1)]}])
        summarizer = _summarizer()
        worker = IssueSummarizerWorker(
            config, summarizer=summarizer, producer=FakeProducer(), consumer=consumer
        )

        task = asyncio.create_task(worker.start())
        for _ in range(100):
            if len(consumer.commits) == 2:
                break
            await asyncio.sleep(0.01)

        assert worker.is_running
        await worker.stop()
        await asyncio.wait_for(task, timeout=2)

        assert consumer.started
        assert consumer.stopped
        assert consumer.commits == [{TP0: 1}, {TP0: 2}]
        assert not worker.is_running
        summarizer.close.assert_not_awaited()

    def test_forget_unassigned(self, config):
        worker = _worker(config)
        worker._attempts = {(SOURCE, 0, 5): 2, (SOURCE, 1, 3): 1}

        worker._forget_unassigned({TP1})

        assert worker._attempts == {(SOURCE, 1, 3): 1}

    @pytest.mark.asyncio
    async def test_attempts_dropped_when_partition_revoked(self, config):
        config.processing.retry_base_delay_seconds = 0.01
        config.processing.retry_max_delay_seconds = 0.02
        consumer = FakeConsumer(batches=[{TP0: [_record(offset=5)]}])
        worker = IssueSummarizerWorker(
            config,
            summarizer=_summarizer(side_effect=TransportError("down")),
            producer=FakeProducer(),
            consumer=consumer,
        )

        task = asyncio.create_task(worker.start())
        for _ in range(100):
            if consumer.seeks:
                break
            await asyncio.sleep(0.01)
        assert worker.stats["pending_redeliveries"] == 1

        consumer.assigned = {TP1}
        for _ in range(100):
            if worker.stats["pending_redeliveries"] == 0:
                break
            await asyncio.sleep(0.01)

        await worker.stop()
        await asyncio.wait_for(task, timeout=2)
        assert worker.stats["pending_redeliveries"] == 0

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, config):
        consumer = FakeConsumer()
        worker = _worker(config, consumer=consumer)

        await worker.stop()
        consumer.stopped = False
        await worker.stop()

        assert not consumer.stopped

    def test_worker_id_includes_instance(self, config):
        worker = IssueSummarizerWorker(
            config,
            summarizer=_summarizer(),
            producer=FakeProducer(),
            consumer=FakeConsumer(),
            instance_id="1",
        )
        assert worker.worker_id == "issue_summarizer-1"


def test_issue_fixture_decodes():
    assert Issue.model_validate_json(_issue_value()).number == 812
