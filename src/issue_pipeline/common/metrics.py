"""
Prometheus metrics for pipeline monitoring.

Focused on essential metrics:
- Issues fetched and poll cycle outcomes
- Message production and consumption counts
- Per-record outcomes, poison messages and dead-lettering
- Summarizer latency
- Watermark position and connection health
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Poller
# =============================================================================

poll_cycles_total = Counter(
    "issue_pipeline_poll_cycles_total",
    "Poll cycles by result",
    ["result"],
)

issues_fetched_total = Counter(
    "issue_pipeline_issues_fetched_total",
    "Issues returned by the tracker",
)

watermark_timestamp_seconds = Gauge(
    "issue_pipeline_watermark_timestamp_seconds",
    "Current poller watermark as a Unix timestamp",
)

# =============================================================================
# Kafka
# =============================================================================

messages_produced_total = Counter(
    "issue_pipeline_messages_produced_total",
    "Messages produced by topic and status",
    ["topic", "status"],
)

messages_consumed_total = Counter(
    "issue_pipeline_messages_consumed_total",
    "Records consumed by topic and consumer group",
    ["topic", "consumer_group"],
)

record_outcomes_total = Counter(
    "issue_pipeline_record_outcomes_total",
    "Final outcome of each processed record",
    ["topic", "outcome"],
)

poison_messages_total = Counter(
    "issue_pipeline_poison_messages_total",
    "Undecodable records skipped by the summarizer worker",
    ["topic"],
)

processing_errors_total = Counter(
    "issue_pipeline_processing_errors_total",
    "Record processing errors by stage and error category",
    ["topic", "stage", "error_category"],
)

dlq_messages_total = Counter(
    "issue_pipeline_dlq_messages_total",
    "Records written to the dead-letter topic",
    ["topic", "reason"],
)

commit_failures_total = Counter(
    "issue_pipeline_commit_failures_total",
    "Offset commits that failed after a successful publish",
    ["topic"],
)

kafka_connection_status = Gauge(
    "issue_pipeline_kafka_connection_status",
    "Kafka client connection status (1 connected, 0 disconnected)",
    ["component"],
)

# =============================================================================
# Summarizer
# =============================================================================

summarizer_request_duration_seconds = Histogram(
    "issue_pipeline_summarizer_request_duration_seconds",
    "Chat completion request latency",
    ["status"],
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0),
)


def record_poll_cycle(result: str, fetched: int = 0) -> None:
    poll_cycles_total.labels(result=result).inc()
    if fetched:
        issues_fetched_total.inc(fetched)


def update_watermark(timestamp: float) -> None:
    watermark_timestamp_seconds.set(timestamp)


def record_message_produced(topic: str, success: bool = True) -> None:
    messages_produced_total.labels(
        topic=topic, status="success" if success else "error"
    ).inc()


def record_message_consumed(topic: str, consumer_group: str) -> None:
    messages_consumed_total.labels(topic=topic, consumer_group=consumer_group).inc()


def record_outcome(topic: str, outcome: str) -> None:
    record_outcomes_total.labels(topic=topic, outcome=outcome).inc()


def record_poison_message(topic: str) -> None:
    poison_messages_total.labels(topic=topic).inc()


def record_processing_error(topic: str, stage: str, error_category: str) -> None:
    processing_errors_total.labels(
        topic=topic, stage=stage, error_category=error_category
    ).inc()


def record_dlq_message(topic: str, reason: str) -> None:
    dlq_messages_total.labels(topic=topic, reason=reason).inc()


def record_commit_failure(topic: str) -> None:
    commit_failures_total.labels(topic=topic).inc()


def update_connection_status(component: str, connected: bool) -> None:
    kafka_connection_status.labels(component=component).set(1 if connected else 0)


def observe_summarizer_request(duration: float, status: str) -> None:
    summarizer_request_duration_seconds.labels(status=status).observe(duration)
