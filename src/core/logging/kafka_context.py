"""Kafka-specific context variables for structured logging."""

from contextvars import ContextVar
from typing import Any, Dict, Optional

_kafka_topic: ContextVar[str] = ContextVar("kafka_topic", default="")
_kafka_partition: ContextVar[int] = ContextVar("kafka_partition", default=-1)
_kafka_offset: ContextVar[int] = ContextVar("kafka_offset", default=-1)
_kafka_key: ContextVar[str] = ContextVar("kafka_key", default="")
_kafka_consumer_group: ContextVar[str] = ContextVar("kafka_consumer_group", default="")

_VARS = {
    "topic": (_kafka_topic, ""),
    "partition": (_kafka_partition, -1),
    "offset": (_kafka_offset, -1),
    "key": (_kafka_key, ""),
    "consumer_group": (_kafka_consumer_group, ""),
}


def set_kafka_context(
    topic: Optional[str] = None,
    partition: Optional[int] = None,
    offset: Optional[int] = None,
    key: Optional[str] = None,
    consumer_group: Optional[str] = None,
) -> None:
    """Set Kafka-specific context variables. None leaves a value untouched."""
    values = {
        "topic": topic,
        "partition": partition,
        "offset": offset,
        "key": key,
        "consumer_group": consumer_group,
    }
    for name, value in values.items():
        if value is not None:
            _VARS[name][0].set(value)


def get_kafka_context() -> Dict[str, Any]:
    """
    Get current Kafka logging context.

    Topic, partition and offset are always present once a record is being
    processed; key and consumer group only when set.
    """
    topic = _kafka_topic.get()
    if not topic:
        return {}

    context: Dict[str, Any] = {
        "kafka_topic": topic,
        "kafka_partition": _kafka_partition.get(),
        "kafka_offset": _kafka_offset.get(),
    }

    key = _kafka_key.get()
    if key:
        context["kafka_key"] = key

    consumer_group = _kafka_consumer_group.get()
    if consumer_group:
        context["kafka_consumer_group"] = consumer_group

    return context


def clear_kafka_context() -> None:
    """Clear all Kafka logging context variables."""
    for var, default in _VARS.values():
        var.set(default)


class KafkaLogContext:
    """
    Context manager that scopes Kafka record coordinates to a block.

    Usage:
        with KafkaLogContext(topic="github-issues", partition=0, offset=42):
            await worker.process_record(record)
    """

    def __init__(
        self,
        topic: Optional[str] = None,
        partition: Optional[int] = None,
        offset: Optional[int] = None,
        key: Optional[str] = None,
        consumer_group: Optional[str] = None,
    ):
        self.new_context = {
            "topic": topic,
            "partition": partition,
            "offset": offset,
            "key": key,
            "consumer_group": consumer_group,
        }
        self._tokens: list = []

    def __enter__(self) -> "KafkaLogContext":
        for name, value in self.new_context.items():
            if value is not None:
                self._tokens.append(_VARS[name][0].set(value))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            token = self._tokens.pop()
            token.var.reset(token)
        return False
