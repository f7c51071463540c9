"""
Kafka consumer construction and explicit offset commits.

Consumers are always built with auto-commit disabled. Offsets move only
through commit_record(), which the summarizer worker calls once the derived
record (or dead-letter copy) has been acknowledged.
"""

import logging
from typing import Any, Dict, List, Optional

from aiokafka import AIOKafkaConsumer
from aiokafka.errors import KafkaError as AIOKafkaError
from aiokafka.structs import ConsumerRecord, OffsetAndMetadata, TopicPartition

from config.config import KafkaConfig
from core.errors.exceptions import KafkaError
from core.logging import get_logger, log_with_context
from issue_pipeline.common.connection import build_connection_config

logger = get_logger(__name__)

# Consumer settings passed through from kafka.consumer_defaults when present
_OPTIONAL_CONSUMER_SETTINGS = (
    "heartbeat_interval_ms",
    "fetch_min_bytes",
    "fetch_max_wait_ms",
    "partition_assignment_strategy",
)


def build_consumer_config(
    config: KafkaConfig,
    group_id: str,
    client_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build aiokafka consumer kwargs with manual commit enforced."""
    consumer_defaults = config.consumer_defaults

    kafka_consumer_config = build_connection_config(config)
    kafka_consumer_config.update({
        "group_id": group_id,
        "enable_auto_commit": False,
        "auto_offset_reset": consumer_defaults.get("auto_offset_reset", "earliest"),
        "max_poll_records": consumer_defaults.get("max_poll_records", 10),
        "max_poll_interval_ms": consumer_defaults.get("max_poll_interval_ms", 300000),
        "session_timeout_ms": consumer_defaults.get("session_timeout_ms", 30000),
    })

    for setting in _OPTIONAL_CONSUMER_SETTINGS:
        if setting in consumer_defaults:
            kafka_consumer_config[setting] = consumer_defaults[setting]

    if client_id:
        kafka_consumer_config["client_id"] = client_id

    return kafka_consumer_config


def create_consumer(
    config: KafkaConfig,
    topics: List[str],
    group_id: str,
    client_id: Optional[str] = None,
) -> AIOKafkaConsumer:
    """Create an unstarted consumer subscribed to topics.

    Raises:
        ValueError: If no topics are given
    """
    if not topics:
        raise ValueError("At least one topic must be specified")

    kafka_consumer_config = build_consumer_config(config, group_id, client_id)

    log_with_context(
        logger,
        logging.INFO,
        "Creating Kafka consumer",
        topics=topics,
        group_id=group_id,
        bootstrap_servers=config.bootstrap_servers,
    )

    return AIOKafkaConsumer(*topics, **kafka_consumer_config)


async def commit_record(consumer: AIOKafkaConsumer, record: ConsumerRecord) -> None:
    """Commit the offset following record on its partition.

    Raises:
        KafkaError: If the broker rejects the commit
    """
    tp = TopicPartition(record.topic, record.partition)
    try:
        await consumer.commit({tp: OffsetAndMetadata(record.offset + 1, "")})
    except AIOKafkaError as e:
        raise KafkaError(
            f"Failed to commit offset {record.offset + 1} on {record.topic}:{record.partition}",
            cause=e,
            context={
                "topic": record.topic,
                "partition": record.partition,
                "offset": record.offset,
            },
        ) from e

    log_with_context(
        logger,
        logging.DEBUG,
        "Committed offset",
        topic=record.topic,
        partition=record.partition,
        offset=record.offset + 1,
    )


__all__ = [
    "build_consumer_config",
    "create_consumer",
    "commit_record",
]
