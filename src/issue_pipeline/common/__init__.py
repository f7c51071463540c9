"""Kafka plumbing, metrics and signal handling shared by the workers."""

from issue_pipeline.common.consumer import commit_record, create_consumer
from issue_pipeline.common.producer import BaseKafkaProducer, PublishResult

__all__ = [
    "BaseKafkaProducer",
    "PublishResult",
    "create_consumer",
    "commit_record",
]
