"""
Dead-letter message schema.

Written to "{source_topic}.dlq" when a source record is undecodable or has
exhausted its delivery attempts. Preserves the raw record so it can be
inspected and replayed by hand.
"""

from datetime import UTC, datetime
from typing import Optional

from aiokafka.structs import ConsumerRecord
from pydantic import BaseModel, Field, field_serializer, field_validator

from issue_pipeline.schemas.issues import format_rfc3339


def _decode(raw: Optional[bytes]) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw
    return raw.decode("utf-8", errors="replace")


class DeadLetterMessage(BaseModel):
    """Schema for records routed to the dead-letter topic.

    Attributes:
        original_topic: Topic the record was consumed from
        original_partition: Partition of the original record
        original_offset: Offset of the original record
        original_key: Record key (issue id) if present
        original_value: Raw record value, decoded as UTF-8 with replacement
        error_type: Exception class of the final failure
        error_message: Final error message (truncated to 500 chars)
        error_category: ErrorCategory value of the final failure
        attempts: Delivery attempts made in this process
        consumer_group: Consumer group that gave up on the record
        worker_id: Worker instance that routed the record
        failed_at: When the record was dead-lettered
    """

    original_topic: str = Field(..., min_length=1)
    original_partition: int = Field(..., ge=0)
    original_offset: int = Field(..., ge=0)
    original_key: Optional[str] = None
    original_value: Optional[str] = None
    error_type: str
    error_message: str
    error_category: str
    attempts: int = Field(default=1, ge=1)
    consumer_group: str
    worker_id: str = ""
    failed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("error_message")
    @classmethod
    def truncate_error_message(cls, v: str) -> str:
        if len(v) > 500:
            return v[:497] + "..."
        return v

    @field_serializer("failed_at")
    def serialize_failed_at(self, timestamp: datetime) -> str:
        return format_rfc3339(timestamp)

    @classmethod
    def from_record(
        cls,
        record: ConsumerRecord,
        error: Exception,
        error_category: str,
        attempts: int,
        consumer_group: str,
        worker_id: str = "",
    ) -> "DeadLetterMessage":
        return cls(
            original_topic=record.topic,
            original_partition=record.partition,
            original_offset=record.offset,
            original_key=_decode(record.key),
            original_value=_decode(record.value),
            error_type=type(error).__name__,
            error_message=str(error),
            error_category=error_category,
            attempts=attempts,
            consumer_group=consumer_group,
            worker_id=worker_id,
        )

    @property
    def key(self) -> str:
        return self.original_key or f"dlq-{self.original_partition}-{self.original_offset}"
