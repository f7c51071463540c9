"""
Acknowledged Kafka publishing.

send() returns only after the broker acknowledged the write (or raises), so
callers can treat a returned RecordMetadata as durable: the poller advances
its watermark and the summarizer commits its input offset only after it.
"""

import asyncio
import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError as AIOKafkaError
from aiokafka.structs import RecordMetadata
from pydantic import BaseModel

from config.config import KafkaConfig
from core.errors.exceptions import SerializationError, TransportError
from core.logging import get_logger, log_exception, log_with_context
from issue_pipeline.common.connection import build_connection_config
from issue_pipeline.common.metrics import (
    record_message_produced,
    update_connection_status,
)

logger = get_logger(__name__)

DEFAULT_SEND_TIMEOUT_SECONDS = 30.0

# producer_defaults keys forwarded to AIOKafkaProducer unchanged when present
_PASSTHROUGH_SETTINGS = ("linger_ms", "max_request_size")

MessageValue = Union[BaseModel, Dict[str, Any], bytes]


@dataclass
class PublishResult:
    key: str
    success: bool
    metadata: Optional[RecordMetadata] = None
    error: Optional[Exception] = None


def serialize_value(value: MessageValue) -> bytes:
    """UTF-8 JSON for models and dicts; bytes are sent as given."""
    if isinstance(value, bytes):
        return value
    try:
        if isinstance(value, BaseModel):
            return value.model_dump_json().encode("utf-8")
        return json.dumps(value).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(
            f"Cannot serialize {type(value).__name__} for publishing", cause=e
        ) from e


def _encode_headers(headers: Optional[Dict[str, str]]) -> Optional[List[tuple]]:
    if not headers:
        return None
    return [(name, value.encode("utf-8")) for name, value in headers.items()]


class BaseKafkaProducer:
    """
    AIOKafkaProducer wrapper used by both workers.

    Usage:
        >>> producer = BaseKafkaProducer(config.kafka, worker_name="issue_poller")
        >>> await producer.start()
        >>> try:
        ...     await producer.send("github-issues", issue.key, issue)
        ... finally:
        ...     await producer.stop()
    """

    def __init__(
        self,
        config: KafkaConfig,
        worker_name: str,
        send_timeout_seconds: float = DEFAULT_SEND_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.worker_name = worker_name
        self.send_timeout_seconds = send_timeout_seconds
        self.producer_config = dict(config.producer_defaults)
        self._producer: Optional[AIOKafkaProducer] = None

    @property
    def is_started(self) -> bool:
        return self._producer is not None

    def _client_kwargs(self) -> Dict[str, Any]:
        settings = self.producer_config
        kwargs = build_connection_config(self.config)
        kwargs["client_id"] = f"{self.worker_name}-producer"

        # Env-expanded YAML yields "1"; aiokafka wants 0, 1 or "all"
        acks = settings.get("acks", "all")
        kwargs["acks"] = int(acks) if isinstance(acks, str) and acks.isdigit() else acks
        kwargs["enable_idempotence"] = bool(settings.get("enable_idempotence", True))
        kwargs["retry_backoff_ms"] = settings.get("retry_backoff_ms", 500)

        if "compression_type" in settings:
            compression = settings["compression_type"]
            kwargs["compression_type"] = None if compression == "none" else compression
        for name in _PASSTHROUGH_SETTINGS:
            if name in settings:
                kwargs[name] = settings[name]
        return kwargs

    async def start(self) -> None:
        if self._producer is not None:
            logger.warning("Producer already started, ignoring duplicate start call")
            return

        producer = AIOKafkaProducer(**self._client_kwargs())
        await producer.start()
        self._producer = producer
        update_connection_status("producer", connected=True)

        log_with_context(
            logger,
            logging.INFO,
            "Kafka producer started",
            operation=self.worker_name,
        )

    async def stop(self) -> None:
        """
        Flush and close. Safe to call repeatedly.

        Errors are logged rather than raised so they do not hide whatever
        triggered the shutdown.
        """
        producer, self._producer = self._producer, None
        if producer is None:
            return

        try:
            await producer.flush()
            await producer.stop()
            logger.info("Kafka producer stopped", extra={"operation": self.worker_name})
        except Exception as e:
            log_exception(logger, e, "Error stopping Kafka producer")
        finally:
            update_connection_status("producer", connected=False)

    async def send(
        self,
        topic: str,
        key: str,
        value: MessageValue,
        headers: Optional[Dict[str, str]] = None,
    ) -> RecordMetadata:
        """
        Publish one record and wait for the broker acknowledgement.

        Raises:
            RuntimeError: start() was not called
            SerializationError: value cannot be encoded
            TransportError: the broker rejected the write, or did not
                acknowledge it within send_timeout_seconds
        """
        if self._producer is None:
            raise RuntimeError("Producer not started. Call start() first.")

        payload = serialize_value(value)
        failure_context = {"topic": topic, "key": key}

        try:
            metadata = await asyncio.wait_for(
                self._producer.send_and_wait(
                    topic,
                    key=key.encode("utf-8"),
                    value=payload,
                    headers=_encode_headers(headers),
                ),
                timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            record_message_produced(topic, success=False)
            raise TransportError(
                f"No acknowledgement from broker within {self.send_timeout_seconds}s",
                cause=e,
                context=failure_context,
            ) from e
        except (AIOKafkaError, OSError) as e:
            record_message_produced(topic, success=False)
            raise TransportError(
                f"Failed to publish to {topic}", cause=e, context=failure_context
            ) from e

        record_message_produced(topic, success=True)
        log_with_context(
            logger,
            logging.DEBUG,
            "Record acknowledged",
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            key=key,
            value_size=len(payload),
        )
        return metadata

    async def send_batch(
        self,
        topic: str,
        items: Sequence[BaseModel],
        key_fn: Callable[[Any], str] = lambda item: item.key,
    ) -> List[PublishResult]:
        """
        Publish items in order, one acknowledged send each.

        A failed item does not stop the rest; each gets its own
        PublishResult, in input order. Items still pending when the
        producer is stopped are reported as failed rather than raised.
        """
        if not items:
            return []

        started = time.perf_counter()
        results: List[PublishResult] = []

        for item in items:
            key = key_fn(item)
            if not self.is_started:
                error = TransportError(
                    f"Producer stopped before publishing to {topic}",
                    context={"topic": topic, "key": key},
                )
                record_message_produced(topic, success=False)
                results.append(PublishResult(key=key, success=False, error=error))
                continue

            try:
                metadata = await self.send(topic, key, item)
            except (TransportError, SerializationError) as e:
                log_exception(
                    logger,
                    e,
                    "Failed to publish item, continuing with batch",
                    level=logging.WARNING,
                    include_traceback=False,
                    topic=topic,
                    key=key,
                )
                results.append(PublishResult(key=key, success=False, error=e))
            else:
                results.append(PublishResult(key=key, success=True, metadata=metadata))

        failed = sum(1 for r in results if not r.success)
        log_with_context(
            logger,
            logging.INFO,
            "Batch publish complete",
            topic=topic,
            records_succeeded=len(results) - failed,
            records_failed=failed,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return results


__all__ = [
    "BaseKafkaProducer",
    "PublishResult",
    "serialize_value",
]
