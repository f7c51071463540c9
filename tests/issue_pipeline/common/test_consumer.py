"""Tests for consumer construction and offset commits."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiokafka.errors import CommitFailedError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from config.config import KafkaConfig
from core.errors.exceptions import KafkaError
from issue_pipeline.common.connection import build_connection_config
from issue_pipeline.common.consumer import (
    build_consumer_config,
    commit_record,
    create_consumer,
)


class TestBuildConnectionConfig:
    def test_plaintext(self):
        connection = build_connection_config(KafkaConfig(bootstrap_servers="broker:9092"))
        assert connection["bootstrap_servers"] == "broker:9092"
        assert "security_protocol" not in connection

    def test_sasl_ssl(self):
        config = KafkaConfig(
            security_protocol="SASL_SSL",
            sasl_mechanism="SCRAM-SHA-512",
            sasl_plain_username="user",
            sasl_plain_password="pass",
        )
        with patch("issue_pipeline.common.connection.create_ssl_context") as ssl_context:
            connection = build_connection_config(config)

        assert connection["security_protocol"] == "SASL_SSL"
        assert connection["ssl_context"] is ssl_context.return_value
        assert connection["sasl_mechanism"] == "SCRAM-SHA-512"
        assert connection["sasl_plain_username"] == "user"

    def test_sasl_plaintext_has_no_ssl(self):
        connection = build_connection_config(KafkaConfig(security_protocol="SASL_PLAINTEXT"))
        assert "ssl_context" not in connection
        assert connection["sasl_mechanism"] == "PLAIN"


class TestBuildConsumerConfig:
    def test_manual_commit_enforced(self):
        config = KafkaConfig(consumer_defaults={"enable_auto_commit": True})
        consumer_config = build_consumer_config(config, "github-issues-summarizer")

        assert consumer_config["enable_auto_commit"] is False
        assert consumer_config["group_id"] == "github-issues-summarizer"
        assert consumer_config["auto_offset_reset"] == "earliest"

    def test_defaults_passed_through(self):
        config = KafkaConfig(
            consumer_defaults={"max_poll_records": 1, "heartbeat_interval_ms": 3000}
        )
        consumer_config = build_consumer_config(config, "g", client_id="summarizer-0")

        assert consumer_config["max_poll_records"] == 1
        assert consumer_config["heartbeat_interval_ms"] == 3000
        assert consumer_config["client_id"] == "summarizer-0"


class TestCreateConsumer:
    def test_requires_topics(self):
        with pytest.raises(ValueError):
            create_consumer(KafkaConfig(), [], "g")

    def test_subscribes_topics(self):
        with patch("issue_pipeline.common.consumer.AIOKafkaConsumer") as consumer_cls:
            consumer = create_consumer(KafkaConfig(), ["github-issues"], "g")

        assert consumer is consumer_cls.return_value
        args, kwargs = consumer_cls.call_args
        assert args == ("github-issues",)
        assert kwargs["group_id"] == "g"


def _record(offset=41):
    return MagicMock(topic="github-issues", partition=2, offset=offset)


class TestCommitRecord:
    @pytest.mark.asyncio
    async def test_commits_next_offset(self):
        consumer = MagicMock()
        consumer.commit = AsyncMock()

        await commit_record(consumer, _record())

        consumer.commit.assert_awaited_once_with(
            {TopicPartition("github-issues", 2): OffsetAndMetadata(42, "")}
        )

    @pytest.mark.asyncio
    async def test_commit_failure_wrapped(self):
        consumer = MagicMock()
        consumer.commit = AsyncMock(side_effect=CommitFailedError("rebalanced"))

        with pytest.raises(KafkaError) as exc_info:
            await commit_record(consumer, _record())

        assert exc_info.value.context["offset"] == 41
