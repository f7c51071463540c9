"""Configuration loading for the issue pipeline.

Configuration lives in a single YAML file (config/config.yaml by default,
or the path in $ISSUE_PIPELINE_CONFIG) with one section per concern:

    kafka       connection, client defaults, topics, consumer group
    tracker     GitHub repository, token, paging limits
    summarizer  chat completion endpoint, key, model parameters
    poller      interval, initial lookback, watermark store
    processing  redelivery, dead-letter and timeout settings

Settings are merged in the following priority (highest to lowest):

1. Well-known environment variables (KAFKA_BOOTSTRAP_SERVERS, GITHUB_TOKEN, ...)
2. Overrides passed to load_config(overrides=...)
3. YAML values (with ${VAR} expansion)
4. Dataclass defaults

Usage:
    >>> from config import load_config
    >>> config = load_config()
    >>> config.kafka.source_topic
    'github-issues'
"""

from config.config import (
    KafkaConfig,
    PipelineConfig,
    PollerConfig,
    ProcessingConfig,
    SummarizerConfig,
    TrackerConfig,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
    "PipelineConfig",
    "KafkaConfig",
    "TrackerConfig",
    "SummarizerConfig",
    "PollerConfig",
    "ProcessingConfig",
]
