"""Issue pipeline configuration from YAML file.

Loads from config/config.yaml with all settings in one place:
- Kafka connection settings, client defaults, topics and consumer group
- Issue tracker (GitHub) repository and credentials
- Summarizer (chat completion API) model parameters and credentials
- Poller interval and watermark persistence
- Record processing (redelivery and dead-letter) settings

Environment variables ARE supported using ${VAR_NAME} and ${VAR_NAME:-default}
syntax in YAML files. A handful of well-known variables (KAFKA_BOOTSTRAP_SERVERS,
GITHUB_TOKEN, OPENAI_API_KEY, GITHUB_OWNER, GITHUB_REPO) override the file.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yaml"
CONFIG_PATH_ENV_VAR = "ISSUE_PIPELINE_CONFIG"

VALID_SECURITY_PROTOCOLS = ("PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL")
VALID_OFFSET_RESETS = ("earliest", "latest", "none")
VALID_WATERMARK_STORES = ("json", "memory")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base, returning a new dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _validate_min(value: Any, minimum: float, name: str) -> None:
    if value is None:
        return
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")


def _validate_range(value: Any, low: float, high: float, name: str) -> None:
    if value is None:
        return
    if not (low <= value <= high):
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")


@dataclass
class KafkaConfig:
    """Kafka connection, client defaults and topic layout.

    All timing values in milliseconds.
    """

    bootstrap_servers: str = "localhost:9092"
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str = "PLAIN"
    sasl_plain_username: str = ""
    sasl_plain_password: str = ""
    request_timeout_ms: int = 30000
    metadata_max_age_ms: int = 300000

    consumer_defaults: Dict[str, Any] = field(default_factory=dict)
    producer_defaults: Dict[str, Any] = field(default_factory=dict)

    source_topic: str = "github-issues"
    derived_topic: str = "github-issues-summarized"
    dlq_topic: str = ""
    group_id: str = "github-issues-summarizer"

    def get_dlq_topic(self) -> str:
        """Dead-letter topic for the source topic, '{source}.dlq' unless configured."""
        return self.dlq_topic or f"{self.source_topic}.dlq"

    def validate(self) -> None:
        if not self.bootstrap_servers:
            raise ValueError("bootstrap_servers is required in kafka.connection section")
        if self.security_protocol not in VALID_SECURITY_PROTOCOLS:
            raise ValueError(
                f"kafka.connection.security_protocol must be one of "
                f"{VALID_SECURITY_PROTOCOLS}, got '{self.security_protocol}'"
            )
        for name in ("source_topic", "derived_topic", "group_id"):
            if not getattr(self, name):
                raise ValueError(f"kafka.{name} is required")
        if self.source_topic == self.derived_topic:
            raise ValueError("kafka.source_topic and kafka.derived_topic must differ")

        offset_reset = self.consumer_defaults.get("auto_offset_reset")
        if offset_reset is not None and offset_reset not in VALID_OFFSET_RESETS:
            raise ValueError(
                f"kafka.consumer_defaults.auto_offset_reset must be one of "
                f"{VALID_OFFSET_RESETS}, got '{offset_reset}'"
            )
        if self.consumer_defaults.get("enable_auto_commit"):
            raise ValueError(
                "kafka.consumer_defaults.enable_auto_commit must be false; "
                "offsets are committed only after the summarized issue is published"
            )
        _validate_min(
            self.consumer_defaults.get("max_poll_records"), 1,
            "kafka.consumer_defaults.max_poll_records",
        )


@dataclass
class TrackerConfig:
    """Issue tracker (GitHub REST API) settings."""

    base_url: str = "https://api.github.com"
    owner: str = "bootc-dev"
    repo: str = "bootc"
    token: str = ""
    timeout_seconds: float = 30.0
    per_page: int = 100
    max_pages: int = 10
    max_attempts: int = 3

    def validate(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(
                f"tracker.base_url must start with http:// or https://, got: {self.base_url!r}"
            )
        if not self.owner or not self.repo:
            raise ValueError("tracker.owner and tracker.repo are required")
        _validate_min(self.timeout_seconds, 1, "tracker.timeout_seconds")
        _validate_range(self.per_page, 1, 100, "tracker.per_page")
        _validate_min(self.max_pages, 1, "tracker.max_pages")
        _validate_min(self.max_attempts, 1, "tracker.max_attempts")


@dataclass
class SummarizerConfig:
    """Chat completion API settings."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-3.5-turbo"
    max_tokens: int = 150
    temperature: float = 0.3
    timeout_seconds: float = 60.0

    def validate(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(
                f"summarizer.base_url must start with http:// or https://, got: {self.base_url!r}"
            )
        if not self.model:
            raise ValueError("summarizer.model is required")
        _validate_min(self.max_tokens, 1, "summarizer.max_tokens")
        _validate_range(self.temperature, 0.0, 2.0, "summarizer.temperature")
        _validate_min(self.timeout_seconds, 1, "summarizer.timeout_seconds")


@dataclass
class PollerConfig:
    """Fetch schedule and watermark persistence."""

    poll_interval_seconds: float = 3600.0
    initial_lookback_hours: float = 24.0
    watermark_store: str = "json"
    watermark_path: str = "state/watermark.json"

    def validate(self) -> None:
        _validate_min(self.poll_interval_seconds, 1, "poller.poll_interval_seconds")
        _validate_min(self.initial_lookback_hours, 0, "poller.initial_lookback_hours")
        if self.watermark_store not in VALID_WATERMARK_STORES:
            raise ValueError(
                f"poller.watermark_store must be one of {VALID_WATERMARK_STORES}, "
                f"got '{self.watermark_store}'"
            )
        if self.watermark_store == "json" and not self.watermark_path:
            raise ValueError("poller.watermark_path is required for the json watermark store")


@dataclass
class ProcessingConfig:
    """Record processing settings for the summarizer worker.

    max_delivery_attempts of 0 disables dead-lettering (unbounded redelivery).
    """

    max_delivery_attempts: int = 5
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0
    send_timeout_seconds: float = 30.0
    shutdown_timeout_seconds: float = 30.0

    def validate(self) -> None:
        _validate_min(self.max_delivery_attempts, 0, "processing.max_delivery_attempts")
        _validate_min(self.retry_base_delay_seconds, 0, "processing.retry_base_delay_seconds")
        _validate_min(
            self.retry_max_delay_seconds,
            self.retry_base_delay_seconds,
            "processing.retry_max_delay_seconds",
        )
        _validate_min(self.send_timeout_seconds, 1, "processing.send_timeout_seconds")
        _validate_min(self.shutdown_timeout_seconds, 0, "processing.shutdown_timeout_seconds")


@dataclass
class PipelineConfig:
    """Complete issue pipeline configuration."""

    kafka: KafkaConfig = field(default_factory=KafkaConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    summarizer: SummarizerConfig = field(default_factory=SummarizerConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    logging_config: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Validate every section, raising ValueError naming the offending key."""
        self.kafka.validate()
        self.tracker.validate()
        self.summarizer.validate()
        self.poller.validate()
        self.processing.validate()


def _section(data: Dict[str, Any], cls: type, env: Dict[str, Optional[str]]) -> Any:
    """Build a config dataclass from a YAML section, applying env overrides."""
    known = {f for f in cls.__dataclass_fields__}
    values = {k: v for k, v in data.items() if k in known and v is not None and v != ""}

    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(
            "Ignoring unknown configuration keys",
            extra={"section": cls.__name__, "keys": unknown},
        )

    for key, value in env.items():
        if value:
            values[key] = value

    instance = cls(**values)

    # ${VAR} expansion always yields strings
    for name, f in cls.__dataclass_fields__.items():
        if f.type not in (int, float):
            continue
        value = getattr(instance, name)
        try:
            setattr(instance, name, f.type(value))
        except (TypeError, ValueError) as e:
            raise ValueError(f"{cls.__name__}.{name} must be numeric, got {value!r}") from e
    return instance


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> PipelineConfig:
    """Load issue pipeline configuration from YAML file.

    Args:
        config_path: Path to YAML file. Defaults to $ISSUE_PIPELINE_CONFIG, then
            src/config/config.yaml. A missing default file yields pure defaults;
            an explicitly given path must exist.
        overrides: Nested dict deep-merged over the file (CLI flags use this).

    Raises:
        FileNotFoundError: If an explicit config_path does not exist
        ValueError: If the merged configuration is invalid
    """
    if config_path is None and os.getenv(CONFIG_PATH_ENV_VAR):
        config_path = Path(os.environ[CONFIG_PATH_ENV_VAR])

    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        config_path = DEFAULT_CONFIG_FILE

    logger.debug(f"Loading configuration from {config_path}")
    yaml_data = _expand_env_vars(load_yaml(config_path))
    if overrides:
        yaml_data = _deep_merge(yaml_data, overrides)

    kafka_data = yaml_data.get("kafka", {})
    connection = kafka_data.get("connection", {})
    topics = kafka_data.get("topics", {})

    kafka_values = {
        **connection,
        "consumer_defaults": kafka_data.get("consumer_defaults", {}),
        "producer_defaults": kafka_data.get("producer_defaults", {}),
        "source_topic": topics.get("source"),
        "derived_topic": topics.get("derived"),
        "dlq_topic": topics.get("dlq"),
        "group_id": kafka_data.get("group_id"),
    }

    config = PipelineConfig(
        kafka=_section(
            kafka_values,
            KafkaConfig,
            {"bootstrap_servers": os.getenv("KAFKA_BOOTSTRAP_SERVERS")},
        ),
        tracker=_section(
            yaml_data.get("tracker", {}),
            TrackerConfig,
            {
                "token": os.getenv("GITHUB_TOKEN"),
                "owner": os.getenv("GITHUB_OWNER"),
                "repo": os.getenv("GITHUB_REPO"),
            },
        ),
        summarizer=_section(
            yaml_data.get("summarizer", {}),
            SummarizerConfig,
            {"api_key": os.getenv("OPENAI_API_KEY")},
        ),
        poller=_section(yaml_data.get("poller", {}), PollerConfig, {}),
        processing=_section(yaml_data.get("processing", {}), ProcessingConfig, {}),
        logging_config=yaml_data.get("logging", {}),
    )

    if not config.tracker.token:
        logger.warning("GitHub token not configured, using unauthenticated rate limits")

    logger.debug("Configuration loaded successfully:")
    logger.debug(f"  - Bootstrap servers: {config.kafka.bootstrap_servers}")
    logger.debug(f"  - Repository: {config.tracker.owner}/{config.tracker.repo}")
    logger.debug(f"  - Topics: {config.kafka.source_topic} -> {config.kafka.derived_topic}")

    config.validate()
    return config


_pipeline_config: Optional[PipelineConfig] = None


def get_config() -> PipelineConfig:
    """Get or load the singleton pipeline config instance."""
    global _pipeline_config
    if _pipeline_config is None:
        _pipeline_config = load_config()
    return _pipeline_config


def set_config(config: PipelineConfig) -> None:
    """Set the singleton pipeline config instance (useful for testing)."""
    global _pipeline_config
    _pipeline_config = config


def reset_config() -> None:
    """Reset the singleton config instance (forces reload on next get_config() call)."""
    global _pipeline_config
    _pipeline_config = None
