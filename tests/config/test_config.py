import os
from pathlib import Path
from unittest.mock import patch

import pytest

from config.config import (
    DEFAULT_CONFIG_FILE,
    KafkaConfig,
    PipelineConfig,
    PollerConfig,
    ProcessingConfig,
    SummarizerConfig,
    TrackerConfig,
    _deep_merge,
    _expand_env_vars,
    get_config,
    load_config,
    load_yaml,
    reset_config,
    set_config,
)

# =========================================================================
# load_yaml
# =========================================================================


class TestLoadYaml:
    def test_returns_empty_dict_for_nonexistent_file(self):
        assert load_yaml(Path("/nonexistent/path/config.yaml")) == {}

    def test_loads_yaml_file(self, tmp_path):
        config_file = tmp_path / "test.yaml"
        config_file.write_text("key: value\nnested:\n  a: 1\n")
        assert load_yaml(config_file) == {"key": "value", "nested": {"a": 1}}

    def test_returns_empty_dict_for_empty_file(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        assert load_yaml(config_file) == {}


# =========================================================================
# _expand_env_vars / _deep_merge
# =========================================================================


class TestExpandEnvVars:
    def test_expands_set_variable(self):
        with patch.dict(os.environ, {"MY_HOST": "broker:9092"}):
            assert _expand_env_vars("${MY_HOST}") == "broker:9092"

    def test_uses_default_when_unset(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${MISSING:-fallback}") == "fallback"

    def test_missing_without_default_is_empty(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${MISSING}") == ""

    def test_recurses_into_dicts_and_lists(self):
        with patch.dict(os.environ, {"A": "1"}):
            result = _expand_env_vars({"x": ["${A}", {"y": "${A}"}], "n": 5})
        assert result == {"x": ["1", {"y": "1"}], "n": 5}


class TestDeepMerge:
    def test_nested_keys_merge(self):
        base = {"kafka": {"group_id": "a", "topics": {"source": "s"}}}
        overlay = {"kafka": {"topics": {"derived": "d"}}}
        result = _deep_merge(base, overlay)
        assert result == {
            "kafka": {"group_id": "a", "topics": {"source": "s", "derived": "d"}}
        }

    def test_does_not_mutate_base(self):
        base = {"a": {"b": 1}}
        _deep_merge(base, {"a": {"b": 2}})
        assert base == {"a": {"b": 1}}


# =========================================================================
# load_config
# =========================================================================


class TestLoadConfig:
    def test_bundled_config_loads_with_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = load_config()

        assert DEFAULT_CONFIG_FILE.exists()
        assert config.kafka.bootstrap_servers == "localhost:9092"
        assert config.kafka.source_topic == "github-issues"
        assert config.kafka.derived_topic == "github-issues-summarized"
        assert config.kafka.group_id == "github-issues-summarizer"
        assert config.kafka.get_dlq_topic() == "github-issues.dlq"
        assert config.tracker.owner == "bootc-dev"
        assert config.tracker.repo == "bootc"
        assert config.summarizer.model == "gpt-3.5-turbo"
        assert config.summarizer.max_tokens == 150
        assert config.summarizer.temperature == 0.3
        assert config.poller.initial_lookback_hours == 24.0
        assert config.processing.max_delivery_attempts == 5

    def test_env_overrides(self):
        env = {
            "KAFKA_BOOTSTRAP_SERVERS": "kafka-1:9092",
            "GITHUB_TOKEN": "ghp_example",
            "GITHUB_OWNER": "octo",
            "GITHUB_REPO": "hello",
            "OPENAI_API_KEY": "sk-example",
        }
        with patch.dict(os.environ, env, clear=True):
            config = load_config()

        assert config.kafka.bootstrap_servers == "kafka-1:9092"
        assert config.tracker.token == "ghp_example"
        assert config.tracker.owner == "octo"
        assert config.tracker.repo == "hello"
        assert config.summarizer.api_key == "sk-example"

    def test_explicit_missing_path_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_path_from_env_var(self, tmp_path):
        config_file = tmp_path / "custom.yaml"
        config_file.write_text("kafka:\n  topics:\n    source: custom-source\n")
        with patch.dict(os.environ, {"ISSUE_PIPELINE_CONFIG": str(config_file)}, clear=True):
            config = load_config()
        assert config.kafka.source_topic == "custom-source"

    def test_numeric_strings_are_coerced(self, tmp_path):
        config_file = tmp_path / "c.yaml"
        config_file.write_text(
            "poller:\n  poll_interval_seconds: ${INTERVAL:-120}\n"
            "processing:\n  max_delivery_attempts: ${ATTEMPTS:-7}\n"
        )
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(config_file)
        assert config.poller.poll_interval_seconds == 120.0
        assert config.processing.max_delivery_attempts == 7

    def test_non_numeric_value_rejected(self, tmp_path):
        config_file = tmp_path / "c.yaml"
        config_file.write_text("tracker:\n  per_page: lots\n")
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError, match="per_page"):
                load_config(config_file)

    def test_overrides_are_merged(self, tmp_path):
        config_file = tmp_path / "c.yaml"
        config_file.write_text("poller:\n  poll_interval_seconds: 60\n")
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(
                config_file, overrides={"poller": {"watermark_store": "memory"}}
            )
        assert config.poller.poll_interval_seconds == 60.0
        assert config.poller.watermark_store == "memory"

    def test_empty_values_fall_back_to_defaults(self, tmp_path):
        config_file = tmp_path / "c.yaml"
        config_file.write_text("kafka:\n  topics:\n    dlq: ''\n")
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(config_file)
        assert config.kafka.dlq_topic == ""
        assert config.kafka.get_dlq_topic() == "github-issues.dlq"


# =========================================================================
# validate()
# =========================================================================


class TestValidation:
    def test_defaults_are_valid(self):
        PipelineConfig().validate()

    def test_auto_commit_rejected(self):
        config = KafkaConfig(consumer_defaults={"enable_auto_commit": True})
        with pytest.raises(ValueError, match="enable_auto_commit"):
            config.validate()

    def test_same_source_and_derived_rejected(self):
        config = KafkaConfig(source_topic="t", derived_topic="t")
        with pytest.raises(ValueError, match="must differ"):
            config.validate()

    def test_bad_security_protocol(self):
        with pytest.raises(ValueError, match="security_protocol"):
            KafkaConfig(security_protocol="KERBEROS").validate()

    def test_per_page_range(self):
        with pytest.raises(ValueError, match="tracker.per_page"):
            TrackerConfig(per_page=500).validate()

    def test_tracker_base_url_scheme(self):
        with pytest.raises(ValueError, match="tracker.base_url"):
            TrackerConfig(base_url="api.github.com").validate()

    def test_temperature_range(self):
        with pytest.raises(ValueError, match="temperature"):
            SummarizerConfig(temperature=3.0).validate()

    def test_unknown_watermark_store(self):
        with pytest.raises(ValueError, match="watermark_store"):
            PollerConfig(watermark_store="redis").validate()

    def test_zero_delivery_attempts_allowed(self):
        ProcessingConfig(max_delivery_attempts=0).validate()

    def test_negative_delivery_attempts_rejected(self):
        with pytest.raises(ValueError, match="max_delivery_attempts"):
            ProcessingConfig(max_delivery_attempts=-1).validate()

    def test_max_delay_below_base_rejected(self):
        with pytest.raises(ValueError, match="retry_max_delay_seconds"):
            ProcessingConfig(
                retry_base_delay_seconds=10, retry_max_delay_seconds=5
            ).validate()


# =========================================================================
# Singleton helpers
# =========================================================================


class TestSingleton:
    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_set_and_get(self):
        config = PipelineConfig()
        set_config(config)
        assert get_config() is config

    def test_get_loads_once(self):
        with patch("config.config.load_config", return_value=PipelineConfig()) as mock_load:
            first = get_config()
            second = get_config()
        assert first is second
        mock_load.assert_called_once()
