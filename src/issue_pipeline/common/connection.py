"""Shared aiokafka connection settings for producers and consumers."""

from typing import Any, Dict

from aiokafka.helpers import create_ssl_context

from config.config import KafkaConfig


def build_connection_config(config: KafkaConfig) -> Dict[str, Any]:
    """Build the aiokafka keyword arguments common to every client.

    SASL credentials are passed straight through; token management is left
    to the broker's PLAIN/SCRAM mechanisms.
    """
    connection: Dict[str, Any] = {
        "bootstrap_servers": config.bootstrap_servers,
        "request_timeout_ms": config.request_timeout_ms,
        "metadata_max_age_ms": config.metadata_max_age_ms,
    }

    if config.security_protocol != "PLAINTEXT":
        connection["security_protocol"] = config.security_protocol
        if config.security_protocol.endswith("SSL"):
            connection["ssl_context"] = create_ssl_context()
        if config.security_protocol.startswith("SASL"):
            connection["sasl_mechanism"] = config.sasl_mechanism
            connection["sasl_plain_username"] = config.sasl_plain_username
            connection["sasl_plain_password"] = config.sasl_plain_password

    return connection
