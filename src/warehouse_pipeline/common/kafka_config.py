"""Shared Kafka connection/security configuration builder."""

import ssl

from config.config import QueueConfig


def build_kafka_security_config(config: QueueConfig) -> dict:
    """Build Kafka security config dict from QueueConfig.

    Handles PLAIN and SCRAM SASL mechanisms and SSL context creation.
    Returns an empty dict for PLAINTEXT connections.
    """
    if config.security_protocol == "PLAINTEXT":
        return {}

    security_config: dict = {"security_protocol": config.security_protocol}

    if "SSL" in config.security_protocol:
        security_config["ssl_context"] = ssl.create_default_context()

    if config.security_protocol.startswith("SASL"):
        security_config["sasl_mechanism"] = config.sasl_mechanism
        security_config["sasl_plain_username"] = config.sasl_plain_username
        security_config["sasl_plain_password"] = config.sasl_plain_password

    return security_config


def build_connection_config(config: QueueConfig) -> dict:
    """Common client kwargs for AIOKafkaProducer/AIOKafkaConsumer."""
    return {
        "bootstrap_servers": config.bootstrap_servers,
        "request_timeout_ms": config.request_timeout_ms,
        **build_kafka_security_config(config),
    }
