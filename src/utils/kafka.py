"""Kafka utilities for in-app notifications and operational alerts."""

import os
import json
import logging
import atexit
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError, NoBrokersAvailable

logger = logging.getLogger(__name__)

IN_APP_TOPIC = "agent-event-notification"


class KafkaEventLogger:
    """
    Lazily connected Kafka producer.

    `publish` is fire-and-forget and never raises: used for operational alerts
    and pipeline progress events. `publish_sync` waits for the broker ack and
    raises on failure: used by the in-app notification channel, where the
    caller needs to know whether delivery happened.
    """

    def __init__(self, topic: Optional[str] = None):
        self.producer = None
        self._lock = threading.Lock()
        self.topic = topic or os.getenv("KAFKA_ALERT_TOPIC", "notice-operational-alerts")
        self.server_name = os.getenv("SERVER_NAME", "NOTICE_TRACKING_BACKEND")
        atexit.register(self.close)

    def _initialize_producer(self) -> bool:
        """
        Initializes the KafkaProducer. Called under the lock.
        Returns True on success, False on failure.
        """
        bootstrap_servers = os.getenv("KAFKA_BOOTSTRAP_SERVERS")
        if not bootstrap_servers:
            logger.warning("KAFKA_BOOTSTRAP_SERVERS not set. Kafka publishing disabled.")
            return False

        try:
            logger.info(f"Initializing KafkaProducer for {bootstrap_servers}...")
            producer_config = {
                "bootstrap_servers": bootstrap_servers.split(","),
                "value_serializer": lambda v: json.dumps(v, default=str).encode("utf-8"),
                "key_serializer": lambda k: k.encode("utf-8") if k else None,
                "retries": 3,
                "request_timeout_ms": 15000,
                "acks": "all",
                "linger_ms": 5,
            }
            if os.getenv("KAFKA_USE_SSL", "true").lower() == "true":
                producer_config["security_protocol"] = "SSL"

            self.producer = KafkaProducer(**producer_config)
            logger.info("KafkaProducer connected successfully.")
            return True
        except (NoBrokersAvailable, Exception) as e:
            # Any failure here must not take the pipeline down
            logger.critical(f"Could not initialize KafkaProducer: {e}", exc_info=True)
            self.producer = None
            return False

    def _ensure_producer(self) -> bool:
        if not self.producer:
            with self._lock:
                if not self.producer and not self._initialize_producer():
                    return False
        return True

    def _envelope(self, event_type: str, message: str, data: Optional[Dict[str, Any]]) -> dict:
        return {
            "type": event_type,
            "message": message,
            "data": data or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_name": self.server_name,
        }

    def _on_send_error(self, excp):
        logger.error(f"Error sending message to Kafka in the background: {excp}", exc_info=excp)

    def publish(
        self,
        event_type: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        key: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> None:
        """Queue an event without blocking. Failures are logged, never raised."""
        if not self._ensure_producer():
            logger.warning(f"Kafka producer unavailable. Event not sent: {message}")
            return

        try:
            future = self.producer.send(
                topic or self.topic, value=self._envelope(event_type, message, data), key=key
            )
            future.add_errback(self._on_send_error)
        except KafkaError as e:
            logger.error(f"Error while queuing message for Kafka: {e}", exc_info=True)

    def publish_sync(
        self,
        event_type: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        key: Optional[str] = None,
        topic: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        """
        Send an event and wait for the broker acknowledgement.

        Raises:
            ConnectionError: when no producer could be created
            KafkaError: when the broker rejects or times out the send
        """
        if not self._ensure_producer():
            raise ConnectionError("Kafka producer is not available")

        future = self.producer.send(
            topic or self.topic, value=self._envelope(event_type, message, data), key=key
        )
        record = future.get(timeout=timeout)
        logger.debug(f"Event delivered to topic '{record.topic}' partition {record.partition}")

    def log_alert(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Publish an operational alert (e.g. persistent collaborator outage)."""
        logger.error(f"OPERATIONAL ALERT: {message}")
        self.publish("operational-alert", message, data)

    def log_event(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Publish a pipeline progress event."""
        self.publish("pipeline-event", message, data)

    def close(self):
        """Flushes buffered messages and closes the producer during graceful shutdown."""
        if self.producer:
            logger.info("Flushing remaining messages and closing Kafka producer...")
            try:
                self.producer.flush(timeout=10)
            except KafkaError as e:
                logger.error(f"Error flushing messages to Kafka: {e}", exc_info=True)
            finally:
                self.producer.close()
                self.producer = None
                logger.info("Kafka producer closed.")


def create_event_logger(topic: Optional[str] = None) -> KafkaEventLogger:
    """Create a new event logger instance."""
    return KafkaEventLogger(topic=topic)
