"""
Operational alerts.

Alerts are posted as JSON to a webhook:

    {"component": "sync_worker", "summary": "...", "eventId": "evt-1",
     "partition": null, "severity": "error", "firedAt": "2024-01-01T00:00:00Z"}

Delivery failures are logged and counted, never raised: an alert must not
change the outcome of the operation that fired it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import aiohttp

from config.config import AlertConfig
from core.utils import json_serializer, utc_now
from warehouse_pipeline.common.metrics import record_alert

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    component: str
    summary: str
    event_id: str | None = None
    partition: str | None = None
    severity: str = "error"
    fired_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "summary": self.summary,
            "eventId": self.event_id,
            "partition": self.partition,
            "severity": self.severity,
            "firedAt": json_serializer(self.fired_at),
        }


class AlertNotifier(Protocol):
    async def notify(self, alert: Alert) -> bool:
        """Deliver ``alert``. Returns whether delivery succeeded."""
        ...


class LoggingAlertNotifier:
    """Writes alerts to the log only. Used when no webhook is configured."""

    def __init__(self) -> None:
        self.sent: list[Alert] = []

    async def notify(self, alert: Alert) -> bool:
        self.sent.append(alert)
        logger.error("ALERT: %s", alert.summary, extra={"alert": alert.to_payload()})
        record_alert(alert.component, delivered=True)
        return True


class WebhookAlertNotifier:
    def __init__(self, webhook_url: str, timeout_seconds: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def notify(self, alert: Alert) -> bool:
        payload = alert.to_payload()
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.webhook_url, json=payload) as resp:
                    if resp.status >= 300:
                        logger.warning(
                            "Alert webhook returned error status",
                            extra={"status_code": resp.status, "alert": payload},
                        )
                        record_alert(alert.component, delivered=False)
                        return False
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning(
                "Failed to deliver alert",
                extra={"error": str(e), "alert": payload},
            )
            record_alert(alert.component, delivered=False)
            return False

        logger.info(
            "Alert delivered",
            extra={"component": alert.component, "event_id": alert.event_id},
        )
        record_alert(alert.component, delivered=True)
        return True


def create_alert_notifier(config: AlertConfig) -> AlertNotifier:
    if config.webhook_url:
        return WebhookAlertNotifier(config.webhook_url, config.timeout_seconds)
    logger.warning("No alert webhook configured, alerts will only be logged")
    return LoggingAlertNotifier()
