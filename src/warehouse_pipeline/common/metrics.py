"""
Prometheus metrics for pipeline monitoring.

Focused on essential metrics:
- Message production and consumption counts
- Processing outcomes, retries and dead-letters
- Warehouse writes
- Scheduled job runs (aggregation, lifecycle sweep) and purged rows
- Dead-letter recoveries
- Connection health
"""

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Queue
# =============================================================================

messages_produced_counter = Counter(
    "pipeline_messages_produced_total",
    "Total number of messages produced to topics",
    labelnames=["topic"],
)

producer_errors_counter = Counter(
    "pipeline_producer_errors_total",
    "Total producer errors by error type",
    labelnames=["topic", "error_type"],
)

messages_consumed_counter = Counter(
    "pipeline_messages_consumed_total",
    "Total number of messages consumed from topics",
    labelnames=["topic", "consumer_group"],
)

consumer_in_flight_gauge = Gauge(
    "pipeline_consumer_in_flight",
    "Messages currently being processed",
    labelnames=["consumer_group"],
)

kafka_connection_status_gauge = Gauge(
    "pipeline_connection_status",
    "Pipeline connection status (1=connected, 0=disconnected)",
    labelnames=["component"],
)

# =============================================================================
# Sync worker
# =============================================================================

events_processed_counter = Counter(
    "pipeline_events_processed_total",
    "Envelopes processed by final disposition",
    labelnames=["collection", "disposition"],
)

event_retries_counter = Counter(
    "pipeline_event_retries_total",
    "Processing attempts that failed and were retried",
    labelnames=["error_category"],
)

dlq_messages_counter = Counter(
    "pipeline_dlq_messages_total",
    "Total messages sent to dead letter topic",
    labelnames=["reason"],
)

message_processing_duration_seconds = Histogram(
    "pipeline_message_processing_duration_seconds",
    "Time spent processing individual messages, including backoff",
    labelnames=["topic"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

warehouse_writes_counter = Counter(
    "pipeline_warehouse_writes_total",
    "Warehouse write operations",
    labelnames=["operation", "success"],
)

# =============================================================================
# Scheduled jobs and recovery
# =============================================================================

job_runs_counter = Counter(
    "pipeline_job_runs_total",
    "Scheduled job runs by outcome (success, failed, skipped)",
    labelnames=["job", "outcome"],
)

rows_purged_counter = Counter(
    "pipeline_rows_purged_total",
    "Warehouse rows physically purged",
    labelnames=["reason"],
)

recoveries_counter = Counter(
    "pipeline_dlq_recoveries_total",
    "Dead-letter recovery attempts by outcome",
    labelnames=["outcome"],
)

alerts_counter = Counter(
    "pipeline_alerts_total",
    "Operational alerts fired",
    labelnames=["component", "delivered"],
)


# =============================================================================
# Convenience Functions
# =============================================================================


def record_message_produced(topic: str, success: bool = True) -> None:
    messages_produced_counter.labels(topic=topic).inc()
    if not success:
        producer_errors_counter.labels(topic=topic, error_type="send_failed").inc()


def record_message_consumed(topic: str, consumer_group: str) -> None:
    messages_consumed_counter.labels(topic=topic, consumer_group=consumer_group).inc()


def record_event_processed(collection: str, disposition: str) -> None:
    events_processed_counter.labels(collection=collection, disposition=disposition).inc()


def record_retry(error_category: str) -> None:
    event_retries_counter.labels(error_category=error_category).inc()


def record_dlq_message(reason: str) -> None:
    dlq_messages_counter.labels(reason=reason).inc()


def record_warehouse_write(operation: str, success: bool = True) -> None:
    warehouse_writes_counter.labels(operation=operation, success="true" if success else "false").inc()


def record_job_run(job: str, outcome: str) -> None:
    job_runs_counter.labels(job=job, outcome=outcome).inc()


def record_rows_purged(reason: str, count: int) -> None:
    if count:
        rows_purged_counter.labels(reason=reason).inc(count)


def record_recovery(outcome: str) -> None:
    recoveries_counter.labels(outcome=outcome).inc()


def record_alert(component: str, delivered: bool) -> None:
    alerts_counter.labels(component=component, delivered="true" if delivered else "false").inc()


def update_connection_status(component: str, connected: bool) -> None:
    kafka_connection_status_gauge.labels(component=component).set(1 if connected else 0)


__all__ = [
    "consumer_in_flight_gauge",
    "message_processing_duration_seconds",
    "record_alert",
    "record_dlq_message",
    "record_event_processed",
    "record_job_run",
    "record_message_consumed",
    "record_message_produced",
    "record_recovery",
    "record_retry",
    "record_rows_purged",
    "record_warehouse_write",
    "update_connection_status",
]
