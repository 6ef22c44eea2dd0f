"""
Shared — Prometheus メトリクス
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

EVENTS_PROCESSED = Counter(
    "events_processed_total",
    "Total number of events processed",
    ["service", "event_type", "status"],
)

PROCESSING_DURATION = Histogram(
    "event_processing_duration_seconds",
    "Histogram of event processing durations",
    ["service", "event_type"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10),
)

OUTBOX_PUBLISH_FAILURES = Counter(
    "outbox_publish_failures_total",
    "Outbox records that failed to publish (retried on the next tick)",
    ["service", "topic"],
)


def render_latest() -> tuple[bytes, str]:
    """/metrics エンドポイント用の本文と Content-Type"""
    return generate_latest(), CONTENT_TYPE_LATEST
