"""
Ingestion Metrics
"""

from prometheus_client import Counter, Gauge, Histogram

EVENTS_RECEIVED = Counter(
    "analytics_events_received_total",
    "Envelopes accepted by the ingestion endpoint",
    ["route", "status"],
)

EVENTS_REJECTED = Counter(
    "analytics_events_rejected_total",
    "Envelopes rejected by validation",
    ["route"],
)

EVENTS_DUPLICATED = Counter(
    "analytics_events_duplicated_total",
    "Envelopes ignored because their eventId was already recorded",
    ["event_type"],
)

EVENTS_QUEUED = Counter(
    "analytics_events_queued_total",
    "Envelopes parked in the outbox after a failed raw write",
)

EVENTS_DROPPED = Counter(
    "analytics_events_dropped_total",
    "Envelopes lost because the outbox was full",
)

AGGREGATION_ERRORS = Counter(
    "analytics_ingest_aggregation_errors_total",
    "Accepted envelopes whose aggregation failed",
    ["event_type", "reason"],
)

OUTBOX_DEPTH = Gauge(
    "analytics_outbox_depth",
    "Envelopes waiting in the outbox",
)

INGEST_LATENCY = Histogram(
    "analytics_ingest_seconds",
    "Time spent handling one envelope",
    ["route"],
)
