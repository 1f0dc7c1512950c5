"""
Pipeline metrics in the Prometheus global REGISTRY.

Every metric carries a ``pipeline`` label so several coordinators can share
a process. Expose with ``prometheus_client.start_http_server``.
"""

from prometheus_client import Counter, Gauge, Histogram

# --- Delivery ---

DELIVERY_TRANSITIONS_TOTAL = Counter(
    "pipeline_delivery_transitions_total",
    "Event delivery state transitions",
    ["pipeline", "state"],
)

DELIVERY_PENDING = Gauge(
    "pipeline_delivery_pending",
    "Events awaiting a publish attempt (including scheduled retries)",
    ["pipeline"],
)

DELIVERY_IN_FLIGHT = Gauge(
    "pipeline_delivery_in_flight",
    "Publish attempts currently outstanding",
    ["pipeline"],
)

DEAD_LETTERED_TOTAL = Counter(
    "pipeline_dead_lettered_total",
    "Events written to the dead-letter sink",
    ["pipeline", "reason"],
)

PUBLISH_LATENCY_MS = Histogram(
    "pipeline_publish_latency_ms",
    "Broker publish latency in milliseconds",
    ["pipeline", "outcome"],
    buckets=[1, 2.5, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000],
)

# --- Ingress buffer ---

BUFFER_SIZE = Gauge(
    "pipeline_buffer_size",
    "Slots held by the ingress buffer",
    ["pipeline"],
)

BUFFER_EVICTIONS_TOTAL = Counter(
    "pipeline_buffer_evictions_total",
    "Events evicted from a full ingress buffer",
    ["pipeline"],
)

# --- Broker / actions ---

BROKER_RECONNECTS_TOTAL = Counter(
    "pipeline_broker_reconnects_total",
    "Broker reconnect attempts",
    ["outcome"],
)

ACTIONS_DISPATCHED_TOTAL = Counter(
    "pipeline_actions_dispatched_total",
    "Actions handed to callbacks",
    ["pipeline", "outcome"],
)


class MetricsRegistry:
    """Centralized access to pipeline metrics."""

    delivery_transitions_total = DELIVERY_TRANSITIONS_TOTAL
    delivery_pending = DELIVERY_PENDING
    delivery_in_flight = DELIVERY_IN_FLIGHT
    dead_lettered_total = DEAD_LETTERED_TOTAL
    publish_latency_ms = PUBLISH_LATENCY_MS
    buffer_size = BUFFER_SIZE
    buffer_evictions_total = BUFFER_EVICTIONS_TOTAL
    broker_reconnects_total = BROKER_RECONNECTS_TOTAL
    actions_dispatched_total = ACTIONS_DISPATCHED_TOTAL


# Singleton instance
metrics_registry = MetricsRegistry()
