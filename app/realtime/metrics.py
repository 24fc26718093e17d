"""
Prometheus metrics for the realtime layer.

Tracks live connections, inbound events by outcome, broadcasts and room
subscriptions. Registered on the default registry so the /metrics endpoint
exposes them next to the HTTP metrics.
"""
from prometheus_client import Counter, Histogram, Gauge

# WebSocket connection metrics
websocket_connections_active = Gauge(
    "websocket_connections_active",
    "Number of active WebSocket connections",
    labelnames=["instance"]
)

websocket_connections_total = Counter(
    "websocket_connections_total",
    "Total number of WebSocket connections established",
    labelnames=["instance"]
)

websocket_handshakes_refused_total = Counter(
    "websocket_handshakes_refused_total",
    "Total number of refused WebSocket handshakes",
    labelnames=["reason", "instance"]
)

websocket_disconnections_total = Counter(
    "websocket_disconnections_total",
    "Total number of WebSocket disconnections",
    labelnames=["instance", "reason"]
)

websocket_users_connected = Gauge(
    "websocket_users_connected",
    "Number of unique users currently connected",
    labelnames=["instance"]
)

websocket_subscriptions_total = Gauge(
    "websocket_subscriptions_total",
    "Total number of active conversation room subscriptions",
    labelnames=["instance"]
)

# Inbound event metrics
websocket_events_received_total = Counter(
    "websocket_events_received_total",
    "Total number of inbound WebSocket events by outcome",
    labelnames=["event", "result", "reason", "instance"]
)

websocket_event_duration_seconds = Histogram(
    "websocket_event_duration_seconds",
    "Time spent handling an inbound WebSocket event",
    labelnames=["event"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0]
)

# Outbound metrics
broadcasts_total = Counter(
    "realtime_broadcasts_total",
    "Total number of room broadcasts emitted",
    labelnames=["event", "instance"]
)

websocket_messages_sent_total = Counter(
    "websocket_messages_sent_total",
    "Total number of frames sent via WebSocket",
    labelnames=["event", "instance"]
)

websocket_send_failures_total = Counter(
    "websocket_send_failures_total",
    "Total number of frames that could not be delivered",
    labelnames=["event", "instance"]
)


def update_websocket_metrics(registry):
    """
    Update gauges from connection registry state.

    Called by the gateway metrics monitor on every tick.

    Args:
        registry: ConnectionRegistry instance
    """
    websocket_connections_active.labels(instance="api").set(registry.connection_count())
    websocket_users_connected.labels(instance="api").set(registry.user_count())
    websocket_subscriptions_total.labels(instance="api").set(registry.subscription_count())
