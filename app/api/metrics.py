"""
Prometheus metrics for the real-time chat service.

Tracks live connections, room membership and the outcome of chat
operations. Exposed on /metrics together with the HTTP metrics.
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

websocket_handshakes_rejected_total = Counter(
    "websocket_handshakes_rejected_total",
    "Total number of WebSocket handshakes refused",
    labelnames=["reason", "instance"]
)

websocket_disconnections_total = Counter(
    "websocket_disconnections_total",
    "Total number of WebSocket disconnections",
    labelnames=["instance", "reason"]
)

websocket_events_received_total = Counter(
    "websocket_events_received_total",
    "Total number of client events received via WebSocket",
    labelnames=["event", "instance"]
)

websocket_users_connected = Gauge(
    "websocket_users_connected",
    "Number of unique users currently connected",
    labelnames=["instance"]
)

room_subscriptions_active = Gauge(
    "room_subscriptions_active",
    "Number of active conversation room subscriptions",
    labelnames=["instance"]
)

# Chat business metrics
room_broadcasts_total = Counter(
    "room_broadcasts_total",
    "Total number of events broadcast to rooms",
    labelnames=["event", "backend"]
)

chat_operations_total = Counter(
    "chat_operations_total",
    "Outcome of chat operations (join, send)",
    labelnames=["operation", "outcome", "transport"]
)

message_send_duration_seconds = Histogram(
    "message_send_duration_seconds",
    "Time from send-intent to broadcast",
    labelnames=["outcome"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0]
)


def update_websocket_metrics(connection_manager):
    """
    Update WebSocket gauges from connection manager state.

    Called by the heartbeat monitor on every cycle.

    Args:
        connection_manager: ConnectionManager instance
    """
    websocket_connections_active.labels(instance="api").set(connection_manager.get_connection_count())
    websocket_users_connected.labels(instance="api").set(connection_manager.get_user_count())
    room_subscriptions_active.labels(instance="api").set(connection_manager.get_subscription_count())
