"""
Prometheus metrics for the messaging API.

Tracks WebSocket connections, topic fan-out and message lifecycle events.
Collectors live in the default registry so they are served by /metrics.
"""
from prometheus_client import Counter, Gauge

# WebSocket connection metrics
websocket_connections_active = Gauge(
    "websocket_connections_active",
    "Number of active WebSocket connections",
    labelnames=["instance"]
)

websocket_connections_total = Counter(
    "websocket_connections_total",
    "Total number of WebSocket connections established",
    labelnames=["instance", "authenticated"]
)

websocket_disconnections_total = Counter(
    "websocket_disconnections_total",
    "Total number of WebSocket disconnections",
    labelnames=["instance", "reason"]
)

websocket_messages_received_total = Counter(
    "websocket_messages_received_total",
    "Total number of frames received via WebSocket",
    labelnames=["action", "instance"]
)

websocket_events_published_total = Counter(
    "websocket_events_published_total",
    "Total number of frames delivered to subscribed connections",
    labelnames=["topic_kind", "instance"]
)

websocket_subscriptions_total = Gauge(
    "websocket_subscriptions_total",
    "Total number of active topic subscriptions",
    labelnames=["instance"]
)

websocket_users_connected = Gauge(
    "websocket_users_connected",
    "Number of unique users currently connected",
    labelnames=["instance"]
)

# Message lifecycle metrics
messages_created_total = Counter(
    "messages_created_total",
    "Total number of messages created",
    labelnames=["path", "instance"]
)

messages_transitions_total = Counter(
    "messages_transitions_total",
    "Total number of message state transitions",
    labelnames=["transition", "instance"]
)

# Authentication metrics
auth_requests_total = Counter(
    "auth_requests_total",
    "Total number of authentication requests",
    labelnames=["type", "status", "instance"]
)


def topic_kind(topic: str) -> str:
    """Collapse per-user topics into one label value."""
    return "user" if topic.startswith("user/") else topic


def update_websocket_metrics(hub) -> None:
    """
    Update WebSocket gauges from connection hub state.

    Args:
        hub: ConnectionHub instance
    """
    websocket_connections_active.labels(instance="api").set(hub.get_connection_count())
    websocket_users_connected.labels(instance="api").set(hub.get_user_count())
    websocket_subscriptions_total.labels(instance="api").set(hub.get_subscription_count())
