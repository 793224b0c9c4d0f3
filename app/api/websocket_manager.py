"""
WebSocket connection hub for real-time message notifications.

Tracks live connections, the topics each connection is subscribed to and the
identity behind it, and fans published payloads out to every subscriber of a
topic. Delivery is best-effort: no acknowledgement, no retry and nothing is
stored for connections that are not subscribed at publish time.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set
from uuid import uuid4
from fastapi import WebSocket

from api.metrics import (
    websocket_connections_total, websocket_disconnections_total,
    websocket_events_published_total, topic_kind, update_websocket_metrics
)
from api.schemas import WSEvent
from core.config import settings

logger = logging.getLogger(__name__)

EDITED_TOPIC = "messages.edited"
DELETED_TOPIC = "messages.deleted"
GLOBAL_TOPICS = frozenset({EDITED_TOPIC, DELETED_TOPIC})


def user_topic(user_id: str) -> str:
    """Per-user topic name."""
    return f"user/{user_id}"


@dataclass
class Broadcast:
    """A payload waiting to be published on a topic."""
    topic: str
    payload: dict


@dataclass(eq=False)
class Connection:
    """One accepted WebSocket and the identity behind it (None when anonymous)."""
    websocket: WebSocket
    user_id: Optional[str]
    id: str = field(default_factory=lambda: uuid4().hex)
    topics: Set[str] = field(default_factory=set)
    last_heartbeat: datetime = field(default_factory=datetime.utcnow)

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


class ConnectionHub:
    """
    Registry of live connections and their topic subscriptions.

    Features:
    - Tracks connections per user (multiple devices/tabs supported)
    - Maps each identity to the topics its connections subscribe to
    - Enforces connection limits per user
    - Publishes payloads to all subscribers of a topic
    - Drops connections whose sends fail

    Every map is guarded by one lock. The lock is never held across an
    await: publish() snapshots subscribers under the lock and sends outside it.
    """

    def __init__(self, max_connections_per_user: int = 5, send_timeout_seconds: float = 5.0):
        self._lock = threading.Lock()
        # {connection_id: Connection}
        self._connections: Dict[str, Connection] = {}
        # {user_id: {connection_id}}
        self._user_connections: Dict[str, Set[str]] = {}
        # {topic: {connection_id}}
        self._topic_subscribers: Dict[str, Set[str]] = {}

        self.max_connections_per_user = max_connections_per_user
        self.send_timeout_seconds = send_timeout_seconds

        logger.info("ConnectionHub initialized")

    async def connect(self, websocket: WebSocket, user_id: Optional[str]) -> Optional[Connection]:
        """
        Accept a WebSocket and register it.

        Authenticated connections are subscribed to their own user topic;
        every connection is subscribed to the global edit/delete topics.

        The user's slot is reserved under the lock before accept() awaits, so
        concurrent handshakes for one user cannot exceed the limit.

        Args:
            websocket: WebSocket connection to accept
            user_id: ID of the authenticated user, or None for anonymous

        Returns:
            The registered Connection, or None if the user's limit is reached
        """
        connection = self._reserve(websocket, user_id)
        if connection is None:
            logger.warning(
                f"Connection limit reached for user {user_id}: "
                f"{self.max_connections_per_user}/{self.max_connections_per_user}"
            )
            return None

        try:
            await websocket.accept()
        except Exception:
            self._release(connection)
            raise
        return self.register(connection)

    def _reserve(self, websocket: WebSocket, user_id: Optional[str]) -> Optional[Connection]:
        connection = Connection(websocket=websocket, user_id=user_id)
        if user_id is None:
            return connection
        with self._lock:
            user_connections = self._user_connections.get(user_id, set())
            if len(user_connections) >= self.max_connections_per_user:
                return None
            user_connections.add(connection.id)
            self._user_connections[user_id] = user_connections
        return connection

    def _release(self, connection: Connection) -> None:
        if connection.user_id is None:
            return
        with self._lock:
            user_connections = self._user_connections.get(connection.user_id)
            if user_connections is not None:
                user_connections.discard(connection.id)
                if not user_connections:
                    del self._user_connections[connection.user_id]

    def register(self, connection: Connection) -> Connection:
        """Track an accepted connection whose user slot is already reserved."""
        with self._lock:
            self._connections[connection.id] = connection
        for topic in self.default_topics(connection.user_id):
            self.subscribe(connection, topic)

        websocket_connections_total.labels(
            instance="api", authenticated=str(connection.authenticated).lower()
        ).inc()
        update_websocket_metrics(self)
        logger.info(f"Connection {connection.id} registered for user {connection.user_id or 'anonymous'}")
        return connection

    def disconnect(self, connection: Connection, reason: str = "normal") -> None:
        """
        Remove a connection and all of its subscriptions. Idempotent.

        Args:
            connection: Connection to remove
            reason: Label for the disconnection metric
        """
        with self._lock:
            if self._connections.pop(connection.id, None) is None:
                return
            for topic in connection.topics:
                subscribers = self._topic_subscribers.get(topic)
                if subscribers is not None:
                    subscribers.discard(connection.id)
                    if not subscribers:
                        del self._topic_subscribers[topic]
            connection.topics.clear()
            if connection.user_id is not None:
                user_connections = self._user_connections.get(connection.user_id)
                if user_connections is not None:
                    user_connections.discard(connection.id)
                    if not user_connections:
                        del self._user_connections[connection.user_id]

        websocket_disconnections_total.labels(instance="api", reason=reason).inc()
        update_websocket_metrics(self)
        logger.info(f"Connection {connection.id} for user {connection.user_id or 'anonymous'} disconnected ({reason})")

    @staticmethod
    def default_topics(user_id: Optional[str]) -> List[str]:
        topics = sorted(GLOBAL_TOPICS)
        if user_id is not None:
            topics.insert(0, user_topic(user_id))
        return topics

    @staticmethod
    def can_subscribe(connection: Connection, topic: str) -> bool:
        """A connection may only listen to the global topics and its own user topic."""
        if topic in GLOBAL_TOPICS:
            return True
        return connection.user_id is not None and topic == user_topic(connection.user_id)

    def subscribe(self, connection: Connection, topic: str) -> None:
        with self._lock:
            if connection.id not in self._connections:
                return
            connection.topics.add(topic)
            self._topic_subscribers.setdefault(topic, set()).add(connection.id)
        logger.debug(f"Connection {connection.id} subscribed to {topic}")

    def unsubscribe(self, connection: Connection, topic: str) -> None:
        with self._lock:
            connection.topics.discard(topic)
            subscribers = self._topic_subscribers.get(topic)
            if subscribers is not None:
                subscribers.discard(connection.id)
                if not subscribers:
                    del self._topic_subscribers[topic]
        logger.debug(f"Connection {connection.id} unsubscribed from {topic}")

    async def publish(self, topic: str, payload: dict) -> int:
        """
        Send payload to every connection currently subscribed to topic.

        Connections whose send fails or times out are disconnected.

        Returns:
            Number of connections the payload reached
        """
        with self._lock:
            targets = [
                self._connections[cid]
                for cid in self._topic_subscribers.get(topic, ())
                if cid in self._connections
            ]
        if not targets:
            logger.debug(f"No subscribers for {topic}, event dropped")
            return 0

        frame = WSEvent(topic=topic, payload=payload).model_dump(mode="json")
        sent = 0
        stale: List[Connection] = []
        for connection in targets:
            try:
                await asyncio.wait_for(connection.websocket.send_json(frame), timeout=self.send_timeout_seconds)
                sent += 1
            except Exception as e:
                logger.error(f"Error sending {topic} event to connection {connection.id}: {e}")
                stale.append(connection)

        for connection in stale:
            self.disconnect(connection, reason="send_error")

        if sent:
            websocket_events_published_total.labels(topic_kind=topic_kind(topic), instance="api").inc(sent)
            logger.debug(f"Published to {topic}: {sent} connections")
        return sent

    async def publish_many(self, broadcasts: Iterable[Broadcast]) -> int:
        """Publish a sequence of broadcasts in order."""
        total = 0
        for broadcast in broadcasts:
            total += await self.publish(broadcast.topic, broadcast.payload)
        return total

    def update_heartbeat(self, connection: Connection) -> None:
        """Record a pong from the client."""
        connection.last_heartbeat = datetime.utcnow()

    def get_stale_connections(self, timeout_seconds: int = 40) -> List[Connection]:
        """
        Find connections that haven't sent a heartbeat recently.

        Args:
            timeout_seconds: Seconds since last heartbeat to consider stale

        Returns:
            List of stale connections
        """
        cutoff = datetime.utcnow() - timedelta(seconds=timeout_seconds)
        with self._lock:
            return [c for c in self._connections.values() if c.last_heartbeat < cutoff]

    def get_connections(self) -> List[Connection]:
        with self._lock:
            return list(self._connections.values())

    def get_user_connections(self, user_id: str) -> List[Connection]:
        with self._lock:
            # Reserved slots have no Connection until accept() completes
            return [
                self._connections[cid]
                for cid in self._user_connections.get(user_id, ())
                if cid in self._connections
            ]

    def topics_for_user(self, user_id: str) -> Set[str]:
        """Union of the topics subscribed by all of a user's connections."""
        with self._lock:
            topics: Set[str] = set()
            for cid in self._user_connections.get(user_id, ()):
                if cid in self._connections:
                    topics |= self._connections[cid].topics
            return topics

    def get_subscribers(self, topic: str) -> List[Connection]:
        with self._lock:
            return [self._connections[cid] for cid in self._topic_subscribers.get(topic, ())]

    def get_connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def get_user_count(self) -> int:
        with self._lock:
            return len(self._user_connections)

    def get_subscription_count(self) -> int:
        with self._lock:
            return sum(len(subscribers) for subscribers in self._topic_subscribers.values())


# Global connection hub instance (single-process pub/sub)
connection_hub = ConnectionHub(max_connections_per_user=settings.ws_max_connections_per_user)


async def heartbeat_monitor(hub: ConnectionHub, interval_seconds: int = 30, timeout_seconds: int = 40):
    """
    Background task to send heartbeat pings and close stale connections.

    Sends a ping to every connection each interval and closes connections
    that have not answered with a pong within timeout_seconds.

    Args:
        hub: ConnectionHub to monitor
        interval_seconds: Seconds between ping messages
        timeout_seconds: Seconds without heartbeat before closing
    """
    logger.info(f"Heartbeat monitor started (interval={interval_seconds}s, timeout={timeout_seconds}s)")

    while True:
        await asyncio.sleep(interval_seconds)

        try:
            ping_message = {"type": "ping", "timestamp": datetime.utcnow().isoformat()}

            for connection in hub.get_connections():
                try:
                    await connection.websocket.send_json(ping_message)
                except Exception as e:
                    logger.error(f"Error sending ping to connection {connection.id}: {e}")

            for connection in hub.get_stale_connections(timeout_seconds):
                logger.warning(f"Closing stale connection {connection.id} for user {connection.user_id}")
                try:
                    await connection.websocket.close(code=1001, reason="Connection timeout")
                except Exception as e:
                    logger.debug(f"Close of stale connection {connection.id} failed: {e}")
                hub.disconnect(connection, reason="timeout")

            update_websocket_metrics(hub)
            logger.info(
                f"Heartbeat complete: {hub.get_connection_count()} connections, "
                f"{hub.get_user_count()} users"
            )

        except Exception as e:
            logger.error(f"Error in heartbeat monitor: {e}")
