"""
Realtime hub for topic-based fan-out.

Maintains a mapping of topic names to sets of subscribers. A subscriber is
anything with an async ``send_json(data)`` method, so FastAPI WebSocket
connections and in-process callbacks are interchangeable.

Three event types flow through a topic, mirroring the hosted channel
service the clients were written against:
    broadcast         {"event": name, "payload": {...}}
    presence          {"event": "join" | "leave" | "sync", "payload": {...}}
    postgres_changes  {"event": "INSERT" | "UPDATE" | "DELETE",
                       "payload": {"eventType", "table", "new", "old"}}

Usage:
    hub = RealtimeHub()
    await hub.subscribe("user_notifications", websocket)
    await hub.broadcast("user_notifications", "new_notification", {...})
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from stride.schemas.realtime import RealtimeEvent
from stride.utils.logging_config import get_logger


logger = get_logger("realtime")


class Subscriber(Protocol):
    async def send_json(self, data: Dict[str, Any]) -> None:
        ...


class CallbackSubscriber:
    """Adapts an async callable to the subscriber interface."""

    def __init__(self, callback: Callable[[Dict[str, Any]], Awaitable[None]], name: str = ""):
        self._callback = callback
        self.name = name

    async def send_json(self, data: Dict[str, Any]) -> None:
        await self._callback(data)

    def __repr__(self) -> str:
        return f"<CallbackSubscriber({self.name!r})>"


class RealtimeHub:
    """
    In-process channel service.

    Broadcast is fire-and-forget from the publisher's point of view: a
    subscriber that fails to receive is dropped and the remaining
    subscribers still get the event.
    """

    def __init__(self):
        self._subscribers: Dict[str, Set[Subscriber]] = {}
        self._presence: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(self, topic: str, subscriber: Subscriber) -> None:
        """Register a subscriber for a topic."""
        async with self._lock:
            self._subscribers.setdefault(topic, set()).add(subscriber)
            logger.debug(
                f"Subscribed to {topic}. "
                f"Total subscribers: {len(self._subscribers[topic])}"
            )

    def unsubscribe(self, topic: str, subscriber: Subscriber) -> None:
        """
        Remove a subscriber from a topic.

        Synchronous so it can be called from exception handlers and teardown.
        """
        subscribers = self._subscribers.get(topic)
        if subscribers is None:
            return
        subscribers.discard(subscriber)
        if not subscribers:
            del self._subscribers[topic]
        logger.debug(f"Unsubscribed from {topic}")

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic:
            return len(self._subscribers.get(topic, set()))
        return sum(len(s) for s in self._subscribers.values())

    def topics(self) -> Set[str]:
        return set(self._subscribers.keys())

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def _publish(
        self,
        event: RealtimeEvent,
        exclude: Optional[Subscriber] = None,
    ) -> int:
        subscribers = self._subscribers.get(event.topic)
        if not subscribers:
            return 0

        data = event.model_dump()
        delivered = 0
        failed: Set[Subscriber] = set()

        for subscriber in subscribers.copy():
            if subscriber is exclude:
                continue
            try:
                await subscriber.send_json(data)
                delivered += 1
            except Exception as e:
                logger.debug(f"Failed to deliver to subscriber on {event.topic}: {e}")
                failed.add(subscriber)

        for subscriber in failed:
            self.unsubscribe(event.topic, subscriber)

        return delivered

    async def broadcast(
        self,
        topic: str,
        event: str,
        payload: Dict[str, Any],
        exclude: Optional[Subscriber] = None,
    ) -> int:
        """
        Publish a broadcast event on a topic.

        Args:
            topic: Topic name
            event: Event name (e.g. ``new_notification``)
            payload: JSON-serializable payload
            exclude: Subscriber that should not receive its own event

        Returns:
            Number of subscribers the event was delivered to
        """
        delivered = await self._publish(
            RealtimeEvent(topic=topic, type="broadcast", event=event, payload=payload),
            exclude=exclude,
        )
        logger.debug(
            "Broadcast published",
            extra={"topic": topic, "event": event, "delivered": delivered},
        )
        return delivered

    async def publish_change(
        self,
        topic: str,
        table: str,
        action: str,
        new: Optional[Dict[str, Any]] = None,
        old: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Publish a row-change event (INSERT, UPDATE or DELETE) on a topic.

        ``old`` is optional for UPDATE. When omitted, consumers cannot derive
        the previous value of changed columns.
        """
        action = action.upper()
        if action not in ("INSERT", "UPDATE", "DELETE"):
            raise ValueError(f"Unknown change action: {action}")

        payload = {
            "eventType": action,
            "table": table,
            "new": new or {},
            "old": old or {},
        }
        return await self._publish(
            RealtimeEvent(topic=topic, type="postgres_changes", event=action, payload=payload)
        )

    # -------------------------------------------------------------------------
    # Presence
    # -------------------------------------------------------------------------

    async def track(self, topic: str, key: str, meta: Optional[Dict[str, Any]] = None) -> int:
        """
        Mark ``key`` as present on a topic and announce the join.

        Tracking an already-present key refreshes its metadata.
        """
        state = self._presence.setdefault(topic, {})
        state[key] = dict(meta or {})
        logger.debug("Presence join", extra={"topic": topic, "key": key})
        return await self._publish(
            RealtimeEvent(
                topic=topic,
                type="presence",
                event="join",
                payload={"key": key, "meta": state[key]},
            )
        )

    async def untrack(self, topic: str, key: str) -> int:
        """Remove ``key`` from a topic's presence set and announce the leave."""
        state = self._presence.get(topic, {})
        meta = state.pop(key, None)
        if not state:
            self._presence.pop(topic, None)
        if meta is None:
            return 0
        logger.debug("Presence leave", extra={"topic": topic, "key": key})
        return await self._publish(
            RealtimeEvent(
                topic=topic,
                type="presence",
                event="leave",
                payload={"key": key, "meta": meta},
            )
        )

    def presence_state(self, topic: str) -> Dict[str, Dict[str, Any]]:
        """Current presence set for a topic, keyed by presence key."""
        return {k: dict(v) for k, v in self._presence.get(topic, {}).items()}

    async def sync_presence(self, topic: str, subscriber: Subscriber) -> None:
        """Send the full presence set to one subscriber (after it joins)."""
        await subscriber.send_json(
            RealtimeEvent(
                topic=topic,
                type="presence",
                event="sync",
                payload={"state": self.presence_state(topic)},
            ).model_dump()
        )

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Drop every subscription and presence entry."""
        async with self._lock:
            count = self.subscriber_count()
            self._subscribers.clear()
            self._presence.clear()
        logger.info(f"Realtime hub closed ({count} subscribers dropped)")
