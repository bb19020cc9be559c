"""
Client-side realtime subscriptions.

Each tracker owns one topic subscription and turns inbound events into
local state:

    VoteTracker           post/comment vote counters and "my vote"
    PresenceTracker       online users other than the current one
    TypingTracker         who else is typing in a chat (3s expiry)
    NotificationListener  live notifications addressed to the current user

Trackers subscribe on ``start()`` and unsubscribe on ``stop()``; use them
as async context managers, or let a RealtimeBridge own them and close
everything at teardown.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Optional,
    Protocol,
    Set,
    Union,
)

from pydantic import ValidationError

from stride.realtime.hub import CallbackSubscriber, Subscriber
from stride.schemas.realtime import OnlineUser, TypingEvent, VoteUpdate


logger = logging.getLogger(__name__)

PRESENCE_TOPIC = "online-users"
NOTIFICATIONS_TOPIC = "user_notifications"
TYPING_TIMEOUT_SECONDS = 3.0
MAX_VOTE_UPDATES = 100


class RealtimeTransport(Protocol):
    """The channel operations trackers rely on (RealtimeHub implements them)."""

    async def subscribe(self, topic: str, subscriber: Subscriber) -> None: ...

    def unsubscribe(self, topic: str, subscriber: Subscriber) -> None: ...

    async def broadcast(
        self,
        topic: str,
        event: str,
        payload: Dict[str, Any],
        exclude: Optional[Subscriber] = None,
    ) -> int: ...

    async def track(self, topic: str, key: str, meta: Optional[Dict[str, Any]] = None) -> int: ...

    async def untrack(self, topic: str, key: str) -> int: ...

    def presence_state(self, topic: str) -> Dict[str, Dict[str, Any]]: ...


async def _maybe_await(value: Union[Any, Awaitable[Any]]) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ChannelTracker:
    """Base class: one topic subscription with an explicit lifecycle."""

    def __init__(self, transport: RealtimeTransport, topic: str):
        self.transport = transport
        self.topic = topic
        self._subscriber = CallbackSubscriber(self._on_event, name=topic)
        self._subscribed = False

    @property
    def is_connected(self) -> bool:
        return self._subscribed

    async def start(self) -> "ChannelTracker":
        if not self._subscribed:
            await self.transport.subscribe(self.topic, self._subscriber)
            self._subscribed = True
            logger.debug("Subscribed to %s", self.topic)
        return self

    async def stop(self) -> None:
        if self._subscribed:
            self.transport.unsubscribe(self.topic, self._subscriber)
            self._subscribed = False
            logger.debug("Unsubscribed from %s", self.topic)

    async def __aenter__(self):
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def _on_event(self, data: Dict[str, Any]) -> None:
        try:
            await self.handle_event(
                data.get("type", ""), data.get("event", ""), data.get("payload") or {}
            )
        except ValidationError as e:
            logger.warning("Ignoring malformed event on %s: %s", self.topic, e)
        except Exception:
            # Keep the subscription; the hub drops subscribers that raise
            logger.exception("Error handling event on %s", self.topic)

    async def handle_event(self, event_type: str, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


# ============================================================================
# Votes
# ============================================================================


class VoteTracker(ChannelTracker):
    """
    Reconciles vote counters from row-change events.

    INSERT adds the vote value, DELETE subtracts it. An UPDATE can only be
    applied exactly when the event carries the previous vote value; without
    it the target is marked stale and, if a ``refetch`` callable was given,
    the authoritative count is fetched instead of guessing a delta.

    Args:
        transport: Channel service
        user_id: Current user (drives the "my vote" indicator)
        target_type: "post" or "comment"
        target_id: Restrict to one post/comment (default: all)
        counts: Initial counters keyed by target id
        my_votes: Initial "my vote" values keyed by target id
        refetch: ``(target_id) -> count`` (sync or async) for stale targets
        on_update: Called with every VoteUpdate after it is applied
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        user_id: str,
        target_type: str = "post",
        target_id: Optional[str] = None,
        counts: Optional[Dict[str, int]] = None,
        my_votes: Optional[Dict[str, int]] = None,
        refetch: Optional[Callable[[str], Union[int, Awaitable[int]]]] = None,
        on_update: Optional[Callable[[VoteUpdate], None]] = None,
    ):
        super().__init__(transport, f"{target_type}-votes-{target_id or 'all'}")
        self.user_id = user_id
        self.target_type = target_type
        self.target_id = target_id
        self.counts: Dict[str, int] = dict(counts or {})
        self.my_votes: Dict[str, int] = dict(my_votes or {})
        self.stale: Set[str] = set()
        self.updates: Deque[VoteUpdate] = deque(maxlen=MAX_VOTE_UPDATES)
        self.refetch = refetch
        self.on_update = on_update

    @property
    def latest_update(self) -> Optional[VoteUpdate]:
        return self.updates[-1] if self.updates else None

    def count(self, target_id: str) -> int:
        return self.counts.get(target_id, 0)

    def my_vote(self, target_id: str) -> int:
        return self.my_votes.get(target_id, 0)

    def clear_updates(self) -> None:
        self.updates.clear()

    def apply(self, update: VoteUpdate) -> bool:
        """
        Apply one vote change to the local counters.

        Returns:
            True if the change was applied exactly, False if the target
            was marked stale instead
        """
        target = update.target_id
        is_mine = update.user_id == self.user_id
        self.updates.append(update)

        if update.action == "INSERT":
            self.counts[target] = self.count(target) + update.vote_type
            if is_mine:
                self.my_votes[target] = update.vote_type
        elif update.action == "DELETE":
            self.counts[target] = self.count(target) - update.vote_type
            if is_mine:
                self.my_votes.pop(target, None)
        elif update.previous_vote_type is not None:
            self.counts[target] = (
                self.count(target) + update.vote_type - update.previous_vote_type
            )
            if is_mine:
                self.my_votes[target] = update.vote_type
        else:
            # Vote type changed but the old value is unknown
            if is_mine:
                self.my_votes[target] = update.vote_type
            self.stale.add(target)
            logger.debug("Vote count for %s is stale after UPDATE", target)
            return False

        return True

    async def resolve_stale(self) -> int:
        """Refetch every stale counter. Returns the number refreshed."""
        if self.refetch is None:
            return 0
        refreshed = 0
        for target in list(self.stale):
            try:
                count = int(await _maybe_await(self.refetch(target)))
            except Exception as e:
                logger.warning("Refetch of vote count for %s failed: %s", target, e)
                continue
            self.counts[target] = count
            self.stale.discard(target)
            refreshed += 1
        return refreshed

    async def handle_event(self, event_type: str, event: str, payload: Dict[str, Any]) -> None:
        if event_type != "postgres_changes":
            return

        update = VoteUpdate.from_change(payload, self.target_type)
        if self.target_id and update.target_id != self.target_id:
            return

        exact = self.apply(update)
        if not exact:
            await self.resolve_stale()
        if self.on_update:
            self.on_update(update)


# ============================================================================
# Presence
# ============================================================================


class PresenceTracker(ChannelTracker):
    """
    Online-set of other users on a presence topic.

    The current user is tracked on ``start()`` and untracked on ``stop()``,
    but never appears in ``online_users``.
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        user_id: str,
        username: str = "Unknown",
        topic: str = PRESENCE_TOPIC,
    ):
        super().__init__(transport, topic)
        self.user_id = user_id
        self.username = username
        self._online: Dict[str, OnlineUser] = {}

    @property
    def online_users(self) -> List[OnlineUser]:
        return list(self._online.values())

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def _join(self, key: str, meta: Dict[str, Any]) -> None:
        user_id = meta.get("user_id") or key
        if user_id == self.user_id:
            return
        self._online[user_id] = OnlineUser(
            user_id=user_id,
            username=meta.get("username") or "Unknown",
        )

    def _sync(self, state: Dict[str, Dict[str, Any]]) -> None:
        self._online = {}
        for key, meta in state.items():
            self._join(key, meta or {})

    async def start(self) -> "PresenceTracker":
        if self._subscribed:
            return self
        await super().start()
        self._sync(self.transport.presence_state(self.topic))
        await self.transport.track(
            self.topic,
            self.user_id,
            {
                "user_id": self.user_id,
                "username": self.username,
                "online_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        return self

    async def stop(self) -> None:
        if self._subscribed:
            await self.transport.untrack(self.topic, self.user_id)
        await super().stop()
        self._online = {}

    async def handle_event(self, event_type: str, event: str, payload: Dict[str, Any]) -> None:
        if event_type != "presence":
            return
        if event == "sync":
            self._sync(payload.get("state") or {})
        elif event == "join":
            self._join(payload.get("key", ""), payload.get("meta") or {})
        elif event == "leave":
            meta = payload.get("meta") or {}
            self._online.pop(meta.get("user_id") or payload.get("key", ""), None)


# ============================================================================
# Typing
# ============================================================================


class TypingTracker(ChannelTracker):
    """
    Typing indicator for one chat, in both directions.

    Receiving: keeps the other users currently typing; an entry expires
    ``timeout`` seconds after its last refresh.
    Sending: ``notify_typing()`` announces typing and schedules an
    automatic stop after the same timeout.
    """

    EVENT = "typing"

    def __init__(
        self,
        transport: RealtimeTransport,
        chat_id: str,
        user_id: str,
        username: str = "Unknown",
        timeout: float = TYPING_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(transport, f"typing:{chat_id}")
        self.chat_id = chat_id
        self.user_id = user_id
        self.username = username
        self.timeout = timeout
        self._clock = clock
        self._typing: Dict[str, Dict[str, Any]] = {}
        self._is_typing = False
        self._stop_handle: Optional[asyncio.TimerHandle] = None
        self._stop_task: Optional[asyncio.Task] = None

    @property
    def typing_users(self) -> List[Dict[str, Any]]:
        """Other users typing right now, with expired entries pruned."""
        now = self._clock()
        self._typing = {
            uid: entry for uid, entry in self._typing.items()
            if now - entry["received_at"] < self.timeout
        }
        return [
            {"user_id": uid, "username": e["username"], "timestamp": e["timestamp"]}
            for uid, e in self._typing.items()
        ]

    async def handle_event(self, event_type: str, event: str, payload: Dict[str, Any]) -> None:
        if event_type != "broadcast" or event != self.EVENT:
            return

        typing = TypingEvent.model_validate(payload)
        if typing.user_id == self.user_id:
            return

        if typing.is_typing:
            self._typing[typing.user_id] = {
                "username": typing.username,
                "timestamp": typing.timestamp,
                "received_at": self._clock(),
            }
        else:
            self._typing.pop(typing.user_id, None)

    async def _send(self, typing: bool) -> None:
        await self.transport.broadcast(
            self.topic,
            self.EVENT,
            {
                "userId": self.user_id,
                "username": self.username,
                "typing": typing,
                "timestamp": time.time(),
            },
            exclude=self._subscriber,
        )

    async def notify_typing(self) -> None:
        """Announce typing and restart the automatic stop timer."""
        self._cancel_stop_timer()
        await self._send(True)
        self._is_typing = True

        loop = asyncio.get_running_loop()
        self._stop_handle = loop.call_later(self.timeout, self._schedule_stop)

    def _schedule_stop(self) -> None:
        self._stop_handle = None
        self._stop_task = asyncio.ensure_future(self.stop_typing())

    def _cancel_stop_timer(self) -> None:
        if self._stop_handle is not None:
            self._stop_handle.cancel()
            self._stop_handle = None

    async def stop_typing(self) -> None:
        self._cancel_stop_timer()
        if self._is_typing:
            self._is_typing = False
            await self._send(False)

    async def stop(self) -> None:
        if self._subscribed:
            await self.stop_typing()
        self._cancel_stop_timer()
        await super().stop()
        self._typing = {}


# ============================================================================
# Notifications
# ============================================================================


class NotificationListener(ChannelTracker):
    """Surfaces ``new_notification`` broadcasts addressed to the current user."""

    EVENT = "new_notification"

    def __init__(
        self,
        transport: RealtimeTransport,
        user_id: str,
        on_notification: Optional[Callable[[Dict[str, Any]], Any]] = None,
        topic: str = NOTIFICATIONS_TOPIC,
        history: int = 50,
    ):
        super().__init__(transport, topic)
        self.user_id = user_id
        self.on_notification = on_notification
        self.received: Deque[Dict[str, Any]] = deque(maxlen=history)

    async def handle_event(self, event_type: str, event: str, payload: Dict[str, Any]) -> None:
        if event_type != "broadcast" or event != self.EVENT:
            return
        if payload.get("user_id") != self.user_id:
            return

        notification = payload.get("notification") or {}
        self.received.append(notification)
        if self.on_notification:
            await _maybe_await(self.on_notification(notification))


# ============================================================================
# Bridge
# ============================================================================


class RealtimeBridge:
    """
    Owns every subscription opened for one signed-in user.

    Example:
        >>> async with RealtimeBridge(hub, user_id="U1", username="alex") as bridge:
        ...     votes = await bridge.votes(post_id="post-1", counts={"post-1": 4})
        ...     await bridge.presence()
    """

    def __init__(self, transport: RealtimeTransport, user_id: str, username: str = "Unknown"):
        self.transport = transport
        self.user_id = user_id
        self.username = username
        self._trackers: Dict[str, ChannelTracker] = {}

    @property
    def active_topics(self) -> List[str]:
        return [topic for topic, t in self._trackers.items() if t.is_connected]

    async def _open(self, tracker: ChannelTracker) -> ChannelTracker:
        existing = self._trackers.get(tracker.topic)
        if existing is not None and existing.is_connected:
            return existing
        await tracker.start()
        self._trackers[tracker.topic] = tracker
        return tracker

    async def votes(
        self,
        post_id: Optional[str] = None,
        target_type: str = "post",
        **kwargs: Any,
    ) -> VoteTracker:
        return await self._open(
            VoteTracker(self.transport, self.user_id, target_type, post_id, **kwargs)
        )

    async def presence(self, topic: str = PRESENCE_TOPIC) -> PresenceTracker:
        return await self._open(
            PresenceTracker(self.transport, self.user_id, self.username, topic)
        )

    async def typing(self, chat_id: str, **kwargs: Any) -> TypingTracker:
        return await self._open(
            TypingTracker(self.transport, chat_id, self.user_id, self.username, **kwargs)
        )

    async def notifications(
        self,
        on_notification: Optional[Callable[[Dict[str, Any]], Any]] = None,
        topic: str = NOTIFICATIONS_TOPIC,
    ) -> NotificationListener:
        return await self._open(
            NotificationListener(self.transport, self.user_id, on_notification, topic)
        )

    async def release(self, topic: str) -> bool:
        """Close one subscription (view unmount)."""
        tracker = self._trackers.pop(topic, None)
        if tracker is None:
            return False
        await tracker.stop()
        return True

    async def close(self) -> None:
        """Close every subscription."""
        for topic in list(self._trackers):
            await self.release(topic)

    async def __aenter__(self) -> "RealtimeBridge":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
