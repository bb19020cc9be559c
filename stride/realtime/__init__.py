"""Topic-based realtime channels: broadcast, presence and row-change events."""

from stride.realtime.hub import CallbackSubscriber, RealtimeHub, Subscriber

__all__ = ["CallbackSubscriber", "RealtimeHub", "Subscriber"]
