"""
Unit tests for the client realtime trackers.

Trackers run against a real in-process RealtimeHub so events travel the
same path they take in production.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from stride.client.realtime_bridge import (
    NotificationListener,
    PresenceTracker,
    RealtimeBridge,
    TypingTracker,
    VoteTracker,
)
from stride.schemas.realtime import VoteUpdate


def _vote_row(user_id, vote_type, post_id="post-1", vote_id="v1"):
    return {"id": vote_id, "post_id": post_id, "user_id": user_id, "vote_type": vote_type}


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


# ============================================================================
# Test: votes
# ============================================================================


class TestVoteTracker:
    """Tests for VoteTracker."""

    @pytest.mark.asyncio
    async def test_insert_then_delete_restores_count(self, hub):
        async with VoteTracker(hub, "me", target_id="post-1", counts={"post-1": 7}) as tracker:
            await hub.publish_change(tracker.topic, "post_votes", "INSERT", new=_vote_row("u2", 1))
            assert tracker.count("post-1") == 8

            await hub.publish_change(tracker.topic, "post_votes", "DELETE", old=_vote_row("u2", 1))
            assert tracker.count("post-1") == 7

    @pytest.mark.asyncio
    async def test_downvote_round_trip(self, hub):
        async with VoteTracker(hub, "me", target_id="post-1", counts={"post-1": 0}) as tracker:
            await hub.publish_change(tracker.topic, "post_votes", "INSERT", new=_vote_row("u2", -1))
            await hub.publish_change(tracker.topic, "post_votes", "DELETE", old=_vote_row("u2", -1))

        assert tracker.count("post-1") == 0

    @pytest.mark.asyncio
    async def test_my_vote_follows_own_events(self, hub):
        async with VoteTracker(hub, "me", target_id="post-1") as tracker:
            await hub.publish_change(tracker.topic, "post_votes", "INSERT", new=_vote_row("me", 1))
            assert tracker.my_vote("post-1") == 1

            await hub.publish_change(tracker.topic, "post_votes", "DELETE", old=_vote_row("me", 1))
            assert tracker.my_vote("post-1") == 0

    @pytest.mark.asyncio
    async def test_update_with_previous_value_applies_delta(self, hub):
        async with VoteTracker(hub, "me", target_id="post-1", counts={"post-1": 5}) as tracker:
            await hub.publish_change(
                tracker.topic, "post_votes", "UPDATE",
                new=_vote_row("u2", -1), old=_vote_row("u2", 1),
            )

        assert tracker.count("post-1") == 3
        assert tracker.stale == set()

    @pytest.mark.asyncio
    async def test_update_without_previous_value_refetches(self, hub):
        refetch = AsyncMock(return_value=42)
        async with VoteTracker(hub, "me", target_id="post-1", counts={"post-1": 5}, refetch=refetch) as tracker:
            await hub.publish_change(tracker.topic, "post_votes", "UPDATE", new=_vote_row("me", -1))

        refetch.assert_awaited_once_with("post-1")
        assert tracker.count("post-1") == 42
        assert tracker.my_vote("post-1") == -1
        assert tracker.stale == set()

    @pytest.mark.asyncio
    async def test_failed_refetch_keeps_subscription(self, hub):
        refetch = AsyncMock(side_effect=ConnectionError("offline"))
        async with VoteTracker(hub, "me", target_id="post-1", counts={"post-1": 5}, refetch=refetch) as tracker:
            await hub.publish_change(tracker.topic, "post_votes", "UPDATE", new=_vote_row("u2", -1))
            await hub.publish_change(tracker.topic, "post_votes", "INSERT", new=_vote_row("u3", 1, vote_id="v2"))

            assert hub.subscriber_count(tracker.topic) == 1
            assert tracker.is_connected

        assert tracker.count("post-1") == 6
        assert tracker.stale == {"post-1"}

    @pytest.mark.asyncio
    async def test_failing_on_update_keeps_subscription(self, hub):
        on_update = Mock(side_effect=RuntimeError("boom"))
        async with VoteTracker(hub, "me", target_id="post-1", on_update=on_update) as tracker:
            await hub.publish_change(tracker.topic, "post_votes", "INSERT", new=_vote_row("u2", 1))
            await hub.publish_change(tracker.topic, "post_votes", "INSERT", new=_vote_row("u3", 1, vote_id="v2"))

        assert on_update.call_count == 2
        assert tracker.count("post-1") == 2

    def test_update_without_previous_value_marks_stale(self, hub):
        tracker = VoteTracker(hub, "me", counts={"post-1": 5})
        update = VoteUpdate(
            id="v1", target_type="post", target_id="post-1", user_id="u2", vote_type=1, action="UPDATE"
        )

        assert tracker.apply(update) is False
        assert tracker.count("post-1") == 5
        assert tracker.stale == {"post-1"}

    @pytest.mark.asyncio
    async def test_ignores_other_targets(self, hub):
        async with VoteTracker(hub, "me", target_id="post-1", counts={"post-1": 1}) as tracker:
            await hub.publish_change(
                tracker.topic, "post_votes", "INSERT", new=_vote_row("u2", 1, post_id="post-2")
            )

        assert tracker.counts == {"post-1": 1}

    @pytest.mark.asyncio
    async def test_comment_votes_topic_and_history(self, hub):
        on_update = Mock()
        tracker = VoteTracker(hub, "me", target_type="comment", on_update=on_update)
        await tracker.start()
        await hub.publish_change(
            "comment-votes-all", "comment_votes", "INSERT",
            new={"id": "v9", "comment_id": "C1", "user_id": "u2", "vote_type": 1},
        )
        await tracker.stop()

        assert tracker.topic == "comment-votes-all"
        assert tracker.count("C1") == 1
        assert tracker.latest_update.target_id == "C1"
        on_update.assert_called_once()
        assert hub.subscriber_count(tracker.topic) == 0

    @pytest.mark.asyncio
    async def test_malformed_event_is_ignored(self, hub):
        async with VoteTracker(hub, "me", target_id="post-1", counts={"post-1": 1}) as tracker:
            await hub.publish_change(tracker.topic, "post_votes", "INSERT", new={"vote_type": "lots"})

        assert tracker.counts == {"post-1": 1}
        assert hub.subscriber_count() == 0


# ============================================================================
# Test: presence
# ============================================================================


class TestPresenceTracker:
    """Tests for PresenceTracker."""

    @pytest.mark.asyncio
    async def test_sees_others_but_not_self(self, hub):
        alex = PresenceTracker(hub, "u1", "alex")
        sam = PresenceTracker(hub, "u2", "sam")

        await alex.start()
        await sam.start()

        assert [u.user_id for u in alex.online_users] == ["u2"]
        assert [u.username for u in sam.online_users] == ["alex"]
        assert alex.is_online("u1") is False

        await sam.stop()
        assert alex.online_users == []
        await alex.stop()

    @pytest.mark.asyncio
    async def test_sync_replaces_set(self, hub):
        tracker = PresenceTracker(hub, "u1", "alex")
        await tracker.start()

        await tracker.handle_event("presence", "sync", {"state": {
            "u3": {"user_id": "u3", "username": "kim"},
            "u1": {"user_id": "u1", "username": "alex"},
        }})

        assert [u.user_id for u in tracker.online_users] == ["u3"]
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_stop_untracks(self, hub):
        tracker = PresenceTracker(hub, "u1", "alex")
        await tracker.start()
        assert "u1" in hub.presence_state("online-users")

        await tracker.stop()
        assert hub.presence_state("online-users") == {}


# ============================================================================
# Test: typing
# ============================================================================


class TestTypingTracker:
    """Tests for TypingTracker."""

    @pytest.mark.asyncio
    async def test_receives_others_typing(self, hub):
        clock = FakeClock()
        mine = TypingTracker(hub, "chat1", "u1", "alex", clock=clock)
        theirs = TypingTracker(hub, "chat1", "u2", "sam", clock=clock)
        await mine.start()
        await theirs.start()

        await theirs.notify_typing()

        assert [u["username"] for u in mine.typing_users] == ["sam"]
        assert theirs.typing_users == []

        await theirs.stop_typing()
        assert mine.typing_users == []

        await mine.stop()
        await theirs.stop()

    @pytest.mark.asyncio
    async def test_entries_expire_after_timeout(self, hub):
        clock = FakeClock()
        tracker = TypingTracker(hub, "chat1", "u1", clock=clock)
        await tracker.start()

        await hub.broadcast(tracker.topic, "typing", {"userId": "u2", "username": "sam", "typing": True})
        clock.now += 2.9
        assert len(tracker.typing_users) == 1

        clock.now += 0.1
        assert tracker.typing_users == []
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_refresh_extends_entry(self, hub):
        clock = FakeClock()
        tracker = TypingTracker(hub, "chat1", "u1", clock=clock)
        await tracker.start()

        payload = {"userId": "u2", "username": "sam", "typing": True}
        await hub.broadcast(tracker.topic, "typing", payload)
        clock.now += 2.0
        await hub.broadcast(tracker.topic, "typing", payload)
        clock.now += 2.0

        assert len(tracker.typing_users) == 1
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_automatic_stop(self, hub, recording_subscriber):
        tracker = TypingTracker(hub, "chat1", "u1", timeout=0.05)
        await tracker.start()
        await hub.subscribe(tracker.topic, recording_subscriber)

        await tracker.notify_typing()
        await asyncio.sleep(0.1)

        flags = [f["payload"]["typing"] for f in recording_subscriber.frames]
        assert flags == [True, False]
        await tracker.stop()

    @pytest.mark.asyncio
    async def test_stop_announces_stop_typing(self, hub, recording_subscriber):
        tracker = TypingTracker(hub, "chat1", "u1")
        await tracker.start()
        await hub.subscribe(tracker.topic, recording_subscriber)

        await tracker.notify_typing()
        await tracker.stop()

        flags = [f["payload"]["typing"] for f in recording_subscriber.frames]
        assert flags == [True, False]

    @pytest.mark.asyncio
    async def test_malformed_typing_payload_is_ignored(self, hub):
        tracker = TypingTracker(hub, "chat1", "u1")
        await tracker.start()

        await hub.broadcast(tracker.topic, "typing", {"username": "no id"})

        assert tracker.typing_users == []
        assert tracker.is_connected is True
        await tracker.stop()


# ============================================================================
# Test: notifications and bridge
# ============================================================================


class TestNotificationListener:
    """Tests for NotificationListener."""

    @pytest.mark.asyncio
    async def test_only_own_notifications(self, hub):
        seen = []
        async with NotificationListener(hub, "U1", on_notification=seen.append):
            await hub.broadcast("user_notifications", "new_notification", {
                "user_id": "U1", "notification": {"title": "For me"},
            })
            await hub.broadcast("user_notifications", "new_notification", {
                "user_id": "U2", "notification": {"title": "Not for me"},
            })

        assert seen == [{"title": "For me"}]

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_subscription(self, hub):
        on_notification = Mock(side_effect=[RuntimeError("boom"), None])
        async with NotificationListener(hub, "U1", on_notification=on_notification) as listener:
            for title in ("First", "Second"):
                await hub.broadcast("user_notifications", "new_notification", {
                    "user_id": "U1", "notification": {"title": title},
                })

            assert hub.subscriber_count("user_notifications") == 1

        assert on_notification.call_count == 2
        assert [n["title"] for n in listener.received] == ["First", "Second"]
        assert hub.subscriber_count("user_notifications") == 0


class TestRealtimeBridge:
    """Tests for RealtimeBridge."""

    @pytest.mark.asyncio
    async def test_reuses_open_subscriptions(self, hub):
        bridge = RealtimeBridge(hub, "U1", "alex")

        first = await bridge.votes(post_id="post-1")
        second = await bridge.votes(post_id="post-1")

        assert first is second
        assert hub.subscriber_count("post-votes-post-1") == 1
        await bridge.close()

    @pytest.mark.asyncio
    async def test_close_releases_everything(self, hub):
        async with RealtimeBridge(hub, "U1", "alex") as bridge:
            await bridge.votes(post_id="post-1")
            await bridge.presence()
            await bridge.typing("chat1")
            await bridge.notifications()
            assert len(bridge.active_topics) == 4

        assert hub.subscriber_count() == 0
        assert hub.presence_state("online-users") == {}

    @pytest.mark.asyncio
    async def test_release_one_topic(self, hub):
        bridge = RealtimeBridge(hub, "U1")
        await bridge.typing("chat1")

        assert await bridge.release("typing:chat1") is True
        assert await bridge.release("typing:chat1") is False
        assert bridge.active_topics == []
