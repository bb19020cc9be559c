"""
Integration tests for the notification send API.

Push goes to the gateway double from conftest; the inbox is the in-memory
database; realtime goes through the application's hub.
"""

import pytest

from stride.models import NotificationRecord


def _as(user_id):
    return {"X-Stride-User": user_id}


@pytest.fixture
def sender(create_user):
    return create_user("sender-1", username="Alex")


@pytest.fixture
def recipient(create_user, create_push_target):
    user = create_user("recipient-1")
    create_push_target(user)
    return user


def _inbox(session, user_id):
    return (
        session.query(NotificationRecord)
        .filter(NotificationRecord.recipient_id == user_id)
        .all()
    )


class TestTemplatedSend:
    """Tests for POST /api/push-notifications with template types."""

    def test_follower_notification_reaches_every_channel(
        self, test_client, sender, recipient, gateway, test_db_session
    ):
        response = test_client.post(
            "/api/push-notifications",
            json={"type": "follower", "recipient_id": recipient.id, "follower_name": "Alex"},
            headers=_as(sender.id),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        result = body["results"][0]
        assert result["userId"] == recipient.id
        assert result["expoPushSent"] is True
        assert result["inAppNotificationCreated"] is True
        assert result["realtimeEventTriggered"] is True
        assert result["errors"] == []

        assert gateway.requests[0]["body"] == "Alex started following you"
        records = _inbox(test_db_session, recipient.id)
        assert len(records) == 1
        assert records[0].kind == "follow"
        assert records[0].sender_id == sender.id

    def test_message_notification(self, test_client, sender, recipient, gateway):
        response = test_client.post(
            "/api/push-notifications",
            json={
                "type": "message",
                "recipient_id": recipient.id,
                "sender_name": "Alex",
                "message_preview": "See you at the library?",
            },
            headers=_as(sender.id),
        )

        assert response.status_code == 200
        sent = gateway.requests[0]
        assert sent["title"] == "New message from Alex"
        assert sent["data"] == {"type": "message", "senderId": sender.id}

    def test_test_notification_goes_to_caller(self, test_client, recipient, test_db_session):
        response = test_client.post(
            "/api/push-notifications", json={"type": "test"}, headers=_as(recipient.id)
        )

        assert response.status_code == 200
        assert _inbox(test_db_session, recipient.id)[0].kind == "test"

    def test_push_failure_still_succeeds_in_app(
        self, test_client, sender, recipient, gateway, test_db_session
    ):
        gateway.tickets.append({
            "status": "error",
            "message": "not registered",
            "details": {"error": "DeviceNotRegistered"},
        })

        response = test_client.post(
            "/api/push-notifications",
            json={"type": "follower", "recipient_id": recipient.id, "follower_name": "Alex"},
            headers=_as(sender.id),
        )

        result = response.json()["results"][0]
        assert response.status_code == 200
        assert result["success"] is True
        assert result["expoPushSent"] is False
        assert result["errors"][0].startswith("Expo push failed:")
        assert len(_inbox(test_db_session, recipient.id)) == 1

    def test_missing_template_fields(self, test_client, sender, recipient):
        response = test_client.post(
            "/api/push-notifications",
            json={"type": "message", "recipient_id": recipient.id},
            headers=_as(sender.id),
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert "sender_name is required" in detail["errors"]
        assert "message_preview is required" in detail["errors"]

    def test_unknown_recipient(self, test_client, sender):
        response = test_client.post(
            "/api/push-notifications",
            json={"type": "follower", "recipient_id": "ghost", "follower_name": "Alex"},
            headers=_as(sender.id),
        )
        assert response.status_code == 404

    def test_unknown_type(self, test_client, sender):
        response = test_client.post(
            "/api/push-notifications", json={"type": "carrier_pigeon"}, headers=_as(sender.id)
        )
        assert response.status_code == 422


class TestCampusAndCustomSend:
    """Tests for campus-wide and custom notifications."""

    def test_campus_event(self, test_client, create_user, sender, test_db_session):
        on_campus = [create_user(), create_user()]
        elsewhere = create_user(school_domain="other.edu")
        inactive = create_user(is_active=False)

        response = test_client.post(
            "/api/push-notifications",
            json={
                "type": "campus_event",
                "school_domain": "stride.edu",
                "event_title": "Hack Night",
                "event_time": "tonight at 8",
            },
            headers=_as(sender.id),
        )

        assert response.status_code == 200
        delivered = {r["userId"] for r in response.json()["results"]}
        assert {u.id for u in on_campus} <= delivered
        assert not delivered & {elsewhere.id, inactive.id}
        assert all(r["success"] for r in response.json()["results"])
        assert _inbox(test_db_session, elsewhere.id) == []

    def test_custom_to_several_users(self, test_client, sender, recipient):
        response = test_client.post(
            "/api/push-notifications",
            json={
                "type": "custom",
                "target_type": "users",
                "target_id": [recipient.id, "ghost"],
                "message": {"title": "Library closes early", "body": "Doors shut at 6pm"},
            },
            headers=_as(sender.id),
        )

        assert response.status_code == 200
        results = {r["userId"]: r for r in response.json()["results"]}
        assert results[recipient.id]["success"] is True
        assert results["ghost"]["success"] is False
        assert results["ghost"]["errors"] == ["User not found"]
        assert response.json()["success"] is True

    def test_custom_users_requires_list(self, test_client, sender, recipient):
        response = test_client.post(
            "/api/push-notifications",
            json={
                "type": "custom",
                "target_type": "users",
                "target_id": recipient.id,
                "message": {"title": "Hi", "body": "there"},
            },
            headers=_as(sender.id),
        )
        assert response.status_code == 422

    def test_custom_invalid_message(self, test_client, sender, recipient):
        response = test_client.post(
            "/api/push-notifications",
            json={
                "type": "custom",
                "target_type": "user",
                "target_id": recipient.id,
                "message": {"title": "", "body": ""},
            },
            headers=_as(sender.id),
        )
        assert response.status_code == 422
