"""
Integration tests for the notification inbox API.
"""

from datetime import datetime, timedelta

import pytest

from stride.models import NotificationRecord


def _as(user_id):
    return {"X-Stride-User": user_id}


@pytest.fixture
def create_notification(test_db_session):
    """Factory for inbox records."""
    def _create(recipient, kind="follow", title="New follower!", is_read=False, age_minutes=0):
        record = NotificationRecord(
            recipient_id=recipient.id,
            sender_id="someone",
            kind=kind,
            title=title,
            body="body",
            data={"type": kind},
            is_read=is_read,
            created_at=datetime.utcnow() - timedelta(minutes=age_minutes),
        )
        test_db_session.add(record)
        test_db_session.commit()
        test_db_session.refresh(record)
        return record
    return _create


@pytest.fixture
def student(create_user):
    return create_user("student-1")


class TestListNotifications:
    """Tests for GET /api/notifications."""

    def test_newest_first(self, test_client, student, create_notification):
        create_notification(student, title="older", age_minutes=10)
        create_notification(student, title="newer")

        response = test_client.get("/api/notifications", headers=_as(student.id))

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [n["title"] for n in data["items"]] == ["newer", "older"]
        assert data["items"][0]["guid"].startswith("ntf_")

    def test_only_own_notifications(self, test_client, student, create_user, create_notification):
        other = create_user("student-2")
        create_notification(other)

        response = test_client.get("/api/notifications", headers=_as(student.id))

        assert response.json()["total"] == 0

    def test_filters_and_pagination(self, test_client, student, create_notification):
        for i in range(3):
            create_notification(student, kind="message", age_minutes=i)
        create_notification(student, kind="follow", is_read=True)

        unread = test_client.get(
            "/api/notifications", params={"unread_only": True}, headers=_as(student.id)
        ).json()
        messages = test_client.get(
            "/api/notifications",
            params={"kind": "message", "limit": 2, "offset": 1},
            headers=_as(student.id),
        ).json()

        assert unread["total"] == 3
        assert messages["total"] == 3
        assert len(messages["items"]) == 2
        assert messages["limit"] == 2
        assert messages["offset"] == 1

    def test_limit_bounds(self, test_client, student):
        response = test_client.get(
            "/api/notifications", params={"limit": 500}, headers=_as(student.id)
        )
        assert response.status_code == 422

    def test_requires_identity(self, test_client):
        assert test_client.get("/api/notifications").status_code == 401


class TestReadState:
    """Tests for unread count and read endpoints."""

    def test_unread_count(self, test_client, student, create_notification):
        create_notification(student)
        create_notification(student, is_read=True)

        response = test_client.get("/api/notifications/unread-count", headers=_as(student.id))

        assert response.json() == {"unread_count": 1}

    def test_mark_one_read(self, test_client, student, create_notification):
        record = create_notification(student)

        response = test_client.post(
            f"/api/notifications/{record.guid}/read", headers=_as(student.id)
        )

        assert response.status_code == 200
        assert response.json()["is_read"] is True
        assert response.json()["read_at"] is not None

    def test_mark_foreign_notification(self, test_client, student, create_user, create_notification):
        record = create_notification(create_user("student-2"))

        response = test_client.post(
            f"/api/notifications/{record.guid}/read", headers=_as(student.id)
        )

        assert response.status_code == 404

    def test_mark_unknown_guid(self, test_client, student):
        response = test_client.post(
            "/api/notifications/ntf_nonexistent/read", headers=_as(student.id)
        )
        assert response.status_code == 404

    def test_mark_all_read(self, test_client, student, create_notification):
        create_notification(student)
        create_notification(student)
        create_notification(student, is_read=True)

        response = test_client.post("/api/notifications/read-all", headers=_as(student.id))

        assert response.json() == {"updated_count": 2}
        count = test_client.get(
            "/api/notifications/unread-count", headers=_as(student.id)
        ).json()
        assert count["unread_count"] == 0
