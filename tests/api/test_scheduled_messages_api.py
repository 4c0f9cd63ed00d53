from datetime import datetime, timedelta, timezone

from recordhub import models


def _day(offset_days: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=offset_days)).strftime("%Y-%m-%d")


def _seed(session, status="pending"):
    now = models.utcnow()
    record = models.ScheduledMessage(
        id=7,
        message="Renewal reminder",
        day=_day(3),
        time="09:00",
        scheduled_at=now + timedelta(days=3),
        recipient=None,
        priority="medium",
        status=status,
        created_at=now,
        updated_at=now,
    )
    session.objects[7] = record
    return record


class TestCreateScheduledMessage:

    def test_created(self, client, fake_session):
        response = client.post(
            "/scheduled-messages",
            json={"message": "Renewal reminder", "scheduledDate": _day(1), "scheduledTime": "10:30"},
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "pending"
        assert data["priority"] == "medium"
        assert data["day"] == _day(1)
        assert data["time"] == "10:30"
        assert len(fake_session.added) == 1

    def test_yesterday_rejected_and_nothing_stored(self, client, fake_session):
        response = client.post(
            "/scheduled-messages",
            json={"message": "Too late", "scheduledDate": _day(-1), "scheduledTime": "10:30"},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Scheduled time must be in the future"
        assert fake_session.added == []

    def test_missing_fields(self, client, fake_session):
        response = client.post("/scheduled-messages", json={"message": "Hello"})

        assert response.status_code == 400
        assert response.json()["message"] == "Message, scheduledDate, and scheduledTime are required"

    def test_bad_time(self, client, fake_session):
        response = client.post(
            "/scheduled-messages",
            json={"message": "Hello", "scheduledDate": _day(1), "scheduledTime": "25:00"},
        )

        assert response.status_code == 400
        assert "HH:MM" in response.json()["message"]

    def test_bad_priority(self, client, fake_session):
        response = client.post(
            "/scheduled-messages",
            json={
                "message": "Hello",
                "scheduledDate": _day(1),
                "scheduledTime": "10:00",
                "priority": "urgent",
            },
        )

        assert response.status_code == 400
        assert fake_session.added == []


class TestScheduledMessageById:

    def test_get(self, client, fake_session):
        _seed(fake_session)

        response = client.get("/scheduled-messages/7")

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Renewal reminder"

    def test_not_found(self, client, fake_session):
        response = client.get("/scheduled-messages/404")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_update_pending(self, client, fake_session):
        _seed(fake_session)

        response = client.put("/scheduled-messages/7", json={"scheduledTime": "18:15", "priority": "high"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["time"] == "18:15"
        assert data["priority"] == "high"

    def test_update_into_past(self, client, fake_session):
        _seed(fake_session)

        response = client.put("/scheduled-messages/7", json={"scheduledDate": _day(-2)})

        assert response.status_code == 400
        assert fake_session.objects[7].day == _day(3)

    def test_update_sent_conflicts(self, client, fake_session):
        _seed(fake_session, status="sent")

        response = client.put("/scheduled-messages/7", json={"message": "edited"})

        assert response.status_code == 409
        assert fake_session.objects[7].message == "Renewal reminder"

    def test_delete(self, client, fake_session):
        _seed(fake_session)

        response = client.delete("/scheduled-messages/7")

        assert response.status_code == 200
        assert response.json()["message"] == "Scheduled message deleted successfully"
        assert 7 not in fake_session.objects
