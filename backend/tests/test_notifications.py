import asyncio
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest
from sqlalchemy.exc import OperationalError
from starlette.websockets import WebSocketDisconnect

import config
from auth import create_access_token
from bookings import create_booking
from errors import Forbidden, NotFound
from models import Booking, Notification
from notifications import NotificationDispatcher, NotificationQueue, notifier
from scheduler import BookingScheduler, booking_clock_now


class RecordingConnections:
    def __init__(self):
        self.sent = []

    async def send_to_user(self, user_id, payload):
        self.sent.append((user_id, payload))


class BrokenSession:
    def add_all(self, rows):
        pass

    def commit(self):
        raise OperationalError("INSERT INTO notifications", {}, Exception("disk I/O error"))

    def rollback(self):
        pass

    def close(self):
        pass


def test_unknown_type_is_dropped_quietly():
    queue = NotificationQueue()

    queue.notify(1, "marketing", "Buy now")
    queue.notify(1, "reminder", "Tomorrow at 10")

    assert [n.type for n in queue.drain()] == ["reminder"]
    assert len(queue) == 0


def test_drain_limit():
    queue = NotificationQueue()
    for i in range(3):
        queue.notify(i, "booking", f"message {i}")

    assert [n.user_id for n in queue.drain(limit=2)] == [0, 1]
    assert len(queue) == 1


def test_flush_stores_and_pushes(db, session_factory, client_user):
    queue = NotificationQueue()
    connections = RecordingConnections()
    dispatcher = NotificationDispatcher(queue, session_factory, connections)
    queue.notify(client_user.id, "confirmation", "Your booking is confirmed.")

    delivered = asyncio.run(dispatcher.flush())

    assert delivered == 1
    stored = db.query(Notification).one()
    assert (stored.user_id, stored.type, stored.status) == (client_user.id, "confirmation", "unread")
    user_id, payload = connections.sent[0]
    assert user_id == client_user.id
    assert payload["id"] == stored.id
    assert payload["notification_type"] == "confirmation"


def test_store_failure_does_not_raise(client_user):
    queue = NotificationQueue()
    queue.notify(client_user.id, "booking", "Received")

    assert NotificationDispatcher(queue, BrokenSession).store_pending() == []
    assert len(queue) == 0


def test_booking_succeeds_when_notification_store_is_down(db, client_user, consultant, service, booking_day):
    booking = create_booking(db, client_user, consultant.id, service.id, booking_day.isoformat(), "10:00")

    assert NotificationDispatcher(notifier, BrokenSession).store_pending() == []
    db.expire_all()
    assert db.get(Booking, booking.id).status == "pending"


class TestInbox:
    def _store(self, session_factory, *items):
        queue = NotificationQueue()
        for user_id, type, message in items:
            queue.notify(user_id, type, message)
        return NotificationDispatcher(queue, session_factory).store_pending()

    def test_list_and_mark_read(self, client, session_factory, client_user, other_client_user, auth_headers):
        stored = self._store(
            session_factory,
            (client_user.id, "booking", "Booking received"),
            (client_user.id, "reminder", "Tomorrow at 10"),
            (other_client_user.id, "booking", "Not yours"),
        )
        headers = auth_headers(client_user)

        inbox = client.get("/api/notifications", headers=headers).json()
        assert sorted(n["message"] for n in inbox) == ["Booking received", "Tomorrow at 10"]

        response = client.patch(f"/api/notifications/{stored[0]['id']}/read", headers=headers)
        assert response.status_code == 200
        assert response.json()["status"] == "read"

        unread = client.get("/api/notifications", params={"unread": "true"}, headers=headers).json()
        assert [n["message"] for n in unread] == ["Tomorrow at 10"]

    def test_owner_only(self, client, session_factory, client_user, other_client_user, auth_headers):
        stored = self._store(session_factory, (client_user.id, "payment", "Paid"))
        notification_id = stored[0]["id"]

        assert client.patch(f"/api/notifications/{notification_id}/read",
                            headers=auth_headers(other_client_user)).status_code == 403
        assert client.delete(f"/api/notifications/{notification_id}",
                             headers=auth_headers(other_client_user)).status_code == 403
        assert client.delete(f"/api/notifications/{notification_id}",
                             headers=auth_headers(client_user)).status_code == 200
        assert client.delete(f"/api/notifications/{notification_id}",
                             headers=auth_headers(client_user)).status_code == 404

    def test_service_layer_errors(self, db, session_factory, client_user, other_client_user):
        from notifications import delete_notification, mark_read

        stored = self._store(session_factory, (client_user.id, "payment", "Paid"))
        with pytest.raises(Forbidden):
            mark_read(db, other_client_user, stored[0]["id"])
        with pytest.raises(NotFound):
            delete_notification(db, client_user, 12345)


class TestReminders:
    def test_reminds_confirmed_bookings_once(self, db, session_factory, client_user, consultant, book, booking_day):
        booking = book(client_user, at="10:00", status="confirmed")
        book(client_user, at="14:00")  # pending: no reminder
        notifier.drain()
        queue = NotificationQueue()
        scheduler = BookingScheduler(NotificationDispatcher(queue, session_factory), queue, session_factory)
        now = datetime.combine(booking_day, time(8, 0))

        assert asyncio.run(scheduler.send_booking_reminders(now=now)) == 1
        assert {(n.user_id, n.type) for n in queue.drain()} == {
            (client_user.id, "reminder"),
            (consultant.user_id, "reminder"),
        }
        db.expire_all()
        assert db.get(Booking, booking.id).reminder_sent is True

        assert asyncio.run(scheduler.send_booking_reminders(now=now)) == 0
        assert queue.drain() == []

    def test_outside_window_is_skipped(self, session_factory, client_user, book, booking_day):
        book(client_user, at="10:00", status="confirmed")
        queue = NotificationQueue()
        scheduler = BookingScheduler(NotificationDispatcher(queue, session_factory), queue, session_factory)

        early = datetime.combine(booking_day, time(10, 0)) - timedelta(days=3)
        assert asyncio.run(scheduler.send_booking_reminders(now=early)) == 0

    def test_clock_defaults_to_utc(self):
        expected = datetime.now(timezone.utc).replace(tzinfo=None)

        assert abs(booking_clock_now("UTC") - expected) < timedelta(seconds=5)

    def test_clock_follows_configured_zone(self, monkeypatch):
        try:
            zone = ZoneInfo("America/New_York")
        except ZoneInfoNotFoundError:
            pytest.skip("no time zone database available")
        monkeypatch.setattr(config, "BOOKING_TIMEZONE", "America/New_York")

        expected = datetime.now(zone).replace(tzinfo=None)
        assert abs(booking_clock_now() - expected) < timedelta(seconds=5)
        assert booking_clock_now() < datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=3)


class TestWebSocket:
    def test_connects_with_valid_token(self, client, client_user):
        with client.websocket_connect(f"/ws/{create_access_token(client_user)}") as ws:
            assert ws.receive_json()["type"] == "connection"
            ws.send_text("ping")
            assert ws.receive_json() == {"type": "pong"}

    def test_rejects_bad_token(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/not-a-token") as ws:
                ws.receive_json()
