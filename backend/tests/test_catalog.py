from datetime import time

import pytest
import redis

from cache import cache
from catalog import create_service, ensure_consultant_profile, get_consultant, list_consultants, list_services
from errors import Forbidden
from models import AvailabilitySlot, Booking, Consultant, Service, User
from schemas import ServiceCreate


def test_service_accepts_legacy_field_names():
    data = ServiceCreate.model_validate({
        "title": "Pitch Review",
        "description": "Deck feedback",
        "pricePerSession": 90,
        "sessionDuration": 45,
        "specialty": "Startups",
    })

    assert (data.name, data.price, data.duration, data.category) == ("Pitch Review", 90.0, 45, "Startups")


def test_consultant_profile_created_on_first_write(db, consultant_user):
    service = create_service(db, consultant_user, ServiceCreate(
        name="Intro Call", description="Short intro", price=0, duration=15,
    ))

    profile = db.query(Consultant).filter(Consultant.user_id == consultant_user.id).one()
    assert service.consultant_id == profile.id
    assert service.category == "General"
    assert profile.specialty == "General Consulting"


def test_clients_cannot_own_profiles(db, client_user):
    with pytest.raises(Forbidden):
        ensure_consultant_profile(db, client_user)


def test_consultant_name_is_read_from_user(db, consultant, service):
    user = db.get(User, consultant.user_id)
    user.name = "Dana Renamed"
    db.commit()

    summaries = list_consultants(db)
    assert [c.name for c in summaries] == ["Dana Renamed"]
    assert [s.id for s in summaries[0].services] == [service.id]


def test_inactive_services_hidden_from_listings(db, consultant, service):
    service.is_active = False
    db.commit()

    assert list_services(db) == []
    assert get_consultant(db, consultant.id).services == []


def test_consultants_ordered_by_rating(db, consultant, other_consultant):
    other_consultant.average_rating = 4.8
    consultant.average_rating = 3.2
    db.commit()

    assert [c.id for c in list_consultants(db)] == [other_consultant.id, consultant.id]
    assert [c.id for c in list_consultants(db, specialty="tax")] == [other_consultant.id]


class TestServiceApi:
    def test_create_with_legacy_names(self, client, consultant_user, auth_headers):
        response = client.post("/api/services", json={
            "title": "Pitch Review",
            "description": "Deck feedback",
            "pricePerSession": 90,
            "sessionDuration": 45,
        }, headers=auth_headers(consultant_user))

        assert response.status_code == 201
        body = response.json()
        assert body["name"] == "Pitch Review"
        assert body["price"] == 90.0
        assert body["duration"] == 45
        assert body["is_active"] is True

    def test_client_cannot_create(self, client, client_user, auth_headers):
        response = client.post("/api/services", json={
            "name": "Nope", "description": "x", "price": 1, "duration": 30,
        }, headers=auth_headers(client_user))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_invalid_payload(self, client, consultant_user, auth_headers):
        response = client.post("/api/services", json={
            "name": "Free forever", "description": "x", "price": -5, "duration": 30,
        }, headers=auth_headers(consultant_user))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_only_owner_or_admin_updates(self, client, db, service, other_consultant, admin_user, auth_headers):
        stranger = db.get(User, other_consultant.user_id)

        response = client.put(f"/api/services/{service.id}", json={"price": 1}, headers=auth_headers(stranger))
        assert response.status_code == 403

        response = client.put(f"/api/services/{service.id}", json={"price": 150}, headers=auth_headers(admin_user))
        assert response.status_code == 200
        assert response.json()["price"] == 150.0

    def test_soft_delete_keeps_booked_service(self, client, db, client_user, consultant_user, service, book, auth_headers):
        booking = book(client_user)

        response = client.delete(f"/api/services/{service.id}", headers=auth_headers(consultant_user))
        assert response.status_code == 200

        assert client.get(f"/api/services/{service.id}").status_code == 404
        assert client.get("/api/services").json() == []
        db.expire_all()
        assert db.get(Booking, booking.id).service.name == "Strategy Session"
        assert db.get(Service, service.id).is_active is False

    def test_grouped_by_category(self, client, db, consultant, service):
        db.add(Service(consultant_id=consultant.id, name="Tax Prep", description="Returns", price=200,
                       duration=90, category="Finance"))
        db.commit()

        groups = {g["category"]: [s["name"] for s in g["services"]] for g in client.get("/api/services/grouped").json()}

        assert groups == {"Business": ["Strategy Session"], "Finance": ["Tax Prep"]}


class TestCatalogCache:
    def test_reads_are_cached_until_a_write(self, client, db, fake_redis, consultant, consultant_user, service, auth_headers):
        first = client.get("/api/services")
        assert first.status_code == 200
        assert "cache:/api/services" in fake_redis.store

        # A direct database change is invisible while the cached copy lives
        db.add(Service(consultant_id=consultant.id, name="Hidden", description="x", price=1, duration=30))
        db.commit()
        assert client.get("/api/services").json() == first.json()

        response = client.post("/api/services", json={
            "name": "Workshop", "description": "Half day", "price": 400, "duration": 240,
        }, headers=auth_headers(consultant_user))
        assert response.status_code == 201
        assert "cache:/api/services" not in fake_redis.store

        names = [s["name"] for s in client.get("/api/services").json()]
        assert names == ["Strategy Session", "Hidden", "Workshop"]

    def test_query_string_is_part_of_the_key(self, client, fake_redis, service):
        client.get("/api/services", params={"category": "Business"})
        client.get("/api/consultants")

        assert "cache:/api/services?category=Business" in fake_redis.store
        assert "cache:/api/consultants" in fake_redis.store

    def test_booking_invalidates_consultant_reads(
        self, client, fake_redis, client_user, consultant, service, booking_day, auth_headers
    ):
        client.get(f"/api/consultants/{consultant.id}")
        assert f"cache:/api/consultants/{consultant.id}" in fake_redis.store

        response = client.post("/api/bookings/book", json={
            "consultantId": consultant.id, "serviceId": service.id,
            "date": booking_day.isoformat(), "time": "10:00",
        }, headers=auth_headers(client_user))
        assert response.status_code == 201

        assert fake_redis.store == {}
        slots = client.get(f"/api/consultants/{consultant.id}").json()["slots"]
        assert [(s["start_time"], s["is_booked"]) for s in slots] == [("10:00:00", True)]

    def test_failed_invalidation_bypasses_cache_until_cleared(
        self, client, db, fake_redis, monkeypatch, consultant, consultant_user, service, auth_headers
    ):
        client.get("/api/services")
        real_delete = fake_redis.delete

        def broken_delete(*keys):
            raise redis.ConnectionError("connection reset")

        monkeypatch.setattr(fake_redis, "delete", broken_delete)
        response = client.post("/api/services", json={
            "name": "Workshop", "description": "Half day", "price": 400, "duration": 240,
        }, headers=auth_headers(consultant_user))
        assert response.status_code == 201
        assert cache.pending_invalidations

        # The stale entry is still in Redis but is not served
        assert "cache:/api/services" in fake_redis.store
        names = [s["name"] for s in client.get("/api/services").json()]
        assert names == ["Strategy Session", "Workshop"]

        monkeypatch.setattr(fake_redis, "delete", real_delete)
        assert [s["name"] for s in client.get("/api/services").json()] == names
        assert not cache.pending_invalidations
        assert "cache:/api/services" in fake_redis.store


class TestAvailabilityApi:
    def test_publish_skips_duplicates(self, client, consultant_user, consultant, booking_day, auth_headers):
        day = booking_day.isoformat()
        response = client.post("/api/consultants/me/availability", json={"slots": [
            {"date": day, "startTime": "09:00", "endTime": "10:00"},
            {"date": day, "startTime": "09:00", "endTime": "10:00"},
            {"date": day, "start_time": "11:00", "end_time": "12:00"},
        ]}, headers=auth_headers(consultant_user))

        assert response.status_code == 201
        assert [s["start_time"] for s in response.json()] == ["09:00:00", "11:00:00"]

    def test_end_must_follow_start(self, client, consultant_user, booking_day, auth_headers):
        response = client.post("/api/consultants/me/availability", json={"slots": [
            {"date": booking_day.isoformat(), "startTime": "10:00", "endTime": "09:00"},
        ]}, headers=auth_headers(consultant_user))

        assert response.status_code == 400

    def test_booked_slot_cannot_be_removed(
        self, client, db, client_user, consultant_user, consultant, book, booking_day, auth_headers
    ):
        free = AvailabilitySlot(consultant_id=consultant.id, date=booking_day, start_time=time(8, 0), end_time=time(9, 0))
        db.add(free)
        db.commit()
        booking = book(client_user)

        response = client.delete(f"/api/consultants/me/availability/{booking.slot_id}", headers=auth_headers(consultant_user))
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "slot_booked"

        response = client.delete(f"/api/consultants/me/availability/{free.id}", headers=auth_headers(consultant_user))
        assert response.status_code == 200
        response = client.delete(f"/api/consultants/me/availability/{free.id}", headers=auth_headers(consultant_user))
        assert response.status_code == 404

    def test_profile_update(self, client, consultant_user, auth_headers):
        response = client.put("/api/consultants/me", json={"specialization": "Marketing", "description": "Brand work"},
                              headers=auth_headers(consultant_user))

        assert response.status_code == 200
        assert response.json()["specialty"] == "Marketing"
        assert response.json()["name"] == "Dana Consultant"


def test_unknown_consultant_is_404(client):
    response = client.get("/api/consultants/999")

    assert response.status_code == 404
    assert response.json() == {"error": {"code": "not_found", "message": "Consultant not found"}}
