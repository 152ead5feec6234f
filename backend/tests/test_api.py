import os
import sys
from uuid import uuid4

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from timeswap.main import app

client = TestClient(app)


def _uid(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:8]}"


def _auth(user_id: str) -> dict:
    login = client.post("/auth/login", json={"user_id": user_id, "password": "timeswap-demo"})
    assert login.status_code == 200
    return {"Authorization": f"Bearer {login.json()['access_token']}"}


def _request_exchange(requestor: str, provider: str, start: str = "2026-07-06T10:00:00", end: str = "2026-07-06T12:00:00"):
    return client.post(
        "/exchanges",
        json={
            "requestor_id": requestor,
            "provider_id": provider,
            "title": "Spanish conversation",
            "interval": {"start": start, "end": end},
        },
        headers=_auth(requestor),
    )


def _notification_titles(user_id: str) -> list:
    response = client.get("/notifications", params={"user_id": user_id})
    assert response.status_code == 200
    return [item["title"] for item in response.json()]


def test_health_and_ready():
    assert client.get("/health").json()["status"] == "ok"
    ready = client.get("/ready")
    assert ready.status_code == 200
    assert ready.json()["status"] == "ready"


def test_auth_login_and_me():
    headers = _auth("admin")
    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json() == {"user_id": "admin", "is_admin": True}

    assert client.post("/auth/login", json={"user_id": "user_1", "password": "wrong"}).status_code == 401
    assert client.get("/auth/me").status_code == 401


def test_token_must_match_actor():
    provider = _uid("provider")
    response = client.post(
        "/exchanges",
        json={
            "requestor_id": "user_real",
            "provider_id": provider,
            "title": "Impersonation",
            "interval": {"start": "2026-07-06T10:00:00", "end": "2026-07-06T11:00:00"},
        },
        headers=_auth("user_other"),
    )
    assert response.status_code == 403


def test_exchange_flow_with_conflict_and_notifications():
    provider, alice, bob = _uid("provider"), _uid("alice"), _uid("bob")

    first = _request_exchange(alice, provider)
    assert first.status_code == 201
    first_id = first.json()["id"]
    assert first.json()["status"] == "requested"
    assert "New exchange request" in _notification_titles(provider)

    second = _request_exchange(bob, provider, start="2026-07-06T11:00:00", end="2026-07-06T13:00:00")
    second_id = second.json()["id"]

    accept = client.post(f"/exchanges/{first_id}/respond", json={"actor_user_id": provider, "decision": "accept"})
    assert accept.status_code == 200
    assert accept.json()["status"] == "accepted"
    assert "Exchange request accepted" in _notification_titles(alice)

    clash = client.post(f"/exchanges/{second_id}/respond", json={"actor_user_id": provider, "decision": "accept"})
    assert clash.status_code == 409
    assert clash.json()["detail"]["conflicting_ids"] == [first_id]

    committed = client.get(f"/availability/{provider}/committed")
    assert [item["id"] for item in committed.json()] == [first_id]

    assert client.post(f"/exchanges/{first_id}/confirm", json={"actor_user_id": alice}).status_code == 200
    repeat = client.post(f"/exchanges/{first_id}/confirm", json={"actor_user_id": alice})
    assert repeat.status_code == 200
    assert _notification_titles(provider).count("Completion confirmed") == 1

    done = client.post(f"/exchanges/{first_id}/confirm", json={"actor_user_id": provider})
    assert done.json()["status"] == "completed"
    assert "Exchange completed" in _notification_titles(alice)

    history = client.get(f"/exchanges/{first_id}/history", params={"user_id": alice})
    assert [entry["to_status"] for entry in history.json()] == ["requested", "accepted", "accepted", "completed"]

    listed = client.get("/exchanges", params={"user_id": provider, "role": "provider"})
    assert {item["id"] for item in listed.json()} == {first_id, second_id}


def test_exchange_error_mapping():
    provider, requestor = _uid("provider"), _uid("requestor")
    exchange_id = _request_exchange(requestor, provider).json()["id"]

    missing = client.post("/exchanges/ex_missing/respond", json={"actor_user_id": provider, "decision": "accept"})
    assert missing.status_code == 404

    stranger = client.post(f"/exchanges/{exchange_id}/respond", json={"actor_user_id": "stranger", "decision": "accept"})
    assert stranger.status_code == 403

    wrong_role = client.post(f"/exchanges/{exchange_id}/respond", json={"actor_user_id": requestor, "decision": "accept"})
    assert wrong_role.status_code == 403

    premature = client.post(f"/exchanges/{exchange_id}/start", json={"actor_user_id": provider})
    assert premature.status_code == 409

    bad_interval = _request_exchange(requestor, provider, start="2026-07-06T12:00:00", end="2026-07-06T10:00:00")
    assert bad_interval.status_code == 400

    assert client.get(f"/exchanges/{exchange_id}", params={"user_id": "stranger"}).status_code == 403
    assert client.get("/exchanges", params={"role": "owner"}).status_code == 400

    declined = client.post(f"/exchanges/{exchange_id}/respond", json={"actor_user_id": provider, "decision": "decline"})
    assert declined.json()["status"] == "declined"
    late_accept = client.post(f"/exchanges/{exchange_id}/respond", json={"actor_user_id": provider, "decision": "accept"})
    assert late_accept.status_code == 409


def test_availability_endpoints():
    provider = _uid("provider")
    headers = _auth(provider)

    rule = client.post(
        f"/availability/{provider}/weekly",
        json={"actor_user_id": provider, "day_of_week": 1, "start_time": "09:00", "end_time": "17:00"},
        headers=headers,
    )
    assert rule.status_code == 200
    block = client.post(
        f"/availability/{provider}/blocks",
        json={"actor_user_id": provider, "start": "2026-07-06T12:00:00", "end": "2026-07-06T13:00:00"},
        headers=headers,
    )
    assert block.status_code == 200

    slots = client.get(f"/availability/{provider}/slots", params={"date_from": "2026-07-06", "date_to": "2026-07-07"})
    assert slots.status_code == 200
    monday, tuesday = slots.json()
    assert monday["source"] == "weekly"
    assert [(s["start"][11:16], s["end"][11:16]) for s in monday["slots"]] == [("09:00", "12:00"), ("13:00", "17:00")]
    assert tuesday["source"] == "none"

    check = client.get(
        f"/availability/{provider}/check",
        params={"start": "2026-07-06T09:30:00", "end": "2026-07-06T11:30:00"},
    )
    assert check.json()["available"] is True

    bad_range = client.get(f"/availability/{provider}/slots", params={"date_from": "2026-07-07", "date_to": "2026-07-06"})
    assert bad_range.status_code == 400

    forbidden = client.post(
        f"/availability/{provider}/weekly",
        json={"actor_user_id": "intruder", "day_of_week": 2, "start_time": "09:00", "end_time": "17:00"},
    )
    assert forbidden.status_code == 403

    conflicts = client.post(
        f"/availability/{provider}/conflicts",
        json={"interval": {"start": "2026-07-06T09:00:00", "end": "2026-07-06T10:00:00"}},
    )
    assert conflicts.json() == {"conflict": False, "conflicting_ids": []}

    deleted = client.delete(
        f"/availability/{provider}/weekly/{rule.json()['id']}",
        params={"actor_user_id": provider},
        headers=headers,
    )
    assert deleted.status_code == 200
    assert client.get(f"/availability/{provider}/weekly").json() == []


def test_blocked_period_patch_over_http():
    provider = _uid("provider")
    headers = _auth(provider)
    block = client.post(
        f"/availability/{provider}/blocks",
        json={"actor_user_id": provider, "start": "2026-07-06T12:00:00", "end": "2026-07-06T13:00:00"},
        headers=headers,
    ).json()

    moved = client.patch(
        f"/availability/{provider}/blocks/{block['id']}",
        json={"actor_user_id": provider, "start": "2026-07-06T15:00:00", "end": "2026-07-06T16:00:00", "reason": "dentist"},
        headers=headers,
    )
    assert moved.status_code == 200
    assert moved.json()["start"].startswith("2026-07-06T15:00")
    assert client.get(f"/availability/{provider}/blocks").json() == [moved.json()]

    inverted = client.patch(
        f"/availability/{provider}/blocks/{block['id']}",
        json={"actor_user_id": provider, "end": "2026-07-06T14:00:00"},
        headers=headers,
    )
    assert inverted.status_code == 400
    missing = client.patch(
        f"/availability/{provider}/blocks/blk_missing",
        json={"actor_user_id": provider, "reason": "x"},
        headers=headers,
    )
    assert missing.status_code == 404
    intruder = client.patch(f"/availability/{provider}/blocks/{block['id']}", json={"actor_user_id": "intruder", "reason": "x"})
    assert intruder.status_code == 403


def test_dispute_flow_over_http():
    provider, requestor = _uid("provider"), _uid("requestor")
    exchange_id = _request_exchange(requestor, provider).json()["id"]
    client.post(f"/exchanges/{exchange_id}/respond", json={"actor_user_id": provider, "decision": "accept"})

    filed = client.post(
        f"/exchanges/{exchange_id}/disputes",
        json={"reporter_id": requestor, "reason": "Provider did not show up"},
    )
    assert filed.status_code == 201
    dispute_id = filed.json()["id"]
    assert "New disputed exchange" in _notification_titles("admin")
    assert "New disputed exchange" in _notification_titles("admin_2")

    duplicate = client.post(f"/exchanges/{exchange_id}/disputes", json={"reporter_id": provider, "reason": "Counter claim"})
    assert duplicate.status_code == 409

    exchange = client.get(f"/exchanges/{exchange_id}", params={"user_id": requestor}).json()
    assert exchange["disputed"] is True
    assert exchange["status"] == "accepted"

    assert client.get("/admin/disputes", params={"user_id": requestor}).status_code == 403
    listed = client.get("/admin/disputes", params={"user_id": "admin", "exchange_id": exchange_id})
    assert [item["id"] for item in listed.json()] == [dispute_id]

    no_notes = client.post(f"/admin/disputes/{dispute_id}/resolve", json={"admin_user_id": "admin", "admin_notes": ""})
    assert no_notes.status_code == 400
    not_admin = client.post(f"/admin/disputes/{dispute_id}/resolve", json={"admin_user_id": provider, "admin_notes": "x"})
    assert not_admin.status_code == 403

    resolved = client.post(
        f"/admin/disputes/{dispute_id}/resolve",
        json={"admin_user_id": "admin", "admin_notes": "Provider refunded the hours"},
    )
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "resolved"
    assert "Dispute resolution" in _notification_titles(requestor)
    assert client.get(f"/exchanges/{exchange_id}", params={"user_id": requestor}).json()["disputed"] is False


def test_booking_flow_over_http():
    host, guest, other_guest = _uid("host"), _uid("guest"), _uid("guest")
    property_id = _uid("prop")
    assert client.post(
        "/bookings/properties",
        json={"property_id": property_id, "host_user_id": host, "name": "Loft"},
    ).status_code == 200

    booking = client.post(
        "/bookings",
        json={
            "guest_user_id": guest,
            "property_id": property_id,
            "interval": {"start": "2026-08-10T15:00:00", "end": "2026-08-15T11:00:00"},
        },
    )
    assert booking.status_code == 201
    assert "New booking request" in _notification_titles(host)

    overlap = client.post(
        "/bookings",
        json={
            "guest_user_id": other_guest,
            "property_id": property_id,
            "interval": {"start": "2026-08-14T15:00:00", "end": "2026-08-18T11:00:00"},
        },
    )
    assert overlap.status_code == 409
    assert overlap.json()["detail"]["conflicting_ids"] == [booking.json()["id"]]

    missing = client.post(
        "/bookings",
        json={
            "guest_user_id": guest,
            "property_id": "prop_missing",
            "interval": {"start": "2026-08-10T15:00:00", "end": "2026-08-12T11:00:00"},
        },
    )
    assert missing.status_code == 404

    confirmed = client.post(
        f"/bookings/{booking.json()['id']}/status",
        json={"actor_user_id": host, "status": "confirmed"},
    )
    assert confirmed.json()["status"] == "confirmed"
    assert "Booking updated" in _notification_titles(guest)
    assert client.get("/bookings", params={"user_id": host, "role": "host"}).json()[0]["status"] == "confirmed"


def test_notification_mark_read():
    provider, requestor = _uid("provider"), _uid("requestor")
    _request_exchange(requestor, provider)

    notification = client.get("/notifications", params={"user_id": provider}).json()[0]
    marked = client.post(f"/notifications/{notification['id']}/read", params={"user_id": provider})
    assert marked.status_code == 200
    assert marked.json()["read"] is True
    assert client.get("/notifications", params={"user_id": provider, "unread_only": True}).json() == []
    assert client.post(f"/notifications/{notification['id']}/read", params={"user_id": requestor}).status_code == 404
