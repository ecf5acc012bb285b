import asyncio
import os
import sys

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servmatch.deps import Services, get_services
from servmatch.main import app
from servmatch.models import Location, ProviderProfile
from servmatch.services.category_policy import DEFAULT_CATEGORIES
from servmatch.services.record_store import SqliteRecordStore


class NoPush:
    def send(self, tokens, title, body, data):
        return []


@pytest.fixture
def services(tmp_path):
    store = SqliteRecordStore(str(tmp_path / "api.sqlite3"), seed_categories=DEFAULT_CATEGORIES)
    services = Services(store, push_sender=NoPush(), await_follow_up=True)

    async def seed():
        await store.upsert_provider(
            ProviderProfile(user_id="plumber_near", full_name="Pat Pipes", skills=["plumbing"], location=Location(lat=0, lng=0.01), rating=4.8, review_count=20)
        )
        await store.upsert_provider(
            ProviderProfile(user_id="plumber_far", full_name="Fran Faucet", skills=["plumbing"], location=Location(lat=0, lng=1), rating=4.9, review_count=5)
        )
        await store.upsert_provider(ProviderProfile(user_id="dev", full_name="Dee Dev", skills=["web-development"]))

    asyncio.run(seed())
    app.dependency_overrides[get_services] = lambda: services
    yield services
    app.dependency_overrides.clear()


@pytest.fixture
def client(services):
    return TestClient(app)


def _create_request(client, **overrides):
    payload = {
        "buyer_id": "buyer_1",
        "category_id": "plumbing",
        "title": "Kitchen sink leaking",
        "description": "Drips under the cabinet",
        "budget_min": 80,
        "budget_max": 200,
        "location": {"lat": 0, "lng": 0, "city": "Quito"},
    }
    payload.update(overrides)
    response = client.post("/requests", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


def test_health_ok(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_categories_list_seeded(client):
    response = client.get("/categories")
    assert response.status_code == 200
    by_id = {item["id"]: item for item in response.json()}
    assert by_id["plumbing"]["match_radius_km"] == 5
    assert by_id["translation"]["match_radius_km"] is None


def test_golden_path_request_proposals_accept(client):
    created = _create_request(client)
    request_id = created["request"]["id"]
    assert created["notified_providers"] == 1

    near_inbox = client.get("/notifications", params={"user_id": "plumber_near"}).json()
    assert [item["title"] for item in near_inbox] == ["New Service Request!"]
    assert client.get("/notifications", params={"user_id": "plumber_far"}).json() == []

    opportunities = client.get("/opportunities", params={"provider_id": "plumber_near"})
    assert [item["id"] for item in opportunities.json()] == [request_id]

    near_bid = client.post(
        f"/requests/{request_id}/proposals",
        json={"provider_id": "plumber_near", "price": 150, "timeline_estimate": "2 days"},
    )
    assert near_bid.status_code == 200
    assert near_bid.json()["outside_budget"] is False
    far_bid = client.post(f"/requests/{request_id}/proposals", json={"provider_id": "plumber_far", "price": 400})
    assert far_bid.json()["outside_budget"] is True

    duplicate = client.post(f"/requests/{request_id}/proposals", json={"provider_id": "plumber_near", "price": 120})
    assert duplicate.status_code == 409
    own_bid = client.post(f"/requests/{request_id}/proposals", json={"provider_id": "buyer_1", "price": 120})
    assert own_bid.status_code == 403

    buyer_inbox = client.get("/notifications", params={"user_id": "buyer_1", "unread_only": True}).json()
    assert {item["type"] for item in buyer_inbox} == {"proposal"}
    assert len(buyer_inbox) == 2

    proposal_id = near_bid.json()["proposal"]["id"]
    forbidden = client.post(f"/proposals/{proposal_id}/accept", json={"actor_user_id": "plumber_far"})
    assert forbidden.status_code == 403

    accepted = client.post(f"/proposals/{proposal_id}/accept", json={"actor_user_id": "buyer_1"})
    assert accepted.status_code == 200, accepted.text
    body = accepted.json()
    assert body["request"]["status"] == "in_progress"
    assert body["rejected_proposal_ids"] == [far_bid.json()["proposal"]["id"]]
    assert body["conversation_id"]
    assert body["partial_failures"] == []

    again = client.post(f"/proposals/{proposal_id}/accept", json={"actor_user_id": "buyer_1"})
    assert again.status_code == 409

    detail = client.get(f"/requests/{request_id}").json()
    assert {item["status"] for item in detail["proposals"]} == {"accepted", "rejected"}

    reconcile = client.post(f"/requests/{request_id}/reconcile")
    assert reconcile.status_code == 200
    assert reconcile.json()["changed"] is False
    assert reconcile.json()["conversation_id"] == body["conversation_id"]

    completed = client.post(f"/requests/{request_id}/complete", json={"actor_user_id": "buyer_1"})
    assert completed.json()["status"] == "completed"
    cancelled = client.post(f"/requests/{request_id}/cancel", json={"actor_user_id": "buyer_1"})
    assert cancelled.status_code == 409


def test_edit_withdraw_and_cancel(client):
    created = _create_request(client, category_id="web-development", location=None, title="Landing page")
    request_id = created["request"]["id"]

    edited = client.patch(f"/requests/{request_id}", json={"actor_user_id": "buyer_1", "budget_max": 300})
    assert edited.status_code == 200
    assert edited.json()["budget_max"] == 300
    bad_budget = client.patch(f"/requests/{request_id}", json={"actor_user_id": "buyer_1", "budget_min": 500})
    assert bad_budget.status_code == 400
    not_owner = client.patch(f"/requests/{request_id}", json={"actor_user_id": "dev", "title": "Mine now"})
    assert not_owner.status_code == 403

    bid = client.post(f"/requests/{request_id}/proposals", json={"provider_id": "dev", "price": 250}).json()
    wrong_provider = client.post(f"/proposals/{bid['proposal']['id']}/withdraw", json={"actor_user_id": "buyer_1"})
    assert wrong_provider.status_code == 403
    withdrawn = client.post(f"/proposals/{bid['proposal']['id']}/withdraw", json={"actor_user_id": "dev"})
    assert withdrawn.json()["status"] == "withdrawn"

    cancelled = client.post(f"/requests/{request_id}/cancel", json={"actor_user_id": "buyer_1"})
    assert cancelled.json()["status"] == "cancelled"
    locked = client.patch(f"/requests/{request_id}", json={"actor_user_id": "buyer_1", "title": "Too late"})
    assert locked.status_code == 409


def test_edit_rejects_null_for_required_fields(client):
    created = _create_request(client, deadline="2026-12-01")
    request_id = created["request"]["id"]

    for name in ("title", "description", "budget_min", "budget_max"):
        response = client.patch(f"/requests/{request_id}", json={"actor_user_id": "buyer_1", name: None})
        assert response.status_code == 422, name

    unchanged = client.get(f"/requests/{request_id}").json()["request"]
    assert unchanged["title"] == "Kitchen sink leaking"
    assert unchanged["budget_min"] == 80

    cleared = client.patch(f"/requests/{request_id}", json={"actor_user_id": "buyer_1", "deadline": None, "location": None})
    assert cleared.status_code == 200
    assert cleared.json()["deadline"] is None
    assert cleared.json()["location"] is None


def test_unknown_ids_and_categories(client):
    assert client.get("/requests/req_missing").status_code == 404
    assert client.post("/proposals/prp_missing/accept", json={"actor_user_id": "buyer_1"}).status_code == 404
    unknown = client.post(
        "/requests",
        json={"buyer_id": "buyer_1", "category_id": "juggling", "title": "Party act", "budget_min": 1, "budget_max": 2},
    )
    assert unknown.status_code == 404
    bad_coords = client.get("/opportunities", params={"provider_id": "dev", "lat": 95, "lng": 0})
    assert bad_coords.status_code in {400, 422}


def test_providers_sorted_by_rating(client):
    response = client.get("/providers", params={"category_id": "plumbing"})
    assert [item["user_id"] for item in response.json()] == ["plumber_far", "plumber_near"]


def test_notifications_read_flow(client):
    _create_request(client)
    inbox = client.get("/notifications", params={"user_id": "plumber_near"}).json()
    notification_id = inbox[0]["id"]

    read = client.post(f"/notifications/{notification_id}/read", params={"user_id": "plumber_near"})
    assert read.status_code == 200
    assert read.json()["unread_count"] == 0
    missing = client.post("/notifications/ntf_missing/read", params={"user_id": "plumber_near"})
    assert missing.status_code == 404

    _create_request(client, title="Second leak")
    read_all = client.post("/notifications/read-all", params={"user_id": "plumber_near"})
    assert read_all.json()["updated"] == 1

    registered = client.post("/notifications/register-device", json={"user_id": "plumber_near", "device_token": "tok_1"})
    assert registered.json() == {"status": "ok"}
