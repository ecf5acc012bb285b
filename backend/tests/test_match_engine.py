import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servmatch.models import Category, Location, ProviderProfile, ServiceRequest
from servmatch.services.match_engine import MatchEngine
from servmatch.services.record_store import SqliteRecordStore

PLUMBING = Category(id="plumbing", name="Plumbing", match_radius_km=5)
WEB = Category(id="web-development", name="Web Development", match_radius_km=None)
CATEGORIES = {PLUMBING.id: PLUMBING, WEB.id: WEB}


def _request(request_id, category_id="plumbing", location=None, status="open", buyer_id="buyer_1", created_at="2026-01-01T00:00:00+00:00", **extra):
    return ServiceRequest(
        id=request_id,
        buyer_id=buyer_id,
        category_id=category_id,
        title=extra.pop("title", f"Job {request_id}"),
        budget_min=50,
        budget_max=150,
        location=location,
        status=status,
        created_at=created_at,
        **extra,
    )


def _provider(user_id, skills=("plumbing",), location=None, **extra):
    return ProviderProfile(user_id=user_id, full_name=extra.pop("full_name", user_id), skills=list(skills), location=location, **extra)


def _engine(store=None):
    return MatchEngine(store)


def test_recipients_filter_on_skill_and_radius():
    request = _request("r1", location=Location(lat=0, lng=0))
    providers = [
        _provider("near", location=Location(lat=0, lng=0.03)),
        _provider("far", location=Location(lat=0, lng=0.06)),
        _provider("unlocated"),
        _provider("web_only", skills=("web-development",), location=Location(lat=0, lng=0)),
    ]
    recipients = _engine().find_eligible_notification_recipients(request, providers, CATEGORIES)
    assert recipients == ["near", "unlocated"]


def test_recipients_exclude_the_buyer():
    request = _request("r1", category_id="web-development", buyer_id="dual_role")
    providers = [_provider("dual_role", skills=("web-development",)), _provider("other", skills=("web-development",))]
    assert _engine().find_eligible_notification_recipients(request, providers, CATEGORIES) == ["other"]


def test_recipients_are_idempotent_and_deduplicated():
    request = _request("r1", category_id="web-development")
    providers = [_provider("b", skills=("web-development",)), _provider("a", skills=("web-development",))]
    engine = _engine()
    first = engine.find_eligible_notification_recipients(request, providers + providers, CATEGORIES)
    second = engine.find_eligible_notification_recipients(request, list(reversed(providers)), CATEGORIES)
    assert first == second == ["a", "b"]


def test_unknown_category_yields_no_recipients():
    request = _request("r1", category_id="retired-category")
    providers = [_provider("p1", skills=("retired-category",))]
    assert _engine().find_eligible_notification_recipients(request, providers, CATEGORIES) == []


def test_opportunities_filter_status_skill_radius_and_owner():
    provider = _provider("p1", skills=("plumbing", "web-development"), location=Location(lat=0, lng=0))
    requests = [
        _request("near", location=Location(lat=0, lng=0.02), created_at="2026-01-01T00:00:00+00:00"),
        _request("far", location=Location(lat=0, lng=0.5)),
        _request("online", category_id="web-development", status="in_progress", created_at="2026-01-03T00:00:00+00:00"),
        _request("closed", category_id="web-development", status="completed"),
        _request("mine", category_id="web-development", buyer_id="p1"),
        _request("orphan", category_id="retired-category"),
    ]
    result = _engine().find_opportunities_for_provider(provider, requests, CATEGORIES)
    assert [item.id for item in result] == ["online", "near"]


def test_opportunities_text_search_covers_title_description_and_location():
    provider = _provider("p1", skills=("web-development",))
    requests = [
        _request("a", category_id="web-development", title="Shopify store"),
        _request("b", category_id="web-development", description="Need a shopify theme fix"),
        _request("c", category_id="web-development", location=Location(city="Shopify Falls")),
        _request("d", category_id="web-development", title="Landing page"),
    ]
    result = _engine().find_opportunities_for_provider(provider, requests, CATEGORIES, query="  SHOPIFY ")
    assert {item.id for item in result} == {"a", "b", "c"}


def test_viewer_location_overrides_base_location():
    provider = _provider("p1", location=Location(lat=10, lng=10))
    requests = [_request("r1", location=Location(lat=0, lng=0))]
    engine = _engine()
    assert engine.find_opportunities_for_provider(provider, requests, CATEGORIES) == []
    found = engine.find_opportunities_for_provider(
        provider, requests, CATEGORIES, viewer_location=Location(lat=0, lng=0.01)
    )
    assert [item.id for item in found] == ["r1"]


def test_providers_for_buyer_sorted_by_rating():
    providers = [
        _provider("low", rating=3.5, review_count=40),
        _provider("top", rating=4.9, review_count=10),
        _provider("top_more_reviews", rating=4.9, review_count=90),
        _provider("web", skills=("web-development",), rating=5.0),
    ]
    result = _engine().find_providers_for_buyer(providers, category_id="plumbing")
    assert [item.user_id for item in result] == ["top_more_reviews", "top", "low"]


class FailingLocation:
    async def get_current_location(self):
        raise PermissionError("location permission denied")


class FixedLocation:
    def __init__(self, location):
        self.location = location

    async def get_current_location(self):
        return self.location


def _seeded_store(tmp_path):
    store = SqliteRecordStore(str(tmp_path / "match.sqlite3"), seed_categories=[PLUMBING, WEB])
    return store


def test_browse_disables_radius_when_location_lookup_fails(tmp_path):
    store = _seeded_store(tmp_path)
    engine = MatchEngine(store)
    provider = _provider("p1", location=Location(lat=0, lng=0))

    async def scenario():
        await store.insert_request(buyer_id="buyer_1", category_id="plumbing", title="Leaky tap", budget_min=10, budget_max=20, location=Location(lat=0, lng=1))
        assert await engine.browse_opportunities(provider) == []
        failed = await engine.browse_opportunities(provider, FailingLocation())
        assert [item.title for item in failed] == ["Leaky tap"]
        near = await engine.browse_opportunities(provider, FixedLocation(Location(lat=0, lng=1.01)))
        assert [item.title for item in near] == ["Leaky tap"]

    asyncio.run(scenario())


def test_notify_new_request_stores_one_notification_per_recipient(tmp_path):
    store = _seeded_store(tmp_path)
    engine = MatchEngine(store)

    async def scenario():
        await store.upsert_provider(_provider("p_near", location=Location(lat=0, lng=0.01)))
        await store.upsert_provider(_provider("p_far", location=Location(lat=0, lng=1)))
        await store.upsert_provider(_provider("buyer_1", location=Location(lat=0, lng=0)))
        request = await store.insert_request(
            buyer_id="buyer_1", category_id="plumbing", title="Burst pipe", budget_min=100, budget_max=250.5, location=Location(lat=0, lng=0)
        )
        result = await engine.notify_new_request(request)
        assert result.recipients == ["p_near"]
        assert result.notified == ["p_near"]
        assert result.failed == []

        inbox = await store.list_notifications("p_near")
        assert len(inbox) == 1
        assert inbox[0].title == "New Service Request!"
        assert inbox[0].body == '"Burst pipe" in Plumbing - Budget: 100-250.5'
        assert inbox[0].payload["request_id"] == request.id
        assert await store.list_notifications("buyer_1") == []

    asyncio.run(scenario())
