import asyncio
import importlib
import os
import sqlite3
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servmatch.errors import ConflictError, NotFoundError, TransportError
from servmatch.models import Category
from servmatch.services.record_store import SqliteRecordStore


def _reload_config():
    sys.modules.pop("servmatch.config", None)
    return importlib.import_module("servmatch.config")


@pytest.fixture(autouse=True)
def _restore_config():
    yield
    _reload_config()


def test_category_ttl_invalid_env_falls_back(monkeypatch):
    monkeypatch.setenv("CATEGORY_CACHE_TTL_SECONDS", "five minutes")
    assert _reload_config().CATEGORY_CACHE_TTL_SECONDS == 300


def test_local_radius_non_positive_env_falls_back(monkeypatch):
    monkeypatch.setenv("LOCAL_RADIUS_KM", "-1")
    assert _reload_config().LOCAL_RADIUS_KM == 2.0


def test_opportunity_statuses_ignore_unknown_values(monkeypatch):
    monkeypatch.setenv("OPPORTUNITY_STATUSES", "open, archived")
    assert _reload_config().OPPORTUNITY_STATUSES == ("open",)
    monkeypatch.setenv("OPPORTUNITY_STATUSES", "archived")
    assert _reload_config().OPPORTUNITY_STATUSES == ("open", "in_progress")


def test_await_follow_up_env_flag(monkeypatch):
    monkeypatch.setenv("AWAIT_FOLLOW_UP", "false")
    assert _reload_config().AWAIT_FOLLOW_UP is False


def test_store_handles_invalid_json_columns(tmp_path):
    db_path = tmp_path / "store.sqlite3"
    store = SqliteRecordStore(str(db_path))
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute(
            """
            INSERT INTO providers (user_id, full_name, skills_json, location_json, rating, review_count, hourly_rate, bio, is_verified)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            ("p1", "Broken Row", "{bad", "42", 4.0, 3, None, "", 0),
        )
        conn.commit()

    provider = asyncio.run(store.get_provider("p1"))
    assert provider.skills == []
    assert provider.location is None


def test_store_maps_unique_violations_to_conflict(tmp_path):
    store = SqliteRecordStore(str(tmp_path / "store.sqlite3"), seed_categories=[Category(id="cleaning", name="Cleaning", match_radius_km=30)])

    async def scenario():
        request = await store.insert_request(buyer_id="b1", category_id="cleaning", title="Deep clean", budget_min=10, budget_max=20)
        await store.insert_proposal(request_id=request.id, provider_id="p1", price=15)
        with pytest.raises(ConflictError):
            await store.insert_proposal(request_id=request.id, provider_id="p1", price=12)
        with pytest.raises(ConflictError):
            await store.insert_category(Category(id="cleaning", name="Cleaning again"))
        with pytest.raises(NotFoundError):
            await store.update_request_status("req_missing", "cancelled")

    asyncio.run(scenario())


def test_seeding_is_idempotent(tmp_path):
    db_path = str(tmp_path / "store.sqlite3")
    categories = [Category(id="cleaning", name="Cleaning", match_radius_km=30)]
    SqliteRecordStore(db_path, seed_categories=categories)
    store = SqliteRecordStore(db_path, seed_categories=categories)
    assert [item.id for item in asyncio.run(store.list_categories())] == ["cleaning"]


def test_store_reports_sqlite_failures_as_transport_errors(tmp_path):
    db_path = tmp_path / "store.sqlite3"
    store = SqliteRecordStore(str(db_path))
    with sqlite3.connect(str(db_path)) as conn:
        conn.execute("DROP TABLE notifications")
        conn.commit()

    with pytest.raises(TransportError):
        asyncio.run(store.list_notifications("u1"))
