from datetime import datetime, timezone

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import dashboard
import database
from config import settings
from main import app
from maps import MapsClient, get_maps_client

SUPERADMIN_EMAIL = "admin@sachioexpress.com"
SUPERADMIN_PASSWORD = "correct-horse"
STAFF_EMAIL = "staff@sachioexpress.com"
STAFF_PASSWORD = "staff-pass"

# hashing is slow; do it once per run
SUPERADMIN_HASH = auth.hash_password(SUPERADMIN_PASSWORD)
STAFF_HASH = auth.hash_password(STAFF_PASSWORD)

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)

LEKKI = {"lat": 6.4474, "lng": 3.4723, "address": "12 Admiralty Way, Lekki, Lagos"}


def fake_maps(request: httpx.Request) -> httpx.Response:
    params = request.url.params
    if request.url.path.endswith("/geocode/json"):
        if params.get("address") == "nowhere at all":
            return httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []})
        if "address" in params:
            return httpx.Response(
                200,
                json={
                    "status": "OK",
                    "results": [
                        {
                            "formatted_address": LEKKI["address"],
                            "geometry": {"location": {"lat": LEKKI["lat"], "lng": LEKKI["lng"]}},
                        }
                    ],
                },
            )
        return httpx.Response(200, json={"status": "OK", "results": [{"formatted_address": "Pinned Street, Lagos"}]})
    if request.url.path.endswith("/directions/json"):
        return httpx.Response(
            200,
            json={
                "status": "OK",
                "routes": [
                    {
                        "legs": [
                            {
                                "distance": {"text": "0.1 km"},
                                "duration": {"text": "1 min"},
                                "steps": [
                                    {
                                        "start_location": {"lat": 6.4470, "lng": 3.4720},
                                        "end_location": {"lat": 6.4474, "lng": 3.4723},
                                    }
                                ],
                            }
                        ]
                    }
                ],
            },
        )
    return httpx.Response(404)


@pytest.fixture(autouse=True)
def store(monkeypatch):
    mock_db = mongomock.MongoClient(tz_aware=True).sachio
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(dashboard, "sync_operational_health", dashboard.OperationsSync())
    monkeypatch.setattr(settings, "superadmin_accounts", f"{SUPERADMIN_EMAIL}:{SUPERADMIN_HASH}")
    monkeypatch.setattr(settings, "jwt_secret", "test-secret")
    monkeypatch.setattr(settings, "admin_notify_emails", [])
    return mock_db


@pytest.fixture
def maps_client():
    return MapsClient("test-key", transport=httpx.MockTransport(fake_maps))


@pytest.fixture
def client(maps_client):
    app.dependency_overrides[get_maps_client] = lambda: maps_client
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {auth.create_token(SUPERADMIN_EMAIL, auth.ROLE_SUPERADMIN)}"}


@pytest.fixture
def staff_account(store):
    store.staffAccounts.insert_one(
        {"email": STAFF_EMAIL, "name": "Ada", "role": "staff", "blocked": False, "passwordHash": STAFF_HASH}
    )
    return STAFF_EMAIL


@pytest.fixture
def staff_headers(staff_account):
    return {"Authorization": f"Bearer {auth.create_token(staff_account, auth.ROLE_STAFF)}"}
