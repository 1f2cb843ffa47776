import asyncio
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import auth
import database
import main
from config import settings
from conftest import LEKKI, STAFF_EMAIL, STAFF_PASSWORD, SUPERADMIN_EMAIL, SUPERADMIN_PASSWORD
from main import BLOCKED_MESSAGE, app
from maps import MapsClient, get_maps_client


def login(client, email, password):
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def rental(store):
    store.orders.insert_one(
        {"_id": "o1", "type": "rent", "status": "waiting_admin_price", "customerName": "Halima O.", "createdAt": database.utcnow()}
    )
    return "o1"


@pytest.fixture
def driver(store):
    store.users.insert_one({"_id": "d1", "name": "Musa", "email": "musa@sachioexpress.com", "isDriver": True})
    return "d1"


# ===================== Public =====================
def test_root(client):
    assert client.get("/").json() == {"message": "Sachio Operations Dashboard API running"}


def test_health_reports_database(client, store):
    store.orders.insert_one({"status": "processing"})
    body = client.get("/test").json()
    assert body["database"] == "✅ Available"
    assert "orders" in body["collections"]


def test_schema_lists_collections(client):
    assert "driverLocations" in client.get("/schema").json()["collections"]


# ===================== Auth =====================
def test_superadmin_login_and_me(client):
    headers = login(client, SUPERADMIN_EMAIL, SUPERADMIN_PASSWORD)
    assert client.get("/auth/me", headers=headers).json() == {"email": SUPERADMIN_EMAIL, "role": "superadmin"}


def test_login_failures(client, staff_account):
    response = client.post("/auth/login", json={"email": SUPERADMIN_EMAIL, "password": "wrong"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password."

    response = client.post("/auth/login", json={"email": "nobody@sachioexpress.com", "password": "x"})
    assert response.status_code == 401
    assert response.json()["detail"] == "You are not authorized as staff."


def test_requests_need_a_bearer_token(client):
    assert client.get("/orders").status_code == 401
    assert client.get("/orders", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_staff_session_lifecycle(client, store, staff_account, admin_headers):
    headers = login(client, STAFF_EMAIL, STAFF_PASSWORD)
    assert client.post("/auth/heartbeat", headers=headers).status_code == 200

    sessions = client.get("/staff/sessions", headers=admin_headers).json()
    assert [(s["email"], s["online"]) for s in sessions] == [(STAFF_EMAIL, True)]

    client.post("/auth/logout", headers=headers)
    assert store.staffSessions.find_one({"_id": STAFF_EMAIL})["status"] == "offline"


def test_blocked_staff_lose_access_on_next_request(client, store, staff_headers, admin_headers):
    assert client.get("/orders", headers=staff_headers).status_code == 200

    account_id = str(store.staffAccounts.find_one({"email": STAFF_EMAIL})["_id"])
    response = client.post(f"/staff/accounts/{account_id}/toggle-blocked", headers=admin_headers)
    assert response.json() == {"blocked": True}

    response = client.get("/orders", headers=staff_headers)
    assert response.status_code == 403


def test_admin_endpoints_need_superadmin(client, staff_headers):
    assert client.get("/users", headers=staff_headers).status_code == 403
    assert client.get("/staff/accounts", headers=staff_headers).status_code == 403


# ===================== Orders: status & price =====================
def test_rental_price_flow(client, store, rental, admin_headers):
    # status edits are refused before payment and nothing is written
    response = client.put(f"/orders/{rental}/status", json={"status": "dispatched"}, headers=admin_headers)
    assert response.status_code == 409
    assert store.orders.find_one({"_id": rental})["status"] == "waiting_admin_price"

    response = client.post(f"/orders/{rental}/price", json={"amount": 50000}, headers=admin_headers)
    assert response.status_code == 200

    doc = store.orders.find_one({"_id": rental})
    assert doc["amount"] == 50000
    assert doc["price"] == 50000
    assert doc["status"] == "price_set"
    assert doc["paymentStatus"] == "awaiting_payment"
    assert doc["expiresAt"] - doc["priceSetAt"] == timedelta(hours=24)

    totals = client.get("/dashboard", headers=admin_headers).json()["revenueTotals"]
    assert totals == {"daily": 0, "monthly": 0, "yearly": 0}


def test_status_editable_once_rental_is_paid(client, store, rental, admin_headers):
    store.orders.update_one({"_id": rental}, {"$set": {"paymentStatus": "paid"}})

    response = client.put(f"/orders/{rental}/status", json={"status": "completed"}, headers=admin_headers)
    assert response.status_code == 200
    assert store.orders.find_one({"_id": rental})["status"] == "completed"

    # a paid rental can no longer be repriced
    assert client.post(f"/orders/{rental}/price", json={"amount": 1}, headers=admin_headers).status_code == 409

    totals = client.get("/dashboard", headers=admin_headers).json()["revenueTotals"]
    assert totals["daily"] == 0


def test_completed_order_counts_toward_revenue(client, store, admin_headers):
    store.orders.insert_one({"_id": "b1", "type": "buy", "status": "processing", "amount": 7500, "createdAt": database.utcnow()})
    client.put("/orders/b1/status", json={"status": "completed"}, headers=admin_headers)
    totals = client.get("/dashboard", headers=admin_headers).json()["revenueTotals"]
    assert totals == {"daily": 7500, "monthly": 7500, "yearly": 7500}


def test_invalid_price_and_status(client, rental, admin_headers):
    response = client.post(f"/orders/{rental}/price", json={"amount": 0}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Enter a valid amount"
    assert client.put(f"/orders/{rental}/status", json={"status": "teleported"}, headers=admin_headers).status_code == 422


def test_order_detail_list_and_delete(client, rental, admin_headers):
    detail = client.get(f"/orders/{rental}", headers=admin_headers).json()
    assert detail["amountLabel"] == "Waiting price"
    assert detail["canEditStatus"] is False

    assert [o["id"] for o in client.get("/orders", headers=admin_headers).json()] == [rental]
    assert client.delete(f"/orders/{rental}", headers=admin_headers).json() == {"deleted": True}
    assert client.get(f"/orders/{rental}", headers=admin_headers).status_code == 404


def test_store_outage_is_503(client, admin_headers, monkeypatch):
    monkeypatch.setattr(database, "db", None)
    assert client.get("/orders", headers=admin_headers).status_code == 503
    # the dashboard degrades to its snapshot instead
    body = client.get("/dashboard", headers=admin_headers).json()
    assert body["source"] == "snapshot"
    assert body["error"] == "Realtime data unavailable. Showing snapshot."


# ===================== Orders: driver & destination =====================
def test_assign_and_unassign_driver(client, store, rental, driver, admin_headers):
    response = client.put(f"/orders/{rental}/driver", json={"driverId": driver}, headers=admin_headers)
    assert response.json() == {"driverId": "d1", "driverName": "Musa", "driverEmail": "musa@sachioexpress.com"}

    assert client.put(f"/orders/{rental}/driver", json={"driverId": "ghost"}, headers=admin_headers).status_code == 404

    client.put(f"/orders/{rental}/driver", json={"driverId": None}, headers=admin_headers)
    doc = store.orders.find_one({"_id": rental})
    assert (doc["driverId"], doc["driverName"], doc["driverEmail"]) == (None, None, None)


def test_driver_list(client, driver, admin_headers):
    assert client.get("/drivers", headers=admin_headers).json() == [
        {"id": "d1", "label": "Musa", "email": "musa@sachioexpress.com", "active": False}
    ]


def test_destination_by_address(client, store, rental, admin_headers):
    response = client.put(f"/orders/{rental}/destination", json={"address": "Admiralty Way"}, headers=admin_headers)
    assert response.status_code == 200
    doc = store.orders.find_one({"_id": rental})
    assert (doc["destinationLat"], doc["destinationLng"], doc["destinationAddress"]) == (
        LEKKI["lat"],
        LEKKI["lng"],
        LEKKI["address"],
    )
    assert doc["destinationSetAt"] is not None


def test_destination_by_pin_and_explicit(client, store, rental, admin_headers):
    client.put(f"/orders/{rental}/destination", json={"lat": 6.5, "lng": 3.35}, headers=admin_headers)
    assert store.orders.find_one({"_id": rental})["destinationAddress"] == "Pinned Street, Lagos"

    client.put(f"/orders/{rental}/destination", json={"lat": 6.6, "lng": 3.4, "address": "Gate B"}, headers=admin_headers)
    doc = store.orders.find_one({"_id": rental})
    assert (doc["destinationLat"], doc["destinationAddress"]) == (6.6, "Gate B")


def test_destination_errors(client, rental, admin_headers):
    response = client.put(f"/orders/{rental}/destination", json={"address": "nowhere at all"}, headers=admin_headers)
    assert response.status_code == 422
    assert response.json()["detail"] == "Could not locate that address. Try dropping a pin on the map."
    assert client.put(f"/orders/{rental}/destination", json={}, headers=admin_headers).status_code == 400


def test_destination_without_maps_key(client, store, rental, admin_headers):
    app.dependency_overrides[get_maps_client] = lambda: MapsClient("", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    assert client.put(f"/orders/{rental}/destination", json={"address": "Lekki"}, headers=admin_headers).status_code == 503

    client.put(f"/orders/{rental}/destination", json={"lat": 6.5, "lng": 3.35}, headers=admin_headers)
    assert store.orders.find_one({"_id": rental})["destinationAddress"] == "Pinned destination"


def test_reset_destination(client, store, rental, admin_headers):
    client.put(f"/orders/{rental}/destination", json={"address": "Admiralty Way"}, headers=admin_headers)
    assert client.delete(f"/orders/{rental}/destination", headers=admin_headers).status_code == 200
    doc = store.orders.find_one({"_id": rental})
    assert (doc["destinationLat"], doc["destinationLng"], doc["destinationAddress"]) == (None, None, None)


# ===================== Tracking =====================
@pytest.fixture
def tracked_order(store, rental, driver):
    store.orders.update_one(
        {"_id": rental},
        {"$set": {"driverId": driver, "driverName": "Musa", "destinationLat": LEKKI["lat"], "destinationLng": LEKKI["lng"]}},
    )
    store.driverLocations.insert_one(
        {"_id": driver, "lat": 6.4470, "lng": 3.4720, "speed": 6.0, "heading": 90, "updatedAt": database.utcnow()}
    )
    return rental


def test_tracking_snapshot(client, tracked_order, admin_headers):
    snap = client.get(f"/orders/{tracked_order}/tracking", headers=admin_headers).json()
    assert snap["driverStatus"] == "Active"
    assert snap["arrivingSoon"] is True
    assert snap["offRoute"] is False
    assert snap["stale"] is False
    assert snap["speedKmh"] == 22
    assert snap["headingLabel"] == "90° E"
    assert snap["route"]["durationText"] == "1 min"


def test_tracking_without_driver(client, rental, admin_headers):
    snap = client.get(f"/orders/{rental}/tracking", headers=admin_headers).json()
    assert snap["location"] is None
    assert snap["driverStatus"] == "Offline"
    assert client.get("/orders/missing/tracking", headers=admin_headers).status_code == 404


def test_tracking_feed(client, tracked_order):
    token = auth.create_token(SUPERADMIN_EMAIL, auth.ROLE_SUPERADMIN)
    with client.websocket_connect(f"/orders/{tracked_order}/tracking/ws?token={token}") as ws:
        first = ws.receive_json()
        assert first["orderId"] == tracked_order
        assert first["arrivingSoon"] is True
        ws.send_text("refresh")
        assert ws.receive_json()["orderId"] == tracked_order


def test_tracking_feed_needs_token(client, tracked_order):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/orders/{tracked_order}/tracking/ws"):
            pass


def test_tracking_feed_refuses_blocked_staff(client, store, tracked_order, staff_account):
    store.staffAccounts.update_one({"email": staff_account}, {"$set": {"blocked": True}})
    token = auth.create_token(staff_account, auth.ROLE_STAFF)
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/orders/{tracked_order}/tracking/ws?token={token}") as ws:
            ws.receive_json()


def test_tracking_feed_stops_when_staff_blocked_mid_session(client, store, tracked_order, staff_account):
    token = auth.create_token(staff_account, auth.ROLE_STAFF)
    with client.websocket_connect(f"/orders/{tracked_order}/tracking/ws?token={token}") as ws:
        assert ws.receive_json()["orderId"] == tracked_order
        store.staffAccounts.update_one({"email": staff_account}, {"$set": {"blocked": True}})
        ws.send_text("refresh")
        assert ws.receive_json() == {"error": BLOCKED_MESSAGE}


# ===================== Users & staff =====================
def test_user_toggles(client, store, admin_headers):
    store.users.insert_one({"_id": "u1", "email": "ngozi@sachioexpress.com", "name": "Ngozi", "createdAt": database.utcnow()})

    assert client.post("/users/u1/toggle-driver-active", headers=admin_headers).status_code == 400
    assert client.post("/users/u1/toggle-driver", headers=admin_headers).json() == {"isDriver": True}
    assert client.post("/users/u1/toggle-driver-active", headers=admin_headers).json() == {"isDriverActive": True}
    assert client.post("/users/u1/toggle-blocked", headers=admin_headers).json() == {"blocked": True}

    [user] = client.get("/users", headers=admin_headers).json()
    assert user["id"] == "u1"
    assert (user["blocked"], user["isDriver"], user["isDriverActive"]) == (True, True, True)
    assert client.post("/users/ghost/toggle-blocked", headers=admin_headers).status_code == 404


def test_create_staff_account(client, store, admin_headers):
    payload = {"email": "New.Hire@SachioExpress.com", "name": "Tunde", "password": "secret1"}
    response = client.post("/staff/accounts", json=payload, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["email"] == "new.hire@sachioexpress.com"

    doc = store.staffAccounts.find_one({"email": "new.hire@sachioexpress.com"})
    assert doc["createdBy"] == SUPERADMIN_EMAIL
    assert doc["role"] == "staff"
    assert auth.verify_password("secret1", doc["passwordHash"])

    assert client.post("/staff/accounts", json=payload, headers=admin_headers).status_code == 400
    listed = client.get("/staff/accounts", headers=admin_headers).json()
    assert "passwordHash" not in listed[0]

    # the new account can sign in straight away
    login(client, "new.hire@sachioexpress.com", "secret1")


def test_staff_password_minimum(client, admin_headers):
    payload = {"email": "short@sachioexpress.com", "password": "123"}
    assert client.post("/staff/accounts", json=payload, headers=admin_headers).status_code == 422


# ===================== Catalogue =====================
def test_product_crud_and_reviews(client, store, admin_headers):
    created = client.post(
        "/products",
        json={"title": "VIP Mobile Toilet", "price": 600000, "category": "VIP", "imageUrl": "https://cdn/vip.png"},
        headers=admin_headers,
    ).json()
    product_id = created["id"]

    product = client.get(f"/products/{product_id}", headers=admin_headers).json()
    assert product["imageUrl"] == "https://cdn/vip.png"
    assert (product["ratingAvg"], product["ratingCount"], product["inStock"]) == (0.0, 0, True)

    update = {"title": "VIP Mobile Toilet", "price": 650000, "category": "VIP", "inStock": False}
    assert client.put(f"/products/{product_id}", json=update, headers=admin_headers).status_code == 200
    assert store.products.find_one()["inStock"] is False

    for rating in range(25):
        store.reviews.insert_one({"productId": product_id, "rating": rating % 5 + 1, "createdAt": database.utcnow()})
    assert len(client.get(f"/products/{product_id}/reviews", headers=admin_headers).json()) == 20

    assert client.delete(f"/products/{product_id}", headers=admin_headers).json() == {"deleted": True}
    assert client.put(f"/products/{product_id}", json=update, headers=admin_headers).status_code == 404


def test_category_defaults(client, store, admin_headers):
    created = client.post("/categories", json={"name": "VIP Units", "segment": " ", "imageUrl": ""}, headers=admin_headers)
    doc = store.categories.find_one()
    assert (doc["segment"], doc["count"], doc["imageUrl"]) == ("General", 0, None)

    category_id = created.json()["id"]
    client.put(f"/categories/{category_id}", json={"name": "VIP Units", "segment": "Events", "count": 12}, headers=admin_headers)
    assert client.get(f"/categories/{category_id}", headers=admin_headers).json()["count"] == 12
    assert client.post("/categories", json={"name": ""}, headers=admin_headers).status_code == 422


def test_gallery(client, admin_headers):
    assert client.post("/gallery", json={"title": "Wedding setup"}, headers=admin_headers).status_code == 422
    item_id = client.post("/gallery", json={"title": "Wedding setup", "imageUrl": "https://cdn/w.jpg"}, headers=admin_headers).json()["id"]
    assert [g["title"] for g in client.get("/gallery", headers=admin_headers).json()] == ["Wedding setup"]
    assert client.delete(f"/gallery/{item_id}", headers=admin_headers).status_code == 200
    assert client.delete(f"/gallery/{item_id}", headers=admin_headers).status_code == 404


# ===================== Announcements =====================
def test_targeted_announcement_queues_mail(client, store, admin_headers):
    store.users.insert_one({"_id": "u1", "email": "ngozi@sachioexpress.com"})
    payload = {"title": "Holiday", "message": "Closed Monday", "audience": "user", "targetUserId": "u1"}
    assert client.post("/announcements", json=payload, headers=admin_headers).status_code == 200

    mail = store.mailQueue.find_one()
    assert (mail["to"], mail["subject"], mail["text"]) == ("ngozi@sachioexpress.com", "Announcement: Holiday", "Closed Monday")
    assert store.announcements.find_one()["targetUserId"] == "u1"


def test_announcement_validation(client, store, admin_headers):
    response = client.post("/announcements", json={"title": "Hi", "message": "x", "audience": "user"}, headers=admin_headers)
    assert response.status_code == 400
    assert client.post("/announcements", json={"title": " ", "message": "x"}, headers=admin_headers).status_code == 400

    client.post("/announcements", json={"title": "All hands", "message": "Friday"}, headers=admin_headers)
    assert store.mailQueue.count_documents({}) == 0
    [announcement] = client.get("/announcements", headers=admin_headers).json()
    assert announcement["audience"] == "all"
    assert client.delete(f"/announcements/{announcement['id']}", headers=admin_headers).status_code == 200


# ===================== Dashboard =====================
def test_dashboard_windows(client, admin_headers):
    body = client.get("/dashboard?days=14", headers=admin_headers).json()
    assert len(body["revenueTrend"]) == 14
    assert body["source"] == "live"
    assert client.get("/dashboard?days=5", headers=admin_headers).status_code == 422


def test_dashboard_fleet(client, store, driver, admin_headers):
    [card] = client.get("/dashboard/fleet", headers=admin_headers).json()
    assert (card["id"], card["status"]) == (driver, "Offline")


def test_exports(client, admin_headers):
    page = client.get("/dashboard/export.html", headers=admin_headers)
    assert page.headers["content-type"].startswith("text/html")
    assert "Sachio Operations Dashboard" in page.text

    pdf = client.get("/dashboard/export.pdf", headers=admin_headers)
    assert pdf.headers["content-type"] == "application/pdf"
    assert 'filename="sachio-dashboard-export.pdf"' in pdf.headers["content-disposition"]
    assert pdf.content.startswith(b"%PDF")


# ===================== Live refresh =====================
def test_live_refresh_loop_survives_a_failing_tick(monkeypatch):
    calls = []

    def flaky_tick(watcher, notify, now):
        calls.append(now)
        if len(calls) == 1:
            raise ValueError("bad order document")

    monkeypatch.setattr(main, "live_tick", flaky_tick)

    async def run():
        task = asyncio.create_task(main.live_refresh_loop(0))
        for _ in range(200):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        alive = not task.done()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return alive

    assert asyncio.run(run())
    assert len(calls) >= 3


def test_live_refresh_loop_keeps_going_when_store_is_down(monkeypatch):
    calls = []

    def offline_tick(watcher, notify, now):
        calls.append(now)
        raise database.DatabaseUnavailable("connection refused")

    monkeypatch.setattr(main, "live_tick", offline_tick)

    async def run():
        task = asyncio.create_task(main.live_refresh_loop(0))
        for _ in range(200):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    asyncio.run(run())
    assert len(calls) >= 2


def test_live_refresh_starts_and_stops_with_the_app(monkeypatch):
    monkeypatch.setattr(main, "live_tick", lambda watcher, notify, now: None)
    monkeypatch.setattr(settings, "live_refresh_seconds", 1)
    monkeypatch.setattr(app.state, "live_refresh", None, raising=False)

    with TestClient(app):
        task = app.state.live_refresh
        assert isinstance(task, asyncio.Task)
        assert not task.done()


def test_live_refresh_disabled_by_default(monkeypatch):
    monkeypatch.setattr(settings, "live_refresh_seconds", 0)
    monkeypatch.setattr(app.state, "live_refresh", None, raising=False)

    with TestClient(app):
        assert app.state.live_refresh is None
