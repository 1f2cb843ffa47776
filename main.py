import asyncio
import os
from datetime import date, datetime, time, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response

import database
from auth import (
    ROLE_STAFF,
    ROLE_SUPERADMIN,
    AuthError,
    authenticate,
    create_token,
    decode_token,
    hash_password,
    find_staff_account,
    is_staff_blocked,
    touch_staff_session,
)
from config import settings, get_logger
from dashboard import TREND_WINDOWS, live_tick, load_dashboard, load_fleet
from exports import PDF_FILENAME, render_html, render_pdf
from maps import GeocodeNotFound, MapsClient, MapsUnavailable, get_maps_client
from notifications import EmailNotifier, OrderSignalWatcher, email_configured, queue_mail
from schemas import (
    COLLECTIONS,
    Announcement,
    AnnouncementCreate,
    Category,
    CategoryUpdate,
    DashboardSnapshot,
    DestinationUpdate,
    DriverAssignment,
    GalleryItem,
    LoginRequest,
    PriceUpdate,
    Product,
    ProductUpdate,
    StaffAccount,
    StaffCreate,
    StatusUpdate,
)
from tracking import build_tracking_snapshot, driver_label, parse_driver_location, resolve_destination
from workflow import (
    InvalidAmount,
    InvalidStatus,
    StatusLocked,
    build_price_update,
    build_status_update,
    can_set_price,
    describe_order,
)

logger = get_logger("api")

app = FastAPI(title="Sachio Operations Dashboard API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(database.DatabaseUnavailable)
def database_unavailable(request, exc):
    logger.warning("%s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Could not reach the database. Try again."})


@app.exception_handler(MapsUnavailable)
def maps_unavailable(request, exc):
    return JSONResponse(status_code=503, content={"detail": "Maps service unavailable."})


# ===================== Session dependencies =====================
BLOCKED_MESSAGE = "This staff account is blocked. Contact your administrator."


def session_allowed(session: dict) -> bool:
    return session["role"] != ROLE_STAFF or not is_staff_blocked(session["email"])


def require_session(authorization: Optional[str] = Header(None)) -> dict:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Not authenticated")
    session = decode_token(token.strip())
    if not session:
        raise HTTPException(401, "Session expired. Sign in again.")
    if not session_allowed(session):
        raise HTTPException(403, BLOCKED_MESSAGE)
    return session


def require_superadmin(session: dict = Depends(require_session)) -> dict:
    if session["role"] != ROLE_SUPERADMIN:
        raise HTTPException(403, "Superadmin access required")
    return session


def _get_or_404(collection: str, _id: str, label: str) -> dict:
    doc = database.get_document_by_id(collection, _id)
    if not doc:
        raise HTTPException(404, f"{label} not found")
    return doc


# ===================== Public Endpoints =====================
@app.get("/")
def root():
    return {"message": "Sachio Operations Dashboard API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "maps": "✅ Set" if settings.google_maps_api_key else "❌ Not Set",
        "email_notifications": "✅ Set" if email_configured() else "❌ Not Set",
    }
    try:
        response["collections"] = database.list_collection_names()
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
    except database.DatabaseUnavailable as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    response["database_url"] = "✅ Set" if settings.database_url else "❌ Not Set"
    response["database_name"] = "✅ Set" if settings.database_name else "❌ Not Set"
    return response


# ===================== Auth =====================
@app.post("/auth/login")
def login(payload: LoginRequest):
    try:
        principal = authenticate(payload.email, payload.password)
    except AuthError as exc:
        raise HTTPException(401, str(exc))
    token = create_token(principal["email"], principal["role"])
    return {"token": token, "email": principal["email"], "role": principal["role"]}


@app.get("/auth/me")
def me(session: dict = Depends(require_session)):
    return session


@app.post("/auth/heartbeat")
def heartbeat(session: dict = Depends(require_session)):
    if session["role"] == ROLE_STAFF:
        touch_staff_session(session["email"], "online")
    return {"ok": True}


@app.post("/auth/logout")
def logout(session: dict = Depends(require_session)):
    if session["role"] == ROLE_STAFF:
        touch_staff_session(session["email"], "offline")
    return {"ok": True}


# ===================== Dashboard =====================
@app.get("/dashboard", response_model=DashboardSnapshot)
def dashboard(days: int = 7, session: dict = Depends(require_session)):
    if days not in TREND_WINDOWS:
        raise HTTPException(422, f"days must be one of {', '.join(str(d) for d in TREND_WINDOWS)}")
    return load_dashboard(days, database.utcnow())


@app.get("/dashboard/fleet")
def fleet(session: dict = Depends(require_session)):
    return load_fleet(database.utcnow())


@app.get("/dashboard/export.html", response_class=HTMLResponse)
def export_html(session: dict = Depends(require_session)):
    now = database.utcnow()
    return HTMLResponse(render_html(load_dashboard(7, now), now))


@app.get("/dashboard/export.pdf")
def export_pdf(session: dict = Depends(require_session)):
    now = database.utcnow()
    content = render_pdf(load_dashboard(7, now), now)
    return Response(
        content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{PDF_FILENAME}"'},
    )


# ===================== Orders =====================
@app.get("/orders")
def list_orders(
    from_date: Optional[date] = Query(None, alias="from"),
    to_date: Optional[date] = Query(None, alias="to"),
    session: dict = Depends(require_session),
):
    created = {}
    if from_date:
        created["$gte"] = datetime.combine(from_date, time.min, tzinfo=timezone.utc)
    if to_date:
        created["$lte"] = datetime.combine(to_date, time.max, tzinfo=timezone.utc)
    filt = {"createdAt": created} if created else {}
    return [describe_order(o) for o in database.get_documents("orders", filt, sort=[("createdAt", -1)])]


@app.get("/orders/{order_id}")
def get_order(order_id: str, session: dict = Depends(require_session)):
    return describe_order(_get_or_404("orders", order_id, "Order"))


@app.delete("/orders/{order_id}")
def delete_order(order_id: str, session: dict = Depends(require_session)):
    if not database.delete_document("orders", order_id):
        raise HTTPException(404, "Order not found")
    return {"deleted": True}


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdate, session: dict = Depends(require_session)):
    order = _get_or_404("orders", order_id, "Order")
    try:
        update = build_status_update(order, payload.status)
    except StatusLocked as exc:
        raise HTTPException(409, str(exc))
    except InvalidStatus as exc:
        raise HTTPException(400, str(exc))
    database.update_document("orders", order_id, update)
    logger.info("order %s status -> %s by %s", order_id, payload.status, session["email"])
    return {"updated": True, "status": payload.status}


@app.post("/orders/{order_id}/price")
def set_order_price(order_id: str, payload: PriceUpdate, session: dict = Depends(require_session)):
    order = _get_or_404("orders", order_id, "Order")
    if not can_set_price(order):
        raise HTTPException(409, "A price can only be set on an unpaid rental")
    try:
        update = build_price_update(payload.amount, database.utcnow())
    except InvalidAmount as exc:
        raise HTTPException(400, str(exc))
    database.update_document("orders", order_id, update)
    logger.info("order %s priced at %s by %s", order_id, update["amount"], session["email"])
    return update


@app.put("/orders/{order_id}/driver")
def assign_driver(order_id: str, payload: DriverAssignment, session: dict = Depends(require_session)):
    _get_or_404("orders", order_id, "Order")
    if payload.driver_id:
        driver = _get_or_404("users", payload.driver_id, "Driver")
        update = {
            "driverId": driver["id"],
            "driverName": driver_label(driver),
            "driverEmail": driver.get("email"),
        }
    else:
        update = {"driverId": None, "driverName": None, "driverEmail": None}
    database.update_document("orders", order_id, update)
    return update


@app.put("/orders/{order_id}/destination")
def set_destination(
    order_id: str,
    payload: DestinationUpdate,
    maps: MapsClient = Depends(get_maps_client),
    session: dict = Depends(require_session),
):
    _get_or_404("orders", order_id, "Order")
    address = (payload.address or "").strip()
    has_point = payload.lat is not None and payload.lng is not None
    if has_point:
        lat, lng = payload.lat, payload.lng
        if not address:
            address = maps.reverse_geocode(lat, lng)
    elif address:
        try:
            found = maps.geocode(address)
        except GeocodeNotFound:
            raise HTTPException(422, "Could not locate that address. Try dropping a pin on the map.")
        lat, lng, address = found["lat"], found["lng"], found["address"]
    else:
        raise HTTPException(400, "Enter an address or drop a pin on the map.")

    update = {
        "destinationLat": lat,
        "destinationLng": lng,
        "destinationAddress": address,
        "destinationSetAt": database.utcnow(),
    }
    database.update_document("orders", order_id, update)
    return update


@app.delete("/orders/{order_id}/destination")
def reset_destination(order_id: str, session: dict = Depends(require_session)):
    update = {"destinationLat": None, "destinationLng": None, "destinationAddress": None}
    if not database.update_document("orders", order_id, update):
        raise HTTPException(404, "Order not found")
    return update


def load_order_tracking(order_id: str, maps: MapsClient, now: datetime) -> Optional[dict]:
    order = database.get_document_by_id("orders", order_id)
    if not order:
        return None
    driver_id = order.get("driverId")
    driver = database.get_document_by_id("users", driver_id) if driver_id else None
    location_doc = database.get_document_by_id("driverLocations", driver_id) if driver_id else None

    route = None
    location = parse_driver_location(location_doc)
    destination = resolve_destination(order)
    if location and destination:
        try:
            route = maps.directions((location["lat"], location["lng"]), destination)
        except MapsUnavailable:
            route = None
    return build_tracking_snapshot(order, driver, location_doc, route, now)


@app.get("/orders/{order_id}/tracking")
def order_tracking(order_id: str, maps: MapsClient = Depends(get_maps_client), session: dict = Depends(require_session)):
    snapshot = load_order_tracking(order_id, maps, database.utcnow())
    if snapshot is None:
        raise HTTPException(404, "Order not found")
    return snapshot


@app.websocket("/orders/{order_id}/tracking/ws")
async def order_tracking_feed(
    websocket: WebSocket,
    order_id: str,
    token: Optional[str] = None,
    maps: MapsClient = Depends(get_maps_client),
):
    session = decode_token(token) if token else None
    if not session or not await asyncio.to_thread(session_allowed, session):
        await websocket.close(code=1008)
        return
    await websocket.accept()
    try:
        while True:
            try:
                if not await asyncio.to_thread(session_allowed, session):
                    await websocket.send_json({"error": BLOCKED_MESSAGE})
                    await websocket.close(code=1008)
                    return
                snapshot = await asyncio.to_thread(load_order_tracking, order_id, maps, database.utcnow())
            except database.DatabaseUnavailable as exc:
                logger.warning("tracking feed for %s: %s", order_id, exc)
                await websocket.send_json({"error": "Could not reach the database."})
            else:
                if snapshot is None:
                    await websocket.send_json({"error": "Order not found"})
                    await websocket.close()
                    return
                await websocket.send_json(jsonable_encoder(snapshot))
            # any client message forces an immediate refresh
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=settings.tracking_poll_seconds)
            except asyncio.TimeoutError:
                pass
    except WebSocketDisconnect:
        return


# ===================== Drivers =====================
@app.get("/drivers")
def list_drivers(session: dict = Depends(require_session)):
    return [
        {
            "id": d["id"],
            "label": driver_label(d),
            "email": d.get("email"),
            "active": bool(d.get("isDriverActive")),
        }
        for d in database.get_documents("users", {"isDriver": True})
    ]


# ===================== Users =====================
_USER_FIELDS = ("uid", "email", "name", "phone")


@app.get("/users")
def list_users(session: dict = Depends(require_superadmin)):
    users = []
    for u in database.get_documents("users", sort=[("createdAt", -1)]):
        row = {"id": u["id"], **{k: u.get(k) for k in _USER_FIELDS}}
        row.update(
            blocked=bool(u.get("blocked")),
            isDriver=bool(u.get("isDriver")),
            isDriverActive=bool(u.get("isDriverActive")),
        )
        users.append(row)
    return users


def _toggle_user_flag(user_id: str, field: str) -> dict:
    user = _get_or_404("users", user_id, "User")
    value = not bool(user.get(field))
    database.update_document("users", user_id, {field: value})
    return {field: value}


@app.post("/users/{user_id}/toggle-blocked")
def toggle_user_blocked(user_id: str, session: dict = Depends(require_superadmin)):
    return _toggle_user_flag(user_id, "blocked")


@app.post("/users/{user_id}/toggle-driver")
def toggle_user_driver(user_id: str, session: dict = Depends(require_superadmin)):
    return _toggle_user_flag(user_id, "isDriver")


@app.post("/users/{user_id}/toggle-driver-active")
def toggle_driver_active(user_id: str, session: dict = Depends(require_superadmin)):
    user = _get_or_404("users", user_id, "User")
    if not user.get("isDriver"):
        raise HTTPException(400, "User is not a driver")
    return _toggle_user_flag(user_id, "isDriverActive")


# ===================== Staff =====================
@app.get("/staff/accounts")
def list_staff_accounts(session: dict = Depends(require_superadmin)):
    accounts = database.get_documents("staffAccounts", sort=[("createdAt", -1)])
    for a in accounts:
        a.pop("passwordHash", None)
    return accounts


@app.post("/staff/accounts")
def create_staff_account(payload: StaffCreate, session: dict = Depends(require_superadmin)):
    email = payload.email.strip().lower()
    if find_staff_account(email):
        raise HTTPException(400, "A staff account with this email already exists")
    account = StaffAccount(
        email=email,
        name=(payload.name or "").strip() or None,
        password_hash=hash_password(payload.password),
        created_by=session["email"],
    )
    account_id = database.create_document("staffAccounts", account)
    logger.info("staff account %s created by %s", email, session["email"])
    return {"id": account_id, "email": email}


@app.post("/staff/accounts/{account_id}/toggle-blocked")
def toggle_staff_blocked(account_id: str, session: dict = Depends(require_superadmin)):
    account = _get_or_404("staffAccounts", account_id, "Staff account")
    blocked = not bool(account.get("blocked"))
    database.update_document("staffAccounts", account_id, {"blocked": blocked})
    return {"blocked": blocked}


@app.get("/staff/sessions")
def list_staff_sessions(session: dict = Depends(require_superadmin)):
    sessions = database.get_documents("staffSessions", sort=[("lastActive", -1)])
    for s in sessions:
        s["online"] = s.get("status") == "online"
    return sessions


# ===================== Products =====================
@app.get("/products")
def list_products(session: dict = Depends(require_session)):
    return database.get_documents("products", sort=[("createdAt", -1)])


@app.get("/products/{product_id}")
def get_product(product_id: str, session: dict = Depends(require_session)):
    return _get_or_404("products", product_id, "Product")


@app.post("/products")
def create_product(payload: ProductUpdate, session: dict = Depends(require_session)):
    product = Product(**payload.model_dump())
    return {"id": database.create_document("products", product)}


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, session: dict = Depends(require_session)):
    if not database.update_document("products", product_id, payload):
        raise HTTPException(404, "Product not found")
    return {"updated": True}


@app.delete("/products/{product_id}")
def delete_product(product_id: str, session: dict = Depends(require_session)):
    if not database.delete_document("products", product_id):
        raise HTTPException(404, "Product not found")
    return {"deleted": True}


@app.get("/products/{product_id}/reviews")
def product_reviews(product_id: str, session: dict = Depends(require_session)):
    return database.get_documents("reviews", {"productId": product_id}, sort=[("createdAt", -1)], limit=20)


# ===================== Categories =====================
def _category_from(payload: CategoryUpdate) -> Category:
    return Category(
        name=payload.name.strip(),
        segment=(payload.segment or "").strip() or "General",
        count=payload.count or 0,
        description=payload.description,
        image_url=(payload.image_url or "").strip() or None,
    )


@app.get("/categories")
def list_categories(session: dict = Depends(require_session)):
    return database.get_documents("categories", sort=[("createdAt", -1)])


@app.get("/categories/{category_id}")
def get_category(category_id: str, session: dict = Depends(require_session)):
    return _get_or_404("categories", category_id, "Category")


@app.post("/categories")
def create_category(payload: CategoryUpdate, session: dict = Depends(require_session)):
    return {"id": database.create_document("categories", _category_from(payload))}


@app.put("/categories/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate, session: dict = Depends(require_session)):
    if not database.update_document("categories", category_id, _category_from(payload)):
        raise HTTPException(404, "Category not found")
    return {"updated": True}


@app.delete("/categories/{category_id}")
def delete_category(category_id: str, session: dict = Depends(require_session)):
    if not database.delete_document("categories", category_id):
        raise HTTPException(404, "Category not found")
    return {"deleted": True}


# ===================== Gallery =====================
@app.get("/gallery")
def list_gallery(session: dict = Depends(require_session)):
    return database.get_documents("gallery", sort=[("createdAt", -1)])


@app.post("/gallery")
def create_gallery_item(payload: GalleryItem, session: dict = Depends(require_session)):
    return {"id": database.create_document("gallery", payload)}


@app.delete("/gallery/{item_id}")
def delete_gallery_item(item_id: str, session: dict = Depends(require_session)):
    if not database.delete_document("gallery", item_id):
        raise HTTPException(404, "Gallery item not found")
    return {"deleted": True}


# ===================== Announcements =====================
@app.get("/announcements")
def list_announcements(session: dict = Depends(require_session)):
    return database.get_documents("announcements", sort=[("createdAt", -1)])


@app.post("/announcements")
def create_announcement(payload: AnnouncementCreate, session: dict = Depends(require_session)):
    title, message = payload.title.strip(), payload.message.strip()
    if not title or not message:
        raise HTTPException(400, "Title and message are required")
    target_id = (payload.target_user_id or "").strip() or None
    if payload.audience == "user" and not target_id:
        raise HTTPException(400, "Select a user for this announcement")

    announcement = Announcement(
        title=title,
        message=message,
        audience=payload.audience,
        target_user_id=target_id if payload.audience == "user" else None,
    )
    announcement_id = database.create_document("announcements", announcement)

    if payload.audience == "user":
        target = database.get_document_by_id("users", target_id)
        if target and target.get("email"):
            try:
                queue_mail(target["email"], f"Announcement: {title}", message)
            except (database.DatabaseUnavailable, ValueError) as exc:
                logger.warning("Could not queue announcement mail for %s: %s", target_id, exc)
    return {"id": announcement_id}


@app.delete("/announcements/{announcement_id}")
def delete_announcement(announcement_id: str, session: dict = Depends(require_session)):
    if not database.delete_document("announcements", announcement_id):
        raise HTTPException(404, "Announcement not found")
    return {"deleted": True}


# ===================== Background refresh =====================
async def live_refresh_loop(interval: int):
    watcher = OrderSignalWatcher()
    notifier = EmailNotifier()
    while True:
        try:
            await asyncio.to_thread(live_tick, watcher, notifier.notify, database.utcnow())
        except database.DatabaseUnavailable as exc:
            logger.warning("Live refresh failed: %s", exc)
        except Exception:
            logger.exception("Live refresh tick crashed")
        await asyncio.sleep(interval)


@app.on_event("startup")
async def start_live_refresh():
    if settings.live_refresh_seconds > 0:
        logger.info("live refresh every %ss", settings.live_refresh_seconds)
        app.state.live_refresh = asyncio.create_task(live_refresh_loop(settings.live_refresh_seconds))


@app.on_event("shutdown")
async def stop_live_refresh():
    task = getattr(app.state, "live_refresh", None)
    if task is not None:
        task.cancel()


# ===================== Schema Export for Docs =====================
@app.get("/schema")
def get_schema():
    return {
        "collections": COLLECTIONS,
        "notes": "Documents use camelCase keys; see schemas.py for the fields the dashboard writes.",
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
