"""
Dashboard aggregation.

Reads bounded recent slices of orders/products/categories plus all alerts
and stored stats, derives stand-ins for whatever is missing, and syncs the
derived operational-health lanes back to the `operations` collection so
other viewers can read them. The sync is best-effort: failures are logged
and never reach the caller.

When the store cannot be read at all the caller gets FALLBACK_DATA, marked
with source="snapshot" and an error message.
"""

import json
from datetime import datetime, timedelta
import math
from typing import Any, Dict, List, Mapping, Optional

import database
from config import get_logger
from schemas import Alert, DashboardSnapshot, Lane, OperationalMetric, RevenueTotals
from tracking import as_utc, driver_label, fleet_driver_status, parse_driver_location
from workflow import normalize_status, order_amount, to_number

logger = get_logger("dashboard")

RECENT_ORDERS = 7
RECENT_PRODUCTS = 5
TOP_CATEGORIES = 6
TREND_WINDOWS = (7, 14, 30)
SNAPSHOT_ERROR = "Realtime data unavailable. Showing snapshot."

FALLBACK_DATA: Dict[str, Any] = {
    "categories": [
        {"id": "cat-vip", "name": "VIP Units"},
        {"id": "cat-standard", "name": "Standard Units"},
        {"id": "cat-lux", "name": "Luxury Trailers"},
        {"id": "cat-longterm", "name": "Long-term Rentals"},
    ],
    "stats": [
        {"label": "Revenue (MTD)", "value": "NGN 8,240,000", "delta": "+12.4%", "tone": "green"},
        {"label": "Orders", "value": "182", "delta": "+6.1%"},
        {"label": "Rentals in progress", "value": "48", "delta": "-3.2%", "tone": "orange"},
        {"label": "On-time delivery", "value": "96%", "delta": "+1.5%", "tone": "green"},
    ],
    "orders": [
        {"id": "ORD-1024", "customer": "Halima O.", "type": "Rent", "total": "NGN 420,000", "status": "Processing", "eta": "Today, 4:00PM"},
        {"id": "ORD-1023", "customer": "Bright Events", "type": "Buy", "total": "NGN 1,200,000", "status": "Dispatched", "eta": "Today, 6:30PM"},
        {"id": "ORD-1022", "customer": "MegaBuild", "type": "Rent", "total": "NGN 680,000", "status": "Delivered", "eta": "Yesterday"},
        {"id": "ORD-1021", "customer": "Chika I.", "type": "Rent", "total": "NGN 220,000", "status": "Cancelled", "eta": "-"},
    ],
    "products": [
        {"id": "PRD-1001", "title": "VIP Mobile Toilet", "price": "NGN 600,000", "category": "VIP", "inStock": True},
        {"id": "PRD-1002", "title": "Standard Mobile Toilet", "price": "NGN 320,000", "category": "Standard", "inStock": True},
        {"id": "PRD-1003", "title": "Luxury Restroom Trailer", "price": "NGN 1,800,000", "category": "Luxury", "inStock": False},
    ],
    "lanes": [
        {"label": "Fulfillment", "value": 82},
        {"label": "Cleanliness QA", "value": 91},
        {"label": "Driver Availability", "value": 76},
        {"label": "Support SLA", "value": 88},
    ],
    "alerts": [
        {"title": "2 rentals late for pickup", "tone": "red"},
        {"title": "Driver availability trending low", "tone": "amber"},
        {"title": "Inventory threshold reached (VIP units)", "tone": "emerald"},
    ],
    "revenueTrend": [
        {"label": f"Day {i + 1}", "value": v}
        for i, v in enumerate([720000, 680000, 800000, 900000, 760000, 840000, 920000])
    ],
}


def _percent(part: int, whole: int) -> int:
    if not whole:
        return 0
    return int(math.floor(part / whole * 100 + 0.5))


def naira(amount: float) -> str:
    return f"NGN {amount:,.0f}"


# -------------------- Row builders --------------------

def to_raw_order(doc: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": doc.get("id"),
        "customer": doc.get("customerName") or "Unknown",
        "type": "Rent" if doc.get("type") == "rent" else "Buy",
        "amount": order_amount(doc),
        "status": normalize_status(doc.get("status")),
        "eta": doc.get("eta") or "-",
        "createdAt": as_utc(doc.get("createdAt")),
    }


def to_order_row(raw: Mapping[str, Any]) -> Dict[str, Any]:
    row = {k: v for k, v in raw.items() if k not in ("amount", "createdAt")}
    row["total"] = naira(raw["amount"])
    return row


def to_product_row(doc: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": doc.get("id"),
        "title": doc.get("title") or "Untitled",
        "price": naira(to_number(doc.get("price")) or 0),
        "category": doc.get("category") or "General",
        "inStock": doc.get("inStock") is not False,
    }


def to_category_row(doc: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": doc.get("id"),
        "name": doc.get("name") or "Category",
        "segment": doc.get("segment") or "General",
        "count": int(to_number(doc.get("count")) or to_number(doc.get("total")) or 0),
        "imageUrl": doc.get("imageUrl"),
    }


def to_stat(doc: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "label": doc.get("label") or "Metric",
        "value": str(doc.get("value") if doc.get("value") is not None else "0"),
        "delta": doc.get("delta") or "",
        "tone": doc.get("tone") or "green",
    }


def to_alert(doc: Mapping[str, Any]) -> Alert:
    tone = doc.get("tone") if doc.get("tone") in ("red", "amber", "emerald") else "red"
    return Alert(title=doc.get("title") or "Alert", tone=tone)


# -------------------- Derived metrics --------------------

def build_stats_from_orders(orders: List[Dict[str, Any]], now: datetime) -> List[Dict[str, Any]]:
    month_revenue = sum(
        o["amount"]
        for o in orders
        if o["status"] == "Completed"
        and o["createdAt"] is not None
        and (o["createdAt"].year, o["createdAt"].month) == (now.year, now.month)
    )
    rentals = sum(1 for o in orders if o["type"] == "Rent" and "cancelled" not in o["status"].lower())
    delivered = sum(1 for o in orders if o["status"] in ("Delivered", "Completed"))
    return [
        {"label": "Revenue (MTD)", "value": naira(month_revenue), "delta": "", "tone": "green"},
        {"label": "Orders", "value": str(len(orders)), "delta": ""},
        {"label": "Rentals in progress", "value": str(rentals), "delta": ""},
        {"label": "On-time delivery", "value": f"{_percent(delivered, len(orders))}%", "delta": "", "tone": "green"},
    ]


def build_alerts_from_data(orders: List[Dict[str, Any]], products: List[Dict[str, Any]]) -> List[Alert]:
    alerts: List[Alert] = []
    out_of_stock = sum(1 for p in products if not p["inStock"])
    if out_of_stock:
        plural = "s" if out_of_stock > 1 else ""
        alerts.append(Alert(title=f"{out_of_stock} product{plural} out of stock", tone="red"))
    backlog = sum(1 for o in orders if "processing" in o["status"].lower())
    if backlog > 6:
        alerts.append(Alert(title=f"{backlog} orders waiting on fulfillment", tone="amber"))
    cancelled = sum(1 for o in orders if "cancel" in o["status"].lower())
    if orders and cancelled / len(orders) > 0.2:
        alerts.append(Alert(title="Cancellation rate above 20%", tone="red"))
    in_transit = sum(1 for o in orders if "in transit" in o["status"].lower())
    if in_transit > 0:
        alerts.append(Alert(title=f"{in_transit} deliveries currently in transit", tone="emerald"))
    return alerts


def compute_operational_health(
    orders: List[Dict[str, Any]], products: List[Dict[str, Any]], alerts: List[Alert]
) -> List[Lane]:
    in_stock = sum(1 for p in products if p["inStock"])
    completed = sum(1 for o in orders if o["status"] in ("Completed", "Delivered"))
    cancelled = sum(1 for o in orders if "cancel" in o["status"].lower())
    return [
        Lane(label="Fleet Readiness", value=_percent(in_stock, len(products))),
        Lane(label="Sanitation Cycle", value=_percent(completed, len(orders))),
        Lane(label="Dispatch Reliability", value=_percent(len(orders) - cancelled, len(orders))),
        Lane(label="Customer Support Load", value=max(0, 100 - len(alerts) * 12)),
    ]


def build_revenue_trend(orders: List[Dict[str, Any]], window_days: int, now: datetime) -> List[Dict[str, Any]]:
    span = max(1, window_days - 1)
    buckets: Dict[str, Dict[str, Any]] = {}
    for offset in range(span, -1, -1):
        day = (now - timedelta(days=offset)).date()
        buckets[day.isoformat()] = {"label": day.strftime("%a"), "value": 0.0}
    for order in orders:
        created = order["createdAt"]
        if created is None:
            continue
        key = created.date().isoformat()
        if key in buckets:
            buckets[key]["value"] += order["amount"]
    return list(buckets.values())


def build_revenue_totals(orders: List[Dict[str, Any]], now: datetime) -> RevenueTotals:
    """Sum completed-order revenue for today, this month and this year (UTC calendar)."""
    totals = RevenueTotals()
    for order in orders:
        created = order["createdAt"]
        if order["status"] != "Completed" or created is None:
            continue
        if created.year != now.year:
            continue
        totals.yearly += order["amount"]
        if created.month == now.month:
            totals.monthly += order["amount"]
            if created.day == now.day:
                totals.daily += order["amount"]
    return totals


# -------------------- Metrics sync --------------------

def lane_key(label: str) -> str:
    return "_".join(label.lower().split())


class OperationsSync:
    """Writes lanes to `operations/<lane_key>`, skipping payloads identical to the last one."""

    def __init__(self):
        self._last_payload = ""

    def __call__(self, lanes: List[Lane], now: datetime) -> bool:
        payload = json.dumps([lane.model_dump() for lane in lanes])
        if payload == self._last_payload:
            return False
        self._last_payload = payload
        try:
            for lane in lanes:
                database.set_document(
                    "operations",
                    lane_key(lane.label),
                    OperationalMetric(label=lane.label, value=lane.value, updated_at=now),
                )
        except database.DatabaseUnavailable as exc:
            logger.warning("Operational health sync failed: %s", exc)
            return False
        return True


sync_operational_health = OperationsSync()


# -------------------- Loading --------------------

def load_recent_raw_orders() -> List[Dict[str, Any]]:
    docs = database.get_documents("orders", sort=[("createdAt", -1)], limit=RECENT_ORDERS)
    return [to_raw_order(doc) for doc in docs]


def load_recent_products() -> List[Dict[str, Any]]:
    docs = database.get_documents("products", sort=[("createdAt", -1)], limit=RECENT_PRODUCTS)
    return [to_product_row(doc) for doc in docs]


def fallback_snapshot(now: datetime, error: Optional[str] = SNAPSHOT_ERROR) -> DashboardSnapshot:
    return DashboardSnapshot(
        stats=FALLBACK_DATA["stats"],
        orders=FALLBACK_DATA["orders"],
        products=FALLBACK_DATA["products"],
        categories=FALLBACK_DATA["categories"],
        lanes=FALLBACK_DATA["lanes"],
        alerts=FALLBACK_DATA["alerts"],
        revenue_trend=FALLBACK_DATA["revenueTrend"],
        revenue_totals=RevenueTotals(),
        source="snapshot",
        error=error,
        last_updated=now,
    )


def load_dashboard(trend_days: int, now: datetime) -> DashboardSnapshot:
    try:
        stats = [to_stat(doc) for doc in database.get_documents("dashboardStats")]
        raw_orders = load_recent_raw_orders()
        products = load_recent_products()
        categories = [
            to_category_row(doc)
            for doc in database.get_documents("categories", sort=[("count", -1)], limit=TOP_CATEGORIES)
        ]
        alerts = [to_alert(doc) for doc in database.get_documents("alerts")]
    except database.DatabaseUnavailable as exc:
        logger.warning("Dashboard fetch failed: %s", exc)
        return fallback_snapshot(now)

    derived_stats = stats or build_stats_from_orders(raw_orders, now)
    derived_alerts = alerts or build_alerts_from_data(raw_orders, products)
    lanes = compute_operational_health(raw_orders, products, derived_alerts)
    trend = build_revenue_trend(raw_orders, trend_days, now)

    snapshot = DashboardSnapshot(
        stats=derived_stats,
        orders=[to_order_row(o) for o in raw_orders] or FALLBACK_DATA["orders"],
        products=products or FALLBACK_DATA["products"],
        categories=categories or FALLBACK_DATA["categories"],
        lanes=lanes,
        alerts=derived_alerts or FALLBACK_DATA["alerts"],
        revenue_trend=trend or FALLBACK_DATA["revenueTrend"],
        revenue_totals=build_revenue_totals(raw_orders, now),
        last_updated=now,
    )
    sync_operational_health(lanes, now)
    return snapshot


def load_fleet(now: datetime) -> List[Dict[str, Any]]:
    drivers = database.get_documents("users", {"isDriver": True})
    locations = {doc["id"]: parse_driver_location(doc) for doc in database.get_documents("driverLocations")}
    cards = []
    for driver in drivers:
        location = locations.get(driver["id"])
        cards.append(
            {
                "id": driver["id"],
                "name": driver_label(driver),
                "email": driver.get("email"),
                "active": bool(driver.get("isDriverActive")),
                "location": location,
                "status": fleet_driver_status(location, now),
                "updatedAt": location["updatedAt"] if location else None,
            }
        )
    return cards


# -------------------- Live refresh --------------------

def live_tick(watcher, notify, now: datetime) -> list:
    """One poll of the live slices: order transition emails, then lane sync.

    `notify(event, order_id, doc)` is called for every transition the
    watcher reports; it must not raise.
    """
    docs = database.get_documents("orders", sort=[("createdAt", -1)], limit=RECENT_ORDERS)
    events = watcher.observe(docs)
    for event, order_id, doc in events:
        logger.info("order %s: %s", order_id, event)
        notify(event, order_id, doc)

    raw_orders = [to_raw_order(doc) for doc in docs]
    products = load_recent_products()
    alerts = [to_alert(doc) for doc in database.get_documents("alerts")]
    lanes = compute_operational_health(raw_orders, products, alerts or build_alerts_from_data(raw_orders, products))
    sync_operational_health(lanes, now)
    return events
