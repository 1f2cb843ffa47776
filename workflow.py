"""
Order status / price workflow.

Order status is free text written by several clients, so everything here
works on loose string signals rather than an enum:

- "paid" is a case-insensitive substring match on status OR paymentStatus
  after separators are normalized, which also matches "unpaid". That is the
  behaviour the mobile apps rely on, so it is kept as is.
- Rental orders can only have their status edited once paid; until then the
  only admin action is setting a price.
"""

from datetime import datetime, timedelta
import math
import re
from typing import Any, Dict, Mapping, Optional

STATUS_OPTIONS = (
    "processing",
    "dispatched",
    "in_transit",
    "delivered",
    "completed",
    "cancelled_by_admin",
    "waiting_admin_price",
    "price_set",
    "paid",
)

PRICE_VALIDITY = timedelta(hours=24)

_SEPARATORS = re.compile(r"[_-]+")

_DISPLAY_STATUS = {
    "processing": "Processing",
    "dispatched": "Dispatched",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
    "cancelled by admin": "Cancelled_by_admin",
    "in transit": "In transit",
    "completed": "Completed",
}


class StatusLocked(Exception):
    """Status edits on a rental are refused until payment is confirmed."""


class InvalidAmount(ValueError):
    pass


class InvalidStatus(ValueError):
    pass


def normalize_order_signal(value: Any) -> str:
    return _SEPARATORS.sub(" ", str(value or "").lower()).strip()


def is_paid_order_signal(status: Any, payment_status: Any) -> bool:
    return "paid" in normalize_order_signal(status) or "paid" in normalize_order_signal(payment_status)


def is_cancelled_order_signal(status: Any) -> bool:
    return "cancel" in normalize_order_signal(status)


def normalize_status(value: Any) -> str:
    """Map a raw status string to its dashboard label; unknown values read as Processing."""
    raw = value if isinstance(value, str) else ""
    normalized = _SEPARATORS.sub(" ", raw).strip().lower()
    return _DISPLAY_STATUS.get(normalized, "Processing")


def is_rental(order: Mapping[str, Any]) -> bool:
    return order.get("type") == "rent"


def can_edit_status(order: Mapping[str, Any]) -> bool:
    if not is_rental(order):
        return True
    return is_paid_order_signal(order.get("status"), order.get("paymentStatus"))


def can_set_price(order: Mapping[str, Any]) -> bool:
    return is_rental(order) and not is_paid_order_signal(order.get("status"), order.get("paymentStatus"))


def build_status_update(order: Mapping[str, Any], status: str) -> Dict[str, Any]:
    if status not in STATUS_OPTIONS:
        raise InvalidStatus(f"Unknown status: {status}")
    if not can_edit_status(order):
        raise StatusLocked("Status can only be changed after the rental has been paid")
    return {"status": status}


def build_price_update(amount: Any, now: datetime) -> Dict[str, Any]:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise InvalidAmount("Enter a valid amount")
    if not math.isfinite(value) or value <= 0:
        raise InvalidAmount("Enter a valid amount")
    if value.is_integer():
        value = int(value)
    return {
        "amount": value,
        "price": value,
        "status": "price_set",
        "paymentStatus": "awaiting_payment",
        "priceSetAt": now,
        "expiresAt": now + PRICE_VALIDITY,
    }


def to_number(value: Any) -> Optional[float]:
    """Loose numeric read of a store value; None when it is blank or not a finite number."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def order_amount(order: Mapping[str, Any]) -> float:
    for key in ("amount", "price"):
        value = to_number(order.get(key))
        if value is not None:
            return value
    return 0.0


def payment_label(order: Mapping[str, Any]) -> str:
    if not is_rental(order):
        return "Paid"
    signal = str(order.get("paymentStatus") or order.get("status") or "").lower()
    return "Paid" if "paid" in signal else "Unpaid"


def amount_label(order: Mapping[str, Any]) -> str:
    if is_rental(order) and order.get("amount") is None:
        return "Waiting price"
    return f"NGN {order_amount(order):,.0f}"


def describe_order(order: Dict[str, Any]) -> Dict[str, Any]:
    """Order document plus the derived fields the detail view shows."""
    return {
        **order,
        "displayStatus": normalize_status(order.get("status")),
        "paymentLabel": payment_label(order),
        "amountLabel": amount_label(order),
        "canEditStatus": can_edit_status(order),
        "canSetPrice": can_set_price(order),
    }
