"""
Order lifecycle email notifications.

OrderSignalWatcher compares each poll of the recent-orders slice with the
previous one and reports new / paid / cancelled transitions. Emails go out
through the EmailJS REST API to the configured admin list. Delivery is
fire-and-forget: failures are logged and dropped.
"""

from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

import database
from config import settings, get_logger
from schemas import MailQueueItem
from workflow import is_cancelled_order_signal, is_paid_order_signal, normalize_order_signal, to_number

logger = get_logger("notifications")

EMAILJS_SEND_URL = "https://api.emailjs.com/api/v1.0/email/send"
LOGO_URL = "https://sachioexpress.com/logo.png"

EVENT_LABELS = {
    "new": "New order received",
    "paid": "Order paid",
    "cancelled": "Order cancelled",
}
EVENT_INTROS = {
    "new": "A new order has been created.",
    "paid": "An order has been marked as paid.",
    "cancelled": "An order has been cancelled.",
}

OrderEvent = Tuple[str, str, Dict[str, Any]]


class OrderSignalWatcher:
    def __init__(self):
        self._signals: Dict[str, Dict[str, bool]] = {}
        self._ready = False

    def observe(self, docs: List[Dict[str, Any]]) -> List[OrderEvent]:
        """Record the latest slice and return the transitions since the previous one.

        The first call only primes the watcher so that a restart does not
        re-announce every order already in the slice.
        """
        events: List[OrderEvent] = []
        seen = set()
        for doc in docs:
            order_id = doc["id"]
            seen.add(order_id)
            paid = is_paid_order_signal(doc.get("status"), doc.get("paymentStatus"))
            cancelled = is_cancelled_order_signal(doc.get("status"))
            prev = self._signals.get(order_id)
            if self._ready:
                if prev is None:
                    events.append(("new", order_id, doc))
                else:
                    if not prev["paid"] and paid:
                        events.append(("paid", order_id, doc))
                    if not prev["cancelled"] and cancelled:
                        events.append(("cancelled", order_id, doc))
            self._signals[order_id] = {"paid": paid, "cancelled": cancelled}
        for order_id in list(self._signals):
            if order_id not in seen:
                del self._signals[order_id]
        self._ready = True
        return events


def _amount(data: Mapping[str, Any]) -> Optional[float]:
    for key in ("amount", "price", "total"):
        value = to_number(data.get(key))
        if value is not None:
            return value
    return None


def build_order_email_content(event: str, order_id: str, data: Mapping[str, Any]) -> Dict[str, str]:
    customer_name = data.get("customerName") or data.get("name") or "Unknown customer"
    status = normalize_order_signal(data.get("status") or "unknown")
    type_label = "Rental" if "rent" in str(data.get("type") or "order").lower() else "Order"
    amount = _amount(data)
    amount_text = "N/A" if amount is None else f"NGN {amount:,.0f}"
    event_label = EVENT_LABELS[event]
    text = "\n".join(
        [
            event_label,
            f"Order ID: {order_id}",
            f"Type: {type_label}",
            f"Customer: {customer_name}",
            f"Status: {status or 'unknown'}",
            f"Amount: {amount_text}",
        ]
    )
    return {
        "subject": f"[Sachio] {event_label} - {order_id}",
        "text": text,
        "customerName": customer_name,
        "status": status,
        "typeLabel": type_label,
        "amountText": amount_text,
        "eventLabel": event_label,
    }


def _template_params(event: str, order_id: str, data: Mapping[str, Any], to_email: str) -> Dict[str, Any]:
    content = build_order_email_content(event, order_id, data)
    amount = _amount(data) or 0.0
    title = data.get("productTitle") or data.get("title") or data.get("productId") or content["typeLabel"]
    return {
        "to_email": to_email,
        "email": to_email,
        "subject": content["subject"],
        "title": content["eventLabel"],
        "intro": EVENT_INTROS[event],
        "message": content["text"],
        "logo_url": LOGO_URL,
        "order_id": order_id,
        "orders": [
            {
                "name": title,
                "image_url": data.get("imageUrl") or data.get("productImage") or LOGO_URL,
                "units": int(to_number(data.get("quantity")) or 1),
                "price": f"{amount:.2f}",
            }
        ],
        "cost": {
            "shipping": f"{to_number(data.get('shipping')) or 0:.2f}",
            "tax": f"{to_number(data.get('tax')) or 0:.2f}",
            "total": f"{amount:.2f}",
        },
    }


def email_configured() -> bool:
    return bool(
        settings.emailjs_service_id
        and settings.emailjs_template_id
        and settings.emailjs_public_key
        and settings.admin_notify_emails
    )


class EmailNotifier:
    def __init__(self, transport: Optional[httpx.BaseTransport] = None):
        self._http = httpx.Client(timeout=10, transport=transport)

    def notify(self, event: str, order_id: str, data: Mapping[str, Any]) -> int:
        """Send one email per admin address. Returns how many were accepted."""
        if not email_configured():
            logger.info("email not configured, skipping %s notification for %s", event, order_id)
            return 0
        sent = 0
        for to_email in settings.admin_notify_emails:
            try:
                body = {
                    "service_id": settings.emailjs_service_id,
                    "template_id": settings.emailjs_template_id,
                    "user_id": settings.emailjs_public_key,
                    "template_params": _template_params(event, order_id, data, to_email),
                }
                resp = self._http.post(EMAILJS_SEND_URL, json=body)
                resp.raise_for_status()
                sent += 1
            except (httpx.HTTPError, TypeError, ValueError) as exc:
                logger.warning("order %s email to %s failed: %s", event, to_email, exc)
        return sent


def queue_mail(to: str, subject: str, text: str) -> None:
    database.create_document("mailQueue", MailQueueItem(to=to, subject=subject, text=text))
