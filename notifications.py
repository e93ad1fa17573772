"""
Owner notifications for new customers and new orders.

Emails are not sent from here: a ``{to, message: {subject, html, text}}``
document is queued in the ``mail`` collection and the external mail worker
delivers it. ``watch_inserts`` turns collection inserts into notifications.
"""
import html
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from pymongo.errors import PyMongoError

from config import OWNER_EMAIL, STORE_NAME, setup_logging
from database import MAIL, ORDERS, USERS, to_datetime, utcnow
from pricing import format_price
from schemas import Mail, MailMessage

logger = logging.getLogger(__name__)

CELL = 'style="padding: 10px; border: 1px solid #ddd;"'
LABEL_CELL = 'style="padding: 10px; border: 1px solid #ddd; font-weight: bold;"'
SECTION = 'style="margin-top: 20px; border-bottom: 2px solid #f59e0b; padding-bottom: 5px;"'
BOX = 'style="padding: 15px; background: #f9fafb; border-radius: 5px; margin-top: 10px;"'


def _e(value: Any) -> str:
    return html.escape(str(value))


def _timestamp(value: Any = None) -> str:
    return (to_datetime(value) or utcnow()).strftime("%Y-%m-%d %H:%M:%S UTC")


def _rows(rows: List[tuple]) -> str:
    return "".join(f"<tr><td {LABEL_CELL}>{_e(label)}</td><td {CELL}>{_e(value)}</td></tr>" for label, value in rows)


def _address_lines(address: Optional[Dict[str, Any]]) -> List[str]:
    if not address:
        return []
    name = f"{address.get('first_name', '')} {address.get('last_name', '')}".strip()
    lines = [name, address.get("company"), address.get("street1"), address.get("street2")]
    city_line = f"{address.get('city', '')}, {address.get('state', '')} {address.get('postal_code', '')}".strip()
    lines += [city_line, address.get("country")]
    return [line for line in lines if line]


def compose_user_created(user_id: str, user: Dict[str, Any]) -> Mail:
    email = user.get("email") or "N/A"
    display_name = user.get("display_name") or "Not provided"
    signed_up = _timestamp(user.get("created_at"))
    rows = [("Email", email), ("Display Name", display_name), ("User ID", user_id), ("Signup Time", signed_up)]
    body = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<h2 style="color: #f59e0b;">New Customer Signup!</h2>'
        f"<p>A new customer has signed up on {_e(STORE_NAME)}.</p>"
        f'<table style="border-collapse: collapse; width: 100%; margin-top: 20px;">{_rows(rows)}</table>'
        "</div>"
    )
    text = "New customer signup!\n\n" + "\n".join(f"{label}: {value}" for label, value in rows)
    return Mail(
        to=OWNER_EMAIL,
        message=MailMessage(subject=f"🐝 New Customer Signup - {STORE_NAME}", html=body, text=text),
    )


def compose_order_created(order_id: str, order: Dict[str, Any]) -> Mail:
    order_number = order.get("order_number")
    items = order.get("items") or []
    item_lines = [
        f"• {item.get('name', 'Item')} x{item.get('quantity', 0)} - {format_price(item.get('price'))}"
        for item in items
    ]
    address = _address_lines(order.get("shipping_address"))
    details = [
        ("Order Number", order_number or order_id),
        ("Customer Email", order.get("user_email") or "N/A"),
        ("Order Status", order.get("status") or "pending"),
        ("Payment Status", order.get("payment_status") or "pending"),
    ]
    summary = [
        ("Subtotal", format_price(order.get("subtotal"))),
        ("Shipping", format_price(order.get("shipping_cost"))),
        ("Tax", format_price(order.get("tax"))),
    ]
    if order.get("discount"):
        summary.append(("Discount", f"-{format_price(order.get('discount'))}"))
    summary.append(("Total", format_price(order.get("total"))))
    notes = order.get("notes")
    placed_at = _timestamp(order.get("created_at"))

    parts = [
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">',
        '<h2 style="color: #f59e0b;">New Order Received!</h2>',
        f"<p>A new order has been placed on {_e(STORE_NAME)}.</p>",
        f"<h3 {SECTION}>Order Details</h3>",
        f'<table style="border-collapse: collapse; width: 100%; margin-top: 10px;">{_rows(details)}</table>',
        f"<h3 {SECTION}>Items</h3>",
        f"<div {BOX}>{'<br>'.join(_e(line) for line in item_lines) or 'No items'}</div>",
        f"<h3 {SECTION}>Shipping Address</h3>",
        f"<div {BOX}>{'<br>'.join(_e(line) for line in address) or 'No shipping address provided'}</div>",
        f"<h3 {SECTION}>Order Summary</h3>",
        f'<table style="border-collapse: collapse; width: 100%; margin-top: 10px;">{_rows(summary)}</table>',
    ]
    if notes:
        parts += [f"<h3 {SECTION}>Customer Notes</h3>", f"<div {BOX}>{_e(notes)}</div>"]
    parts += [f'<p style="margin-top: 30px; color: #666; font-size: 12px;">Order placed at: {_e(placed_at)}</p>', "</div>"]

    text_parts = [
        "New Order Received!",
        "",
        *(f"{label}: {value}" for label, value in details),
        "",
        "Items:",
        "\n".join(item_lines) or "No items",
        "",
        "Shipping Address:",
        "\n".join(address) or "No shipping address provided",
        "",
        "Order Summary:",
        *(f"{label}: {value}" for label, value in summary),
        "",
    ]
    if notes:
        text_parts += [f"Customer Notes: {notes}", ""]
    text_parts.append(f"Order placed at: {placed_at}")

    subject = f"🐝 New Order {order_number or '#' + order_id[:8]} - {STORE_NAME}"
    return Mail(to=OWNER_EMAIL, message=MailMessage(subject=subject, html="".join(parts), text="\n".join(text_parts)))


def enqueue_mail(db, mail: Mail) -> Optional[str]:
    try:
        return str(db[MAIL].insert_one(mail.model_dump()).inserted_id)
    except PyMongoError:
        logger.exception("Failed to queue notification email %r", mail.message.subject)
        return None


def on_user_created(db, user_id: str, user: Dict[str, Any]) -> Optional[str]:
    mail_id = enqueue_mail(db, compose_user_created(user_id, user))
    if mail_id:
        logger.info("New user notification email queued for %s", user.get("email"))
    return mail_id


def on_order_created(db, order_id: str, order: Dict[str, Any]) -> Optional[str]:
    mail_id = enqueue_mail(db, compose_order_created(order_id, order))
    if mail_id:
        logger.info("New order notification email queued for %s (%s)", order_id, order.get("order_number"))
    return mail_id


HANDLERS: Dict[str, Callable[[Any, str, Dict[str, Any]], Optional[str]]] = {
    USERS: on_user_created,
    ORDERS: on_order_created,
}


def dispatch_insert_event(db, change: Dict[str, Any]) -> Optional[str]:
    """Route one change-stream event to its notification handler."""
    if change.get("operationType") != "insert":
        return None
    handler = HANDLERS.get(change.get("ns", {}).get("coll"))
    if handler is None:
        return None
    document = change.get("fullDocument")
    if not document:
        logger.error("No data in insert event %s", change.get("_id"))
        return None
    return handler(db, str(change["documentKey"]["_id"]), document)


def watch_inserts(db):
    pipeline = [{"$match": {"operationType": "insert", "ns.coll": {"$in": list(HANDLERS)}}}]
    with db.watch(pipeline) as stream:
        logger.info("Watching %s for new documents", ", ".join(HANDLERS))
        for change in stream:
            dispatch_insert_event(db, change)


if __name__ == "__main__":
    from database import db as mongo_db

    setup_logging()
    if mongo_db is None:
        logger.error("DATABASE_URL and DATABASE_NAME must be set")
        sys.exit(1)
    watch_inserts(mongo_db)
