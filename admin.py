"""
Back-office operations: customer approval, order and product management, dashboard.

Status actions write one field plus updated_at. There is no versioning, so
concurrent edits from two admin sessions resolve as last write wins.
"""
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator
from pymongo import DESCENDING

from database import ORDERS, PRODUCTS, USERS, create_document, doc_to_public, load_model, utcnow
from pricing import generate_product_id, generate_sku, to_cents, unique_slug
from schemas import (
    ACCOUNT_STATUSES,
    BOX_SET_CATEGORIES,
    CATEGORIES,
    ORDER_STATUSES,
    PAYMENT_STATUSES,
    PRODUCT_STATUSES,
    SINGLE_MIN_QTY,
    Product,
)

logger = logging.getLogger(__name__)

ORDER_STATUS_LABELS = {
    "pending": "Pending",
    "confirmed": "Confirmed",
    "processing": "Processing",
    "shipped": "Shipped",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
    "refunded": "Refunded",
}

PAYMENT_STATUS_LABELS = {
    "pending": "Pending",
    "paid": "Paid",
    "failed": "Failed",
    "refunded": "Refunded",
    "partially_refunded": "Partial Refund",
}

CUSTOMER_STATUS_FILTERS = {
    "all": "All Customers",
    "pending": "Pending Approval",
    "active": "Active",
    "suspended": "Suspended",
}

# action -> (statuses it applies to, resulting status)
CUSTOMER_ACTIONS = {
    "approve": (("pending",), "active"),
    "suspend": (("active",), "suspended"),
    "reactivate": (("suspended",), "active"),
}

PRICE_DEFAULTS = {
    "wholesale_price": 300,
    "retail_price": 600,
    "cost_per_item": 150,
    "box_wholesale_price": 1100,
    "box_retail_price": 2200,
}

DASHBOARD_LIST_LIMIT = 5


class DocumentNotFound(Exception):
    pass


class StatusTransitionError(Exception):
    pass


class ConfirmationRequired(StatusTransitionError):
    pass


def _status_filter(field: str, status: str, allowed) -> Dict[str, Any]:
    if status == "all":
        return {}
    if status not in allowed:
        raise ValueError(f"Unknown status filter {status!r}")
    return {field: status}


# ----------------------------------------------------------------------------
# Customers
# ----------------------------------------------------------------------------

def list_customers(db, status: str = "all") -> List[dict]:
    query = _status_filter("account_status", status, ACCOUNT_STATUSES)
    cursor = db[USERS].find(query).sort("created_at", DESCENDING)
    return [doc_to_public(d) for d in cursor]


def get_customer(db, user_id: str) -> Dict[str, Any]:
    user = db[USERS].find_one({"_id": user_id})
    if not user:
        raise DocumentNotFound("Customer not found")
    orders = db[ORDERS].find({"user_id": user_id}).sort("created_at", DESCENDING)
    return {"customer": doc_to_public(user), "orders": [doc_to_public(o) for o in orders]}


def available_customer_actions(user: Dict[str, Any]) -> List[str]:
    status = user.get("account_status")
    actions = []
    for action, (from_statuses, _) in CUSTOMER_ACTIONS.items():
        if status not in from_statuses:
            continue
        if action == "suspend" and user.get("role") == "admin":
            continue
        actions.append(action)
    return actions


def transition_customer(db, user_id: str, action: str, confirm: bool = False) -> Dict[str, Any]:
    if action not in CUSTOMER_ACTIONS:
        raise StatusTransitionError(f"Unknown action {action!r}")
    user = db[USERS].find_one({"_id": user_id})
    if not user:
        raise DocumentNotFound("Customer not found")
    if action not in available_customer_actions(user):
        raise StatusTransitionError(f"Cannot {action} a customer whose status is {user.get('account_status')!r}")
    if action == "suspend" and not confirm:
        raise ConfirmationRequired("Suspending a customer must be confirmed")

    new_status = CUSTOMER_ACTIONS[action][1]
    now = utcnow()
    db[USERS].update_one({"_id": user_id}, {"$set": {"account_status": new_status, "updated_at": now}})
    logger.info("Customer %s: %s -> %s", user_id, user.get("account_status"), new_status)
    user.update({"account_status": new_status, "updated_at": now})
    return doc_to_public(user)


# ----------------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------------

def list_orders(db, status: str = "all") -> List[dict]:
    query = _status_filter("status", status, ORDER_STATUSES)
    cursor = db[ORDERS].find(query).sort("created_at", DESCENDING)
    return [doc_to_public(d) for d in cursor]


def get_order(db, order_id: str) -> Dict[str, Any]:
    order = db[ORDERS].find_one({"_id": order_id})
    if not order:
        raise DocumentNotFound("Order not found")
    return doc_to_public(order)


def _update_order(db, order_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    changes["updated_at"] = utcnow()
    result = db[ORDERS].update_one({"_id": order_id}, {"$set": changes})
    if result.matched_count == 0:
        raise DocumentNotFound("Order not found")
    return get_order(db, order_id)


def update_order_status(db, order_id: str, status: str) -> Dict[str, Any]:
    if status not in ORDER_STATUSES:
        raise StatusTransitionError(f"Unknown order status {status!r}")
    changes: Dict[str, Any] = {"status": status}
    if status == "cancelled":
        changes["cancelled_at"] = utcnow()
    elif status == "refunded":
        changes["refunded_at"] = utcnow()
    return _update_order(db, order_id, changes)


def update_payment_status(db, order_id: str, payment_status: str) -> Dict[str, Any]:
    if payment_status not in PAYMENT_STATUSES:
        raise StatusTransitionError(f"Unknown payment status {payment_status!r}")
    changes: Dict[str, Any] = {"payment_status": payment_status}
    if payment_status == "paid":
        changes["paid_at"] = utcnow()
    elif payment_status in ("refunded", "partially_refunded"):
        changes["refunded_at"] = utcnow()
    return _update_order(db, order_id, changes)


def set_admin_notes(db, order_id: str, notes: Optional[str]) -> Dict[str, Any]:
    return _update_order(db, order_id, {"admin_notes": notes or None})


# ----------------------------------------------------------------------------
# Products
# ----------------------------------------------------------------------------

Money = Union[str, float, int, None]
Listish = Union[str, List[str], None]


class ProductForm(BaseModel):
    """Product editor fields; prices are dollars, lists may be comma separated."""
    name: str = Field(..., min_length=1)
    description: str = ""
    short_description: Optional[str] = None
    category: str = "Birthday"
    sku: str = ""
    wholesale_price: Money = "3.00"
    retail_price: Money = "6.00"
    cost_per_item: Money = "1.50"
    has_box_option: bool = False
    box_wholesale_price: Money = "11.00"
    box_retail_price: Money = "22.00"
    inventory: int = 100
    low_stock_threshold: int = 50
    minimum_order_quantity: int = SINGLE_MIN_QTY
    weight_oz: Optional[float] = None
    status: str = "draft"
    featured: bool = False
    tags: Listish = None
    images: Listish = None

    @field_validator("category")
    @classmethod
    def known_category(cls, v):
        if v is not None and v not in CATEGORIES:
            raise ValueError(f"Unknown category {v!r}")
        return v

    @field_validator("status")
    @classmethod
    def known_status(cls, v):
        if v is not None and v not in PRODUCT_STATUSES:
            raise ValueError(f"Unknown product status {v!r}")
        return v


class ProductUpdateForm(ProductForm):
    name: Optional[str] = None
    category: Optional[str] = None
    sku: Optional[str] = None
    has_box_option: Optional[bool] = None
    inventory: Optional[int] = None
    low_stock_threshold: Optional[int] = None
    minimum_order_quantity: Optional[int] = None
    status: Optional[str] = None
    featured: Optional[bool] = None


def _split_list(value: Listish) -> List[str]:
    if value is None:
        return []
    parts = value.split(",") if isinstance(value, str) else value
    return [p.strip() for p in parts if p and p.strip()]


def _normalize_form(values: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(values)
    for field, default in PRICE_DEFAULTS.items():
        if field not in out:
            continue
        cents = to_cents(out[field])
        if cents is None:
            cents = None if field == "cost_per_item" else default
        out[field] = cents
    for field in ("tags", "images"):
        if field in out:
            out[field] = _split_list(out[field])
    if "short_description" in out:
        out["short_description"] = out["short_description"] or None
    return out


def _apply_box_rules(values: Dict[str, Any]) -> Dict[str, Any]:
    has_box = bool(values.get("has_box_option")) and values.get("category") in BOX_SET_CATEGORIES
    values["has_box_option"] = has_box
    if has_box:
        for field in ("box_wholesale_price", "box_retail_price"):
            if values.get(field) is None:
                values[field] = PRICE_DEFAULTS[field]
    else:
        values["box_wholesale_price"] = None
        values["box_retail_price"] = None
    return values


def create_product(db, form: ProductForm) -> Dict[str, Any]:
    values = _apply_box_rules(_normalize_form(form.model_dump()))
    if not values["sku"]:
        values["sku"] = generate_sku(values["category"], db[PRODUCTS].count_documents({"category": values["category"]}) + 1)
    product = Product(
        slug=unique_slug(db, values["name"]),
        sales_count=0,
        view_count=0,
        track_inventory=True,
        **values,
    )
    product_id = generate_product_id()
    create_document(db, PRODUCTS, product, doc_id=product_id)
    logger.info("Created product %s (%s)", product_id, product.sku)
    return doc_to_public(db[PRODUCTS].find_one({"_id": product_id}))


def update_product(db, product_id: str, form: ProductUpdateForm) -> Dict[str, Any]:
    existing = db[PRODUCTS].find_one({"_id": product_id})
    if not existing:
        raise DocumentNotFound("Product not found")
    changes = {k: v for k, v in _normalize_form(form.model_dump(exclude_unset=True)).items() if v is not None or k in PRICE_DEFAULTS}
    merged = {**existing, **changes}
    if changes.get("name") and changes["name"] != existing.get("name"):
        merged["slug"] = unique_slug(db, changes["name"], exclude_id=product_id)
    product = load_model(Product, _apply_box_rules(merged))
    updates = product.model_dump(exclude={"id", "created_at"})
    updates["updated_at"] = utcnow()
    db[PRODUCTS].update_one({"_id": product_id}, {"$set": updates})
    return doc_to_public(db[PRODUCTS].find_one({"_id": product_id}))


def stock_level(product: Dict[str, Any]) -> str:
    inventory = product.get("inventory") or 0
    if inventory <= 0:
        return "out"
    if inventory < product.get("low_stock_threshold", 50):
        return "low"
    return "ok"


def set_product_status(db, product_id: str, status: str) -> Dict[str, Any]:
    if status not in PRODUCT_STATUSES:
        raise StatusTransitionError(f"Unknown product status {status!r}")
    result = db[PRODUCTS].update_one({"_id": product_id}, {"$set": {"status": status, "updated_at": utcnow()}})
    if result.matched_count == 0:
        raise DocumentNotFound("Product not found")
    return doc_to_public(db[PRODUCTS].find_one({"_id": product_id}))


# ----------------------------------------------------------------------------
# Dashboard
# ----------------------------------------------------------------------------

def dashboard(db) -> Dict[str, Any]:
    stats = {
        "total_orders": db[ORDERS].count_documents({}),
        "pending_orders": db[ORDERS].count_documents({"status": "pending"}),
        "total_customers": db[USERS].count_documents({}),
        "pending_customers": db[USERS].count_documents({"account_status": "pending"}),
        "total_products": db[PRODUCTS].count_documents({}),
    }
    recent_orders = db[ORDERS].find({}).sort("created_at", DESCENDING).limit(DASHBOARD_LIST_LIMIT)
    pending = db[USERS].find({"account_status": "pending"}).limit(DASHBOARD_LIST_LIMIT)
    return {
        "stats": stats,
        "recent_orders": [doc_to_public(o) for o in recent_orders],
        "pending_customers": [doc_to_public(u) for u in pending],
    }
