"""
MongoDB access for the storefront.

Connection settings come from DATABASE_URL / DATABASE_NAME. When they are not
set ``db`` stays ``None`` and routes answer 500 through ``get_db``.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from fastapi import HTTPException
from pydantic import BaseModel, ValidationError
from pymongo import ASCENDING, DESCENDING, MongoClient

from schemas import Cart, Order, Product, User

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

USERS = "users"
PRODUCTS = "products"
ORDERS = "orders"
CARTS = "carts"
MAIL = "mail"

client = MongoClient(DATABASE_URL) if DATABASE_URL and DATABASE_NAME else None
db = client[DATABASE_NAME] if client is not None else None

M = TypeVar("M", bound=BaseModel)


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def utcnow() -> datetime:
    # BSON stores naive UTC, so keep in-memory values comparable with stored ones
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_datetime(value: Any) -> Optional[datetime]:
    """Coerce stored timestamp shapes into a naive UTC datetime.

    Accepts datetimes, epoch seconds or milliseconds, ISO-8601 strings and
    ``{"seconds": ..., "nanoseconds": ...}`` mappings exported from other
    document stores. Anything else yields ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, dict) and "seconds" in value:
        seconds = value["seconds"] + value.get("nanoseconds", 0) / 1e9
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        try:
            return to_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def collection(database, name: str):
    return database[name]


def doc_to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(database, collection_name: str, data: Union[BaseModel, dict], doc_id: Optional[str] = None) -> str:
    """Insert a document stamping created_at/updated_at, returning its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude={"id"})
    else:
        data_dict = dict(data)
        data_dict.pop("id", None)
    now = utcnow()
    if data_dict.get("created_at") is None:
        data_dict["created_at"] = now
    data_dict["updated_at"] = now
    if doc_id is not None:
        data_dict["_id"] = doc_id
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[List[tuple]] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def load_model(model: Type[M], doc: Optional[Dict[str, Any]]) -> Optional[M]:
    if not doc:
        return None
    data = doc_to_public(doc)
    for key, value in data.items():
        if key.endswith("_at") and value is not None and not isinstance(value, datetime):
            data[key] = to_datetime(value)
    try:
        return model.model_validate(data)
    except ValidationError:
        logger.error("Stored %s document %s does not validate", model.__name__, doc.get("_id"))
        raise


def load_by_id(database, collection_name: str, model: Type[M], doc_id: str) -> Optional[M]:
    return load_model(model, database[collection_name].find_one({"_id": doc_id}))


def ensure_indexes(database):
    database[PRODUCTS].create_index([("status", ASCENDING), ("category", ASCENDING)])
    database[PRODUCTS].create_index([("slug", ASCENDING)])
    database[PRODUCTS].create_index([("status", ASCENDING), ("featured", ASCENDING)])
    database[USERS].create_index([("account_status", ASCENDING), ("created_at", DESCENDING)])
    database[ORDERS].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database[ORDERS].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database[ORDERS].create_index([("cart_cleared", ASCENDING)])
    database[CARTS].create_index([("user_id", ASCENDING)], unique=True)


def load_user(database, user_id: str) -> Optional[User]:
    return load_by_id(database, USERS, User, user_id)


def load_product(database, product_id: str) -> Optional[Product]:
    return load_by_id(database, PRODUCTS, Product, product_id)


def load_cart(database, user_id: str) -> Optional[Cart]:
    return load_by_id(database, CARTS, Cart, user_id)


def load_order(database, order_id: str) -> Optional[Order]:
    return load_by_id(database, ORDERS, Order, order_id)
