import random
import re
import string
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from config import ORDER_NUMBER_PREFIX

CATEGORY_CODES = {
    "Birthday": "BDAY",
    "Thank You": "THNK",
    "Holiday": "HOLI",
    "Christmas": "XMAS",
    "Hanukkah": "HANU",
    "Season's Greetings": "SEAS",
    "New Year's": "NEWY",
    "Valentine's Day": "VDAY",
    "Love": "LOVE",
    "Sympathy": "SYMP",
    "Congratulations": "CONG",
    "Baby": "BABY",
    "Wedding": "WEDD",
    "Graduation": "GRAD",
    "Mother's Day": "MOMS",
    "Father's Day": "DADS",
    "Rosh Hashanah": "ROSH",
    "Easter": "EAST",
    "Everyday": "EVRY",
    "Blank": "BLNK",
    "Other": "OTHR",
}


def to_cents(amount: Union[str, float, int, Decimal, None]) -> Optional[int]:
    """Convert a dollar amount into integer cents, or None when it is blank or not a number."""
    if amount is None:
        return None
    if isinstance(amount, str):
        amount = amount.strip().lstrip("$")
        if not amount:
            return None
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: Optional[int]) -> float:
    return (cents or 0) / 100


def format_price(cents: Optional[int]) -> str:
    value = Decimal(cents or 0) / 100
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def generate_slug(name: str) -> str:
    slug = name.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def unique_slug(db, name: str, exclude_id: Optional[str] = None) -> str:
    base = generate_slug(name) or "product"
    slug = base
    n = 2
    while True:
        query = {"slug": slug}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if db["products"].find_one(query, {"_id": 1}) is None:
            return slug
        slug = f"{base}-{n}"
        n += 1


def category_code(category: str) -> str:
    if category in CATEGORY_CODES:
        return CATEGORY_CODES[category]
    letters = re.sub(r"[^A-Za-z]", "", category).upper()
    return (letters[:4] or "MISC").ljust(4, "X")


def generate_sku(category: str, sequence: int) -> str:
    return f"{ORDER_NUMBER_PREFIX}-{category_code(category)}-{sequence:03d}"


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"{ORDER_NUMBER_PREFIX}-{now.strftime('%y%m%d')}-{suffix}"


def _millis() -> int:
    return int(time.time() * 1000)


def generate_product_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=4))
    return f"prod-{_millis()}-{suffix}"


def generate_order_id(user_id: str) -> str:
    return f"{user_id}-{_millis()}"
