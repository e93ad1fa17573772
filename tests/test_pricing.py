import re
from datetime import datetime

import pytest

from pricing import (
    format_price,
    from_cents,
    generate_order_id,
    generate_order_number,
    generate_product_id,
    generate_sku,
    generate_slug,
    to_cents,
    unique_slug,
)


@pytest.mark.parametrize("amount, expected", [
    ("3.00", 300),
    ("$11", 1100),
    (2.675, 268),
    ("0.005", 1),
    (6, 600),
    ("", None),
    ("  ", None),
    ("abc", None),
    (None, None),
])
def test_to_cents(amount, expected):
    assert to_cents(amount) == expected


def test_from_cents_and_format_price():
    assert from_cents(1250) == 12.5
    assert from_cents(None) == 0
    assert format_price(1200) == "$12.00"
    assert format_price(123400) == "$1,234.00"
    assert format_price(None) == "$0.00"
    assert format_price(-200) == "-$2.00"


def test_generate_slug():
    assert generate_slug("Bee Happy Birthday!") == "bee-happy-birthday"
    assert generate_slug("  Thank   You -- So Much  ") == "thank-you-so-much"
    assert generate_slug("Mother's Day Bouquet") == "mothers-day-bouquet"


def test_unique_slug_appends_counter(db):
    db["products"].insert_one({"_id": "prod-1", "slug": "honey-pot"})
    db["products"].insert_one({"_id": "prod-2", "slug": "honey-pot-2"})
    assert unique_slug(db, "Honey Pot") == "honey-pot-3"
    assert unique_slug(db, "Honey Pot", exclude_id="prod-1") == "honey-pot"
    assert unique_slug(db, "Fresh Name") == "fresh-name"


def test_generate_sku():
    assert generate_sku("Birthday", 1) == "LBP-BDAY-001"
    assert generate_sku("Thank You", 42) == "LBP-THNK-042"
    assert generate_sku("Pets", 7) == "LBP-PETS-007"


def test_generate_order_number():
    number = generate_order_number(datetime(2024, 3, 9, 12, 0))
    assert re.fullmatch(r"LBP-240309-[A-Z0-9]{4}", number)


def test_generated_ids():
    assert re.fullmatch(r"prod-\d+-[a-z0-9]{4}", generate_product_id())
    assert re.fullmatch(r"uid-7-\d+", generate_order_id("uid-7"))
