from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

import database
import main
from checkout import CheckoutStep


@pytest.fixture
def shopper(make_user, auth_headers):
    make_user("shop-1")
    return auth_headers("shop-1")


@pytest.fixture
def admin_headers(make_user, auth_headers):
    make_user("boss", role="admin", email="owner@luckybeepress.com")
    return auth_headers("boss")


def test_health(client):
    assert client.get("/").json()["message"].endswith("wholesale API running")
    assert client.get("/test").json()["db"] == "ok"


def test_database_unavailable_answers_500(monkeypatch):
    monkeypatch.setattr(database, "db", None)
    response = TestClient(main.app).get("/test")
    assert response.status_code == 500
    assert response.json()["detail"] == "Database not available"


# ----------------------------------------------------------------------------
# Auth gating
# ----------------------------------------------------------------------------

def test_me_and_dashboard_redirects(client, make_user, auth_headers):
    make_user("shop-1", account_status="pending")
    assert client.get("/me").status_code == 401
    me = client.get("/me", headers=auth_headers("shop-1")).json()
    assert (me["uid"], me["is_approved"], me["is_admin"]) == ("shop-1", False, False)
    assert client.get("/dashboard", headers=auth_headers("shop-1")).json() == {"redirect": "/account"}


def test_bad_token_is_rejected(client):
    response = client.get("/products", headers={"Authorization": "Bearer garbage"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token"


def test_approval_unblocks_catalog(client, make_user, auth_headers, admin_headers):
    make_user("shop-2", account_status="pending")
    headers = auth_headers("shop-2")
    response = client.get("/products", headers=headers)
    assert response.status_code == 403
    assert response.json()["detail"] == "Account pending approval"
    assert client.get("/cart", headers=headers).status_code == 403

    pending = client.get("/admin/customers?status=pending", headers=admin_headers).json()
    assert [(c["id"], c["actions"]) for c in pending] == [("shop-2", ["approve"])]

    approved = client.post("/admin/customers/shop-2/approve", headers=admin_headers)
    assert approved.json()["account_status"] == "active"

    assert client.get("/products", headers=headers).status_code == 200
    assert client.get("/dashboard", headers=headers).json() == {"redirect": "/products"}


def test_admin_routes_require_admin(client, shopper):
    assert client.get("/admin/dashboard", headers=shopper).status_code == 403
    assert client.get("/admin/dashboard").status_code == 401


# ----------------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------------

@pytest.fixture
def birthday_cards(make_product):
    start = datetime(2024, 1, 1)
    for n in range(37):
        make_product(f"prod-{n:02d}", f"Birthday Card {n:02d}", created_at=start + timedelta(hours=n))
    make_product("prod-thanks", "Honey Thanks", category="Thank You", featured=True)


def test_catalog_pages(client, shopper, birthday_cards):
    first = client.get("/products?category=Birthday", headers=shopper).json()
    assert (first["total"], first["total_pages"], len(first["items"])) == (37, 3, 16)
    assert first["url"] == "/products?category=Birthday"
    assert first["categories"] == ["All", "Birthday", "Thank You"]

    third = client.get("/products?category=Birthday&page=3", headers=shopper).json()
    assert len(third["items"]) == 5
    assert third["scroll_to_top"] is True
    assert third["url"] == "/products?category=Birthday&page=3"

    second = client.get("/products?category=Birthday&page=2", headers=shopper).json()
    ids = [i["id"] for page in (first, second, third) for i in page["items"]]
    assert len(set(ids)) == 37

    by_name = client.get("/products?category=Birthday&sort=name-desc&page=2", headers=shopper).json()
    assert by_name["sort"] == "name-desc"
    assert by_name["items"][0]["name"] == "Birthday Card 20"


def test_catalog_tabs_and_new_categories(client, shopper, birthday_cards, make_product):
    with ThreadPoolExecutor(max_workers=4) as pool:
        urls = ["/products?category=Birthday&page=3", "/products?category=Thank+You"] * 4
        views = list(pool.map(lambda url: client.get(url, headers=shopper).json(), urls))
    for view in views[::2]:
        assert (view["category"], view["total"], len(view["items"])) == ("Birthday", 37, 5)
    for view in views[1::2]:
        assert (view["category"], view["total"], len(view["items"])) == ("Thank You", 1, 1)

    make_product("prod-love", "Bee Mine", category="Love")
    view = client.get("/products", headers=shopper).json()
    assert view["categories"] == ["All", "Birthday", "Love", "Thank You"]
    assert client.get("/products/categories", headers=shopper).json()["categories"][2] == "Love"


def test_session_registry_hands_out_one_state_per_user():
    registry = main.SessionRegistry(max_size=2)
    created = []

    def factory():
        created.append(object())
        return created[-1]

    with ThreadPoolExecutor(max_workers=8) as pool:
        states = list(pool.map(lambda _: registry.get("shop-1", factory), range(32)))
    assert len(created) == 1
    assert all(state is created[0] for state in states)

    registry.get("shop-2", factory)
    registry.get("shop-3", factory)
    assert "shop-1" not in registry
    assert len(registry) == 2
    assert registry.pop("shop-2") is created[1]
    assert registry.pop("shop-2") is None


def test_catalog_search_without_matches(client, shopper, birthday_cards):
    view = client.get("/products?q=bee&category=Birthday", headers=shopper).json()
    assert view["mode"] == "search"
    assert view["items"] == []
    assert view["show_pagination"] is False
    assert view["clear_search_params"] == {"category": "Birthday"}


def test_product_detail_and_featured(client, shopper, birthday_cards, make_product):
    make_product("prod-draft", "Secret Draft", status="draft")
    assert client.get("/products/honey-thanks", headers=shopper).json()["id"] == "prod-thanks"
    assert client.get("/products/secret-draft", headers=shopper).status_code == 404
    assert [p["id"] for p in client.get("/products/featured").json()["items"]] == ["prod-thanks"]
    assert client.get("/products/categories", headers=shopper).json()["categories"][0] == "All"


def test_live_search_pushes_latest_results(client, token, make_user, make_product):
    make_user("shop-1")
    make_product("prod-1", "Bee Happy")
    make_product("prod-2", "Bee Draft", status="draft")
    with client.websocket_connect(f"/products/search/live?token={token('shop-1')}") as ws:
        ws.send_json({"type": "search", "q": "bee"})
        message = ws.receive_json()
    assert message["type"] == "results"
    assert message["q"] == "bee"
    assert [i["id"] for i in message["items"]] == ["prod-1"]


def test_live_search_rejects_unapproved(client, token, make_user):
    make_user("shop-2", account_status="pending")
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/products/search/live?token={token('shop-2')}") as ws:
            ws.receive_json()


def test_live_search_closes_when_approval_is_revoked(client, db, token, make_user):
    make_user("shop-1")
    with client.websocket_connect(f"/products/search/live?token={token('shop-1')}") as ws:
        db["users"].update_one({"_id": "shop-1"}, {"$set": {"account_status": "suspended"}})
        ws.send_json({"type": "refresh"})
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()


# ----------------------------------------------------------------------------
# Cart and checkout
# ----------------------------------------------------------------------------

def test_checkout_end_to_end(client, shopper, make_product, address):
    make_product("prod-1", "Bee Happy", has_box_option=True, box_wholesale_price=1100)

    assert client.get("/cart", headers=shopper).json()["items"] == []
    assert client.post("/cart/items", json={"product_id": "prod-1"}, headers=shopper).json()["subtotal"] == 1800
    cart = client.post("/cart/items", json={"product_id": "prod-1", "variant": "box"}, headers=shopper).json()
    assert cart["subtotal"] == 2900
    assert cart["item_count"] == 7

    assert client.post("/checkout/place-order", headers=shopper).status_code == 400

    step = client.post("/checkout/shipping", json={"address": address, "same_as_shipping": False}, headers=shopper)
    assert step.json()["step"] == CheckoutStep.BILLING.value
    assert client.post("/checkout/back", headers=shopper).json()["step"] == "shipping"
    client.post("/checkout/shipping", json={"address": address, "same_as_shipping": False}, headers=shopper)
    billing = {**address, "street1": "1 Ledger Way"}
    assert client.post("/checkout/billing", json={"address": billing}, headers=shopper).json()["step"] == "review"
    client.put("/checkout/notes", json={"notes": "Ring the bell"}, headers=shopper)

    placed = client.post("/checkout/place-order", headers=shopper)
    assert placed.status_code == 200
    order = placed.json()["order"]
    assert order["total"] == 2900
    assert order["billing_address"]["street1"] == "1 Ledger Way"
    assert order["notes"] == "Ring the bell"
    assert placed.json()["redirect"] == f"/account/orders/{order['id']}?success=true"

    assert client.get("/cart", headers=shopper).json()["items"] == []
    assert client.get("/checkout", headers=shopper).json()["flow"]["step"] == "shipping"
    history = client.get("/orders", headers=shopper).json()
    assert [o["id"] for o in history] == [order["id"]]
    assert client.get(f"/orders/{order['id']}", headers=shopper).json()["order_number"] == order["order_number"]


def test_other_customers_orders_are_hidden(client, shopper, db, make_user, auth_headers):
    db["orders"].insert_one({"_id": "shop-1-1", "user_id": "shop-1", "order_number": "LBP-240101-AAAA"})
    make_user("shop-3")
    assert client.get("/orders/shop-1-1", headers=auth_headers("shop-3")).status_code == 404
    assert client.get("/orders/shop-1-1", headers=shopper).status_code == 200


def test_cart_errors(client, shopper, make_product):
    make_product("prod-1", "Singles Only")
    assert client.post("/cart/items", json={"product_id": "nope"}, headers=shopper).status_code == 404
    response = client.post("/cart/items", json={"product_id": "prod-1", "variant": "box"}, headers=shopper)
    assert response.status_code == 400
    assert client.post("/cart/items", json={"product_id": "prod-1", "variant": "crate"}, headers=shopper).status_code == 422
    client.post("/cart/items", json={"product_id": "prod-1"}, headers=shopper)
    assert client.delete("/cart/items/prod-1", headers=shopper).json()["items"] == []


def test_billing_out_of_order_is_rejected(client, shopper, address):
    response = client.post("/checkout/billing", json={"address": address}, headers=shopper)
    assert response.status_code == 400


def test_place_order_failure_keeps_review_step(client, shopper, make_product, address, monkeypatch):
    make_product("prod-1", "Bee Happy")
    client.post("/cart/items", json={"product_id": "prod-1"}, headers=shopper)
    client.post("/checkout/shipping", json={"address": address}, headers=shopper)

    def broken(*args, **kwargs):
        raise RuntimeError("order write rejected")

    monkeypatch.setattr(main, "place_order", broken)
    response = client.post("/checkout/place-order", headers=shopper)
    assert response.status_code == 500
    assert response.json()["detail"] == main.PLACE_ORDER_FAILED
    assert client.get("/checkout", headers=shopper).json()["flow"]["step"] == "review"


# ----------------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------------

def test_admin_customer_actions(client, admin_headers, make_user):
    make_user("shop-4")
    assert client.post("/admin/customers/shop-4/suspend", headers=admin_headers).status_code == 400
    assert client.post("/admin/customers/shop-4/suspend?confirm=true", headers=admin_headers).status_code == 200
    assert client.post("/admin/customers/shop-4/approve", headers=admin_headers).status_code == 409
    assert client.post("/admin/customers/shop-4/obliterate", headers=admin_headers).status_code == 404
    assert client.get("/admin/customers?status=unknown", headers=admin_headers).status_code == 400
    detail = client.get("/admin/customers/shop-4", headers=admin_headers).json()
    assert detail["customer"]["account_status"] == "suspended"
    assert detail["actions"] == ["reactivate"]


def test_admin_orders(client, admin_headers, db):
    db["orders"].insert_one({"_id": "shop-1-1", "user_id": "shop-1", "status": "pending",
                             "payment_status": "pending", "created_at": datetime(2024, 1, 1)})
    assert len(client.get("/admin/orders?status=pending", headers=admin_headers).json()) == 1
    shipped = client.put("/admin/orders/shop-1-1/status", json={"status": "shipped"}, headers=admin_headers)
    assert shipped.json()["status"] == "shipped"
    paid = client.put("/admin/orders/shop-1-1/payment-status", json={"payment_status": "paid"}, headers=admin_headers)
    assert paid.json()["paid_at"] is not None
    notes = client.put("/admin/orders/shop-1-1/notes", json={"admin_notes": "Fragile"}, headers=admin_headers)
    assert notes.json()["admin_notes"] == "Fragile"
    assert client.put("/admin/orders/shop-1-1/status", json={"status": "lost"}, headers=admin_headers).status_code == 409
    assert client.get("/admin/orders/missing", headers=admin_headers).status_code == 404
    assert client.post("/admin/orders/reconcile-carts", headers=admin_headers).json() == {"reconciled": 0}


def test_admin_products(client, admin_headers):
    created = client.post("/admin/products", json={"name": "Bee Happy", "wholesale_price": "3.25"},
                          headers=admin_headers).json()
    assert created["wholesale_price"] == 325
    assert created["status"] == "draft"

    listing = client.get("/admin/products", headers=admin_headers).json()
    assert [(p["id"], p["stock_level"]) for p in listing["items"]] == [(created["id"], "ok")]
    assert listing["url"] == "/admin/products"

    edited = client.put(f"/admin/products/{created['id']}", json={"name": "Bee Happier"}, headers=admin_headers)
    assert edited.json()["slug"] == "bee-happier"
    status = client.put(f"/admin/products/{created['id']}/status", json={"status": "active"}, headers=admin_headers)
    assert status.json()["status"] == "active"
    assert client.post("/admin/products", json={"name": "Bad", "category": "Pets"},
                       headers=admin_headers).status_code == 422

    board = client.get("/admin/dashboard", headers=admin_headers).json()
    assert board["stats"]["total_products"] == 1
    labels = client.get("/admin/labels", headers=admin_headers).json()
    assert labels["payment_status"]["partially_refunded"] == "Partial Refund"
