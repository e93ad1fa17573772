import logging
import os
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError

import admin
from auth import (
    AuthContext,
    AuthSession,
    dashboard_redirect,
    decode_identity,
    require_admin,
    require_approved,
    require_user,
)
from catalog import ADMIN_DEFAULT_SORT, BrowseSession, CatalogBrowser, featured_products, get_product_by_slug
from checkout import (
    CheckoutError,
    CheckoutFlow,
    ProductUnavailable,
    add_cart_item,
    place_order,
    reconcile_orphaned_carts,
    remove_cart_item,
)
from config import ADMIN_PRODUCTS_PER_PAGE, PRODUCTS_PER_PAGE, STORE_NAME, setup_logging
from database import ORDERS, db as default_db, doc_to_public, ensure_indexes, get_db, get_documents, load_cart
from schemas import Cart, OrderAddress
from search import SearchDebouncer, SearchResult

logger = logging.getLogger(__name__)

# ----------------------------------------------------------------------------
# App Setup
# ----------------------------------------------------------------------------

app = FastAPI(title=f"{STORE_NAME} Wholesale API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

PLACE_ORDER_FAILED = "There was an error placing your order. Please try again."
WS_POLICY_VIOLATION = 1008


# ----------------------------------------------------------------------------
# Per-user view state
# ----------------------------------------------------------------------------

S = TypeVar("S")


class SessionRegistry(Generic[S]):
    """Per-user view state held in process memory, least recently used evicted first.

    Sync routes run on a threadpool, so the map is only touched under the lock.
    """

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._items: "OrderedDict[str, S]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, user_id: str, factory: Callable[[], S]) -> S:
        with self._lock:
            if user_id in self._items:
                self._items.move_to_end(user_id)
                return self._items[user_id]
            state = factory()
            self._items[user_id] = state
            if len(self._items) > self.max_size:
                self._items.popitem(last=False)
            return state

    def pop(self, user_id: str) -> Optional[S]:
        with self._lock:
            return self._items.pop(user_id, None)

    def clear(self):
        with self._lock:
            self._items.clear()

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._items

    def __len__(self) -> int:
        return len(self._items)


product_sessions: SessionRegistry[BrowseSession] = SessionRegistry()
admin_sessions: SessionRegistry[BrowseSession] = SessionRegistry()
checkout_flows: SessionRegistry[CheckoutFlow] = SessionRegistry()


def reset_sessions():
    for registry in (product_sessions, admin_sessions, checkout_flows):
        registry.clear()


def _uid(ctx: AuthContext) -> str:
    return ctx.identity.uid


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class AddCartRequest(BaseModel):
    product_id: str
    quantity: Optional[int] = Field(None, ge=1)
    variant: str = Field("single", pattern="^(single|box)$")


class ShippingRequest(BaseModel):
    address: OrderAddress
    same_as_shipping: Optional[bool] = None


class BillingRequest(BaseModel):
    address: OrderAddress


class NotesRequest(BaseModel):
    notes: str = ""


class StatusRequest(BaseModel):
    status: str


class PaymentStatusRequest(BaseModel):
    payment_status: str


class AdminNotesRequest(BaseModel):
    admin_notes: Optional[str] = None


# ----------------------------------------------------------------------------
# Auth Endpoints
# ----------------------------------------------------------------------------

@app.get("/me")
def me(ctx: AuthContext = Depends(require_user)):
    return ctx.to_public()


@app.get("/dashboard")
def dashboard_target(ctx: AuthContext = Depends(require_user)):
    return {"redirect": dashboard_redirect(ctx)}


# ----------------------------------------------------------------------------
# Product Endpoints
# ----------------------------------------------------------------------------

@app.get("/products")
def list_products(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    sort: Optional[str] = Query(None, description="field-asc|field-desc, e.g. name-asc"),
    ctx: AuthContext = Depends(require_approved),
    db=Depends(get_db),
):
    params = {"q": q, "category": category, "page": page, "sort": sort}
    session = product_sessions.get(_uid(ctx), BrowseSession)
    browser = CatalogBrowser.for_request(db, session, params, page_size=PRODUCTS_PER_PAGE)
    return browser.load().model_dump()


@app.get("/products/categories")
def list_categories(ctx: AuthContext = Depends(require_approved), db=Depends(get_db)):
    return {"categories": CatalogBrowser(db).load_categories()}


@app.get("/products/featured")
def list_featured(db=Depends(get_db)):
    return {"items": featured_products(db)}


@app.get("/products/{slug}")
def get_product(slug: str, ctx: AuthContext = Depends(require_approved), db=Depends(get_db)):
    product = get_product_by_slug(db, slug, active_only=not ctx.is_admin)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.websocket("/products/search/live")
async def live_search(websocket: WebSocket, token: Optional[str] = None, db=Depends(get_db)):
    """Search-as-you-type. Client sends ``{"type": "search", "q": ...}`` and
    ``{"type": "token", "token": ...}`` on refresh; only the latest search's
    results are pushed back."""
    session = AuthSession(db)
    try:
        identity = decode_identity(token) if token else None
    except HTTPException:
        identity = None
    if not session.handle_identity_change(identity).can_shop:
        await websocket.close(code=WS_POLICY_VIOLATION)
        return
    await websocket.accept()

    allowed = {"value": True}

    def on_auth_change(ctx: AuthContext):
        allowed["value"] = ctx.can_shop

    unsubscribe = session.subscribe(on_auth_change)
    browser = CatalogBrowser(db)

    async def push(text: str, result: SearchResult):
        await websocket.send_json({
            "type": "results",
            "q": text,
            "items": [hit.to_product_card() for hit in result.hits],
            "total": len(result.hits),
        })

    debouncer = SearchDebouncer(browser.run_search, push)
    try:
        while True:
            message = await websocket.receive_json()
            kind = message.get("type")
            if kind == "search":
                debouncer.submit(str(message.get("q") or ""))
            elif kind == "token":
                try:
                    identity = decode_identity(str(message.get("token") or ""))
                except HTTPException:
                    identity = None
                session.handle_identity_change(identity)
            elif kind == "refresh":
                session.refresh_user_data()
            if not allowed["value"]:
                await websocket.close(code=WS_POLICY_VIOLATION)
                break
    except WebSocketDisconnect:
        logger.debug("Live search client disconnected")
    finally:
        debouncer.close()
        unsubscribe()


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

def _cart_or_empty(db, user_id: str) -> Dict[str, Any]:
    cart = load_cart(db, user_id) or Cart(id=user_id, user_id=user_id)
    return cart.model_dump()


@app.get("/cart")
def get_cart(ctx: AuthContext = Depends(require_approved), db=Depends(get_db)):
    return _cart_or_empty(db, _uid(ctx))


@app.post("/cart/items")
def add_to_cart(body: AddCartRequest, ctx: AuthContext = Depends(require_approved), db=Depends(get_db)):
    try:
        cart = add_cart_item(db, _uid(ctx), body.product_id, quantity=body.quantity, variant=body.variant)
    except ProductUnavailable as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CheckoutError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return cart.model_dump()


@app.delete("/cart/items/{product_id}")
def remove_from_cart(product_id: str, variant_id: Optional[str] = None,
                     ctx: AuthContext = Depends(require_approved), db=Depends(get_db)):
    return remove_cart_item(db, _uid(ctx), product_id, variant_id=variant_id).model_dump()


# ----------------------------------------------------------------------------
# Checkout
# ----------------------------------------------------------------------------

def _flow(ctx: AuthContext) -> CheckoutFlow:
    return checkout_flows.get(_uid(ctx), CheckoutFlow)


@app.get("/checkout")
def get_checkout(ctx: AuthContext = Depends(require_approved), db=Depends(get_db)):
    return {"flow": _flow(ctx).to_public(), "cart": _cart_or_empty(db, _uid(ctx))}


@app.post("/checkout/shipping")
def checkout_shipping(body: ShippingRequest, ctx: AuthContext = Depends(require_approved)):
    flow = _flow(ctx)
    try:
        flow.submit_shipping(body.address, same_as_shipping=body.same_as_shipping)
    except CheckoutError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return flow.to_public()


@app.post("/checkout/billing")
def checkout_billing(body: BillingRequest, ctx: AuthContext = Depends(require_approved)):
    flow = _flow(ctx)
    try:
        flow.submit_billing(body.address)
    except CheckoutError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return flow.to_public()


@app.post("/checkout/back")
def checkout_back(ctx: AuthContext = Depends(require_approved)):
    flow = _flow(ctx)
    flow.back()
    return flow.to_public()


@app.put("/checkout/notes")
def checkout_notes(body: NotesRequest, ctx: AuthContext = Depends(require_approved)):
    flow = _flow(ctx)
    flow.set_notes(body.notes)
    return flow.to_public()


@app.post("/checkout/place-order")
def checkout_place_order(ctx: AuthContext = Depends(require_approved), db=Depends(get_db)):
    uid = _uid(ctx)
    flow = _flow(ctx)
    try:
        order = place_order(db, flow, ctx.identity, load_cart(db, uid))
    except Exception:
        logger.exception("Error placing order for %s", uid)
        raise HTTPException(status_code=500, detail=PLACE_ORDER_FAILED)
    if order is None:
        raise HTTPException(status_code=400, detail="Checkout incomplete")
    checkout_flows.pop(uid)
    return {"order": order.model_dump(), "redirect": f"/account/orders/{order.id}?success=true"}


# ----------------------------------------------------------------------------
# Orders (customer history)
# ----------------------------------------------------------------------------

@app.get("/orders")
def list_my_orders(ctx: AuthContext = Depends(require_user), db=Depends(get_db)):
    cursor = get_documents(db, ORDERS, {"user_id": _uid(ctx)}, sort=[("created_at", -1)])
    return [doc_to_public(o) for o in cursor]


@app.get("/orders/{order_id}")
def get_my_order(order_id: str, ctx: AuthContext = Depends(require_user), db=Depends(get_db)):
    doc = db[ORDERS].find_one({"_id": order_id, "user_id": _uid(ctx)})
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    return doc_to_public(doc)


# ----------------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------------

def _admin_call(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except admin.DocumentNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except admin.ConfirmationRequired as e:
        raise HTTPException(status_code=400, detail=str(e))
    except admin.StatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PyMongoError:
        logger.exception("Admin action %s failed", fn.__name__)
        raise HTTPException(status_code=500, detail="Update failed")


@app.get("/admin/dashboard")
def admin_dashboard(ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    return admin.dashboard(db)


@app.get("/admin/labels")
def admin_labels(ctx: AuthContext = Depends(require_admin)):
    return {
        "order_status": admin.ORDER_STATUS_LABELS,
        "payment_status": admin.PAYMENT_STATUS_LABELS,
        "customer_status": admin.CUSTOMER_STATUS_FILTERS,
    }


@app.get("/admin/customers")
def admin_customers(status: str = "all", ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    customers = _admin_call(admin.list_customers, db, status)
    return [{**c, "actions": admin.available_customer_actions(c)} for c in customers]


@app.get("/admin/customers/{user_id}")
def admin_customer_detail(user_id: str, ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    detail = _admin_call(admin.get_customer, db, user_id)
    detail["actions"] = admin.available_customer_actions(detail["customer"])
    return detail


@app.post("/admin/customers/{user_id}/{action}")
def admin_customer_action(user_id: str, action: str, confirm: bool = False,
                          ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    if action not in admin.CUSTOMER_ACTIONS:
        raise HTTPException(status_code=404, detail="Unknown action")
    return _admin_call(admin.transition_customer, db, user_id, action, confirm=confirm)


@app.get("/admin/orders")
def admin_orders(status: str = "all", ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    return _admin_call(admin.list_orders, db, status)


@app.post("/admin/orders/reconcile-carts")
def admin_reconcile_carts(ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    return {"reconciled": reconcile_orphaned_carts(db)}


@app.get("/admin/orders/{order_id}")
def admin_order_detail(order_id: str, ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    return _admin_call(admin.get_order, db, order_id)


@app.put("/admin/orders/{order_id}/status")
def admin_order_status(order_id: str, body: StatusRequest,
                       ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    return _admin_call(admin.update_order_status, db, order_id, body.status)


@app.put("/admin/orders/{order_id}/payment-status")
def admin_payment_status(order_id: str, body: PaymentStatusRequest,
                         ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    return _admin_call(admin.update_payment_status, db, order_id, body.payment_status)


@app.put("/admin/orders/{order_id}/notes")
def admin_order_notes(order_id: str, body: AdminNotesRequest,
                      ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    return _admin_call(admin.set_admin_notes, db, order_id, body.admin_notes)


@app.get("/admin/products")
def admin_products(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    page: Optional[str] = Query(None),
    sort: Optional[str] = Query(None),
    ctx: AuthContext = Depends(require_admin),
    db=Depends(get_db),
):
    browser = CatalogBrowser.for_request(
        db,
        admin_sessions.get(_uid(ctx), BrowseSession),
        {"q": q, "category": category, "page": page, "sort": sort},
        page_size=ADMIN_PRODUCTS_PER_PAGE,
        active_only=False,
        default_sort=ADMIN_DEFAULT_SORT,
        path="/admin/products",
    )
    view = browser.load()
    view.items = [{**item, "stock_level": admin.stock_level(item)} for item in view.items]
    return view.model_dump()


@app.post("/admin/products")
def admin_create_product(body: admin.ProductForm, ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    product = _admin_call(admin.create_product, db, body)
    admin_sessions.pop(_uid(ctx))
    return product


@app.put("/admin/products/{product_id}")
def admin_update_product(product_id: str, body: admin.ProductUpdateForm,
                         ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    product = _admin_call(admin.update_product, db, product_id, body)
    admin_sessions.pop(_uid(ctx))
    return product


@app.put("/admin/products/{product_id}/status")
def admin_product_status(product_id: str, body: StatusRequest,
                         ctx: AuthContext = Depends(require_admin), db=Depends(get_db)):
    return _admin_call(admin.set_product_status, db, product_id, body.status)


# ----------------------------------------------------------------------------
# Health and Test
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": f"{STORE_NAME} wholesale API running"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    try:
        collections = db.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except PyMongoError as e:
        logger.exception("Database check failed")
        return {"backend": "ok", "db": f"error: {e}"}


# ----------------------------------------------------------------------------
# Startup Hook
# ----------------------------------------------------------------------------

@app.on_event("startup")
def on_startup():
    setup_logging()
    if default_db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; database routes will answer 500")
        return
    try:
        ensure_indexes(default_db)
    except PyMongoError:
        logger.exception("Creating indexes failed")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
