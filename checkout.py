"""
Cart and checkout.

Checkout is a linear flow: shipping -> billing -> review, with shipping going
straight to review when billing is the same address. Placing the order writes
the order and then clears the cart; the clear is guarded and idempotent, and
``reconcile_orphaned_carts`` finishes it for any order whose cart survived.
"""
import logging
from enum import Enum
from typing import Dict, List, Optional

from pymongo.errors import PyMongoError

from auth import Identity
from database import CARTS, ORDERS, create_document, load_cart, load_model, load_product, utcnow
from pricing import generate_order_id, generate_order_number
from schemas import Cart, CartItem, Order, OrderAddress, OrderItem

logger = logging.getLogger(__name__)

BOX_VARIANT = "box"


class CheckoutError(Exception):
    """Raised when a cart or checkout action is not allowed in the current state."""


class ProductUnavailable(CheckoutError):
    pass


class CheckoutStep(str, Enum):
    SHIPPING = "shipping"
    BILLING = "billing"
    REVIEW = "review"


STEPS = [CheckoutStep.SHIPPING, CheckoutStep.BILLING, CheckoutStep.REVIEW]


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

def save_cart(db, cart: Cart) -> Cart:
    cart.recompute()
    cart.updated_at = utcnow()
    doc = cart.model_dump(exclude={"id"})
    doc["_id"] = cart.user_id
    db[CARTS].replace_one({"_id": cart.user_id}, doc, upsert=True)
    cart.id = cart.user_id
    return cart


def add_cart_item(db, user_id: str, product_id: str, quantity: Optional[int] = None, variant: str = "single") -> Cart:
    product = load_product(db, product_id)
    if product is None or product.status != "active":
        raise ProductUnavailable("Product not found")

    if variant == BOX_VARIANT:
        if not product.has_box_option or product.box_wholesale_price is None:
            raise CheckoutError("This product is not sold as a box set")
        variant_id, price, name = BOX_VARIANT, product.box_wholesale_price, f"{product.name} (Box Set)"
        quantity = quantity or 1
    else:
        variant_id, price, name = None, product.wholesale_price, product.name
        quantity = quantity or product.minimum_order_quantity
    if quantity < 1:
        raise CheckoutError("Quantity must be at least 1")

    cart = load_cart(db, user_id) or Cart(user_id=user_id)
    for item in cart.items:
        if item.product_id == product_id and item.variant_id == variant_id:
            item.quantity += quantity
            break
    else:
        cart.items.append(CartItem(
            product_id=product_id,
            variant_id=variant_id,
            name=name,
            sku=product.sku or None,
            image=product.images[0] if product.images else None,
            price=price,
            quantity=quantity,
        ))
    return save_cart(db, cart)


def remove_cart_item(db, user_id: str, product_id: str, variant_id: Optional[str] = None) -> Cart:
    cart = load_cart(db, user_id) or Cart(user_id=user_id)
    cart.items = [i for i in cart.items if not (i.product_id == product_id and i.variant_id == variant_id)]
    return save_cart(db, cart)


# ----------------------------------------------------------------------------
# Checkout flow
# ----------------------------------------------------------------------------

class CheckoutFlow:
    def __init__(self):
        self.step = CheckoutStep.SHIPPING
        self.shipping_address: Optional[OrderAddress] = None
        self.billing_address: Optional[OrderAddress] = None
        self.same_as_shipping = True
        self.notes = ""

    def submit_shipping(self, address: OrderAddress, same_as_shipping: Optional[bool] = None) -> CheckoutStep:
        if self.step != CheckoutStep.SHIPPING:
            raise CheckoutError(f"Shipping address cannot be submitted during {self.step.value}")
        if same_as_shipping is not None:
            self.same_as_shipping = same_as_shipping
        self.shipping_address = address
        if self.same_as_shipping:
            self.billing_address = address
            self.step = CheckoutStep.REVIEW
        else:
            self.step = CheckoutStep.BILLING
        return self.step

    def submit_billing(self, address: OrderAddress) -> CheckoutStep:
        if self.step != CheckoutStep.BILLING:
            raise CheckoutError(f"Billing address cannot be submitted during {self.step.value}")
        self.billing_address = address
        self.step = CheckoutStep.REVIEW
        return self.step

    def back(self) -> CheckoutStep:
        """Return to the shipping form (billing "back" and review "edit")."""
        self.step = CheckoutStep.SHIPPING
        return self.step

    def set_notes(self, notes: str):
        self.notes = notes

    def ready_to_place(self, identity: Optional[Identity], cart: Optional[Cart]) -> bool:
        return (
            self.step == CheckoutStep.REVIEW
            and identity is not None
            and cart is not None
            and len(cart.items) > 0
            and self.shipping_address is not None
            and self.billing_address is not None
        )

    def to_public(self) -> Dict:
        current = STEPS.index(self.step)
        return {
            "step": self.step.value,
            "steps": [
                {
                    "name": step.value,
                    "label": "Billing (Same)" if step == CheckoutStep.BILLING and self.same_as_shipping else step.value.capitalize(),
                    "state": "current" if i == current else "done" if i < current else "todo",
                }
                for i, step in enumerate(STEPS)
            ],
            "same_as_shipping": self.same_as_shipping,
            "shipping_address": self.shipping_address.model_dump() if self.shipping_address else None,
            "billing_address": self.billing_address.model_dump() if self.billing_address else None,
            "notes": self.notes,
        }


def compute_order_totals(cart: Cart) -> Dict[str, int]:
    # shipping and tax are not computed yet
    subtotal = cart.subtotal
    shipping_cost = 0
    tax = 0
    discount = cart.discount
    return {
        "subtotal": subtotal,
        "shipping_cost": shipping_cost,
        "tax": tax,
        "discount": discount,
        "total": subtotal + shipping_cost + tax - discount,
    }


def build_order_items(cart: Cart) -> List[OrderItem]:
    return [
        OrderItem(
            product_id=item.product_id,
            variant_id=item.variant_id,
            name=item.name,
            sku=item.sku,
            image=item.image,
            price=item.price,
            quantity=item.quantity,
            total=item.total,
        )
        for item in cart.items
    ]


def place_order(db, flow: CheckoutFlow, identity: Optional[Identity], cart: Optional[Cart]) -> Optional[Order]:
    """Create the order from the cart snapshot and clear the cart.

    Returns None without writing anything when the flow is not ready.
    """
    if not flow.ready_to_place(identity, cart):
        return None

    now = utcnow()
    order_id = generate_order_id(identity.uid)
    order = Order(
        order_number=generate_order_number(),
        user_id=identity.uid,
        user_email=identity.email or "",
        status="pending",
        payment_status="pending",
        items=build_order_items(cart),
        shipping_address=flow.shipping_address,
        billing_address=flow.billing_address,
        notes=flow.notes or None,
        cart_updated_at=cart.updated_at,
        cart_cleared=False,
        created_at=now,
        updated_at=now,
        **compute_order_totals(cart),
    )
    create_document(db, ORDERS, order, doc_id=order_id)
    order.id = order_id
    logger.info("Order %s (%s) placed by %s", order.order_number, order_id, identity.uid)

    try:
        clear_ordered_cart(db, order)
    except PyMongoError:
        logger.exception("Cart for order %s was not cleared; left for reconciliation", order_id)
    return order


def clear_ordered_cart(db, order: Order) -> bool:
    """Delete the cart an order was placed from, unless it changed afterwards.

    Safe to repeat. Returns True when a cart document was deleted.
    """
    query = {"_id": order.user_id}
    if order.cart_updated_at is not None:
        query["updated_at"] = {"$lte": order.cart_updated_at}
    deleted = db[CARTS].delete_one(query).deleted_count
    db[ORDERS].update_one({"_id": order.id}, {"$set": {"cart_cleared": True}})
    order.cart_cleared = True
    return deleted > 0


def reconcile_orphaned_carts(db) -> int:
    """Finish cart clearing for orders placed before a failure. Returns orders reconciled."""
    reconciled = 0
    for doc in db[ORDERS].find({"cart_cleared": False}):
        order = load_model(Order, doc)
        if clear_ordered_cart(db, order):
            logger.warning("Removed stale cart for order %s", order.id)
        reconciled += 1
    return reconciled
