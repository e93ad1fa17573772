"""
Database Schemas for the wholesale storefront

Each Pydantic model represents a document in a MongoDB collection.
Money fields are integer cents.

We store:
- User ("users", keyed by the identity provider's user id)
- Product ("products")
- Cart ("carts", one per user, keyed by user id)
- Order ("orders")
- Mail ("mail", a queue consumed by the external delivery worker)
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

Role = Literal["customer", "admin"]
AccountStatus = Literal["pending", "active", "suspended"]
ProductStatus = Literal["draft", "active", "archived"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "partially_refunded"]

ACCOUNT_STATUSES = ("pending", "active", "suspended")
PRODUCT_STATUSES = ("draft", "active", "archived")
ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "partially_refunded")

CATEGORIES = [
    "Birthday",
    "Thank You",
    "Holiday",
    "Christmas",
    "Hanukkah",
    "Season's Greetings",
    "New Year's",
    "Valentine's Day",
    "Love",
    "Sympathy",
    "Congratulations",
    "Baby",
    "Wedding",
    "Graduation",
    "Mother's Day",
    "Father's Day",
    "Rosh Hashanah",
    "Easter",
    "Everyday",
    "Blank",
    "Other",
]

# Categories sold as boxed sets as well as single cards
BOX_SET_CATEGORIES = ("Birthday", "Thank You", "Holiday", "Christmas", "Everyday", "Blank")

SINGLE_MIN_QTY = 6


class OrderAddress(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    company: Optional[str] = None
    street1: str = Field(..., min_length=1)
    street2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = ""
    postal_code: str = Field(..., min_length=1)
    country: str = "US"
    phone: Optional[str] = None


class User(BaseModel):
    """
    Users collection schema
    Collection name: "users"
    """
    id: str
    email: EmailStr
    display_name: Optional[str] = None
    role: Role = "customer"
    account_status: AccountStatus = "pending"
    phone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "products"
    """
    id: Optional[str] = None
    name: str
    slug: str
    description: str = ""
    short_description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    category: str
    tags: List[str] = Field(default_factory=list)
    status: ProductStatus = "draft"
    featured: bool = False

    wholesale_price: int = Field(0, ge=0)
    retail_price: int = Field(0, ge=0)
    cost_per_item: Optional[int] = Field(None, ge=0)

    has_box_option: bool = False
    box_wholesale_price: Optional[int] = Field(None, ge=0)
    box_retail_price: Optional[int] = Field(None, ge=0)

    sku: str = ""
    inventory: int = 0
    low_stock_threshold: int = 50
    track_inventory: bool = True
    minimum_order_quantity: int = Field(SINGLE_MIN_QTY, ge=1)
    weight_oz: Optional[float] = None

    sales_count: int = 0
    view_count: int = 0

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _box_pricing_only_with_box_option(self):
        if not self.has_box_option:
            self.box_wholesale_price = None
            self.box_retail_price = None
        return self


class CartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = Field(None, description="'box' for a boxed set, None for single cards")
    name: str
    sku: Optional[str] = None
    image: Optional[str] = None
    price: int = Field(..., ge=0, description="Snapshot unit price in cents")
    quantity: int = Field(1, ge=1)

    @property
    def total(self) -> int:
        return self.price * self.quantity


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "carts" (document id is the owner's user id)
    """
    id: Optional[str] = None
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    subtotal: int = 0
    discount: int = 0
    item_count: int = 0
    updated_at: Optional[datetime] = None

    def recompute(self) -> "Cart":
        self.subtotal = sum(item.total for item in self.items)
        self.item_count = sum(item.quantity for item in self.items)
        return self


class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    name: str
    sku: Optional[str] = None
    image: Optional[str] = None
    price: int
    quantity: int
    total: int


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "orders"
    """
    id: Optional[str] = None
    order_number: str
    user_id: str
    user_email: str = ""
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    items: List[OrderItem]
    shipping_address: Optional[OrderAddress] = None
    billing_address: Optional[OrderAddress] = None
    subtotal: int
    shipping_cost: int = 0
    tax: int = 0
    discount: int = 0
    total: int
    payment_method: str = "card"
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    cart_updated_at: Optional[datetime] = None
    cart_cleared: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MailMessage(BaseModel):
    subject: str
    html: str
    text: str


class Mail(BaseModel):
    """
    Mail queue schema
    Collection name: "mail"
    """
    to: str
    message: MailMessage
