"""
Database Schemas for the marketplace

Each Pydantic model represents a collection in MongoDB.
Class name in snake_case = collection name (e.g., PriceSnapshot -> "price_snapshot").
References between collections are stored as id strings; only `_id` is an ObjectId.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

OrderStatus = Literal["pending", "paid", "failed", "cancelled"]
FulfillmentStatus = Literal["created", "processed", "shipped", "delivered", "cancelled"]
IntentStatus = Literal["pending", "success", "failed", "expired"]
ProductStatus = Literal["active", "inactive", "suspended"]
StoreStatus = Literal["pending", "active", "inactive", "suspended"]
CategoryStatus = Literal["active", "inactive"]
PaymentMethod = Literal["bank_transfer", "credit_card", "e_wallet", "cod"]


class Document(BaseModel):
    id: str

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]):
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return cls.model_validate(data)


class User(Document):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    is_admin: bool = False


class Address(Document):
    user_id: str
    label: str = Field("Home", description="Home, Work, etc.")
    line1: str = ""
    city: str = ""
    country: str = ""
    postal_code: str = ""


class Store(Document):
    owner_id: str
    name: str
    status: StoreStatus = "pending"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Category(Document):
    name: str
    parent_id: Optional[str] = None
    status: CategoryStatus = "active"
    is_leaf: bool = True
    has_active_product: bool = False


class Product(Document):
    name: str
    slug: str
    reseller_price: float = Field(..., ge=0)
    consumer_price: float = Field(..., ge=0)
    description: str = ""
    stock: int = 0
    sold_count: int = 0
    store_id: str
    category_id: str
    status: ProductStatus = "active"
    updated_at: Optional[datetime] = None


class PriceSnapshot(Document):
    """Frozen commercial attributes of a product at order time."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    slug: str
    reseller_price: float
    consumer_price: float
    description: str = ""
    store_id: str
    category_id: str
    created_at: datetime


class LineItem(Document):
    model_config = ConfigDict(frozen=True)

    order_id: str
    snapshot_id: str
    product_id: str
    store_id: str
    quantity: int
    unit_price: float
    subtotal: float
    product_name: str
    created_at: datetime


class Order(Document):
    user_id: str
    shipping_address_id: str
    total_amount: float
    invoice_code: str
    payment_method: PaymentMethod
    status: OrderStatus = "pending"
    fulfillment_status: FulfillmentStatus = "created"
    stock_reserved: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    items: List[LineItem] = []


class PaymentIntent(Document):
    order_id: str
    method: PaymentMethod
    status: IntentStatus = "pending"
    expires_at: datetime
    gateway_ref: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    def is_effectively_pending(self, now: datetime) -> bool:
        return self.status == "pending" and self.expires_at > now


class CartLine(BaseModel):
    product_id: str
    quantity: int = 1
