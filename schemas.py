"""
Database Schemas for the spiritual store

Each Pydantic model describes the documents of one MongoDB collection.
Collection names are plural: categories, products, variants, banners,
users, orders, notifications, discounts.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PACKED = "packed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def naive_utc(value: datetime) -> datetime:
    """Stored datetimes are naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ----------------------- Catalog -----------------------
class Category(BaseModel):
    name: str
    slug: str
    icon_url: str = ""


class ProductMetadata(BaseModel):
    origin: str = ""
    material: str = ""


class Product(BaseModel):
    name: str
    slug: str
    category: str = Field(..., description="Category slug")
    category_name: str = ""
    description: str = ""
    spiritual_meaning: str = ""
    deity: str = ""
    price: float = Field(0, ge=0, description="Base price used when no variant exists")
    images: List[str] = []
    metadata: ProductMetadata = Field(default_factory=ProductMetadata)
    status: Literal["active", "inactive"] = "active"


class Variant(BaseModel):
    product_id: str
    label: str = "Regular"
    price: float = Field(..., ge=0)
    sku: str
    inventory: int = Field(0, ge=0)
    discount: float = Field(0, ge=0, le=100, description="Percent off")
    is_default: bool = False


class Banner(BaseModel):
    title: str
    description: str = ""
    image_url: str
    category_link: Optional[str] = None
    alt_text: str = ""
    is_active: bool = True
    order: int = 0


# ----------------------- Users -----------------------
class Address(BaseModel):
    id: str = Field(default_factory=lambda: str(ObjectId()))
    address: str
    city: str
    state: str
    pincode: str
    full_address: str = ""
    is_default: bool = False


class WishlistItem(BaseModel):
    product_id: str
    name: str
    deity: str = ""
    category_name: str = ""
    price: float = Field(0, ge=0)
    image: Optional[str] = None
    added_at: datetime


class User(BaseModel):
    """Document id is the phone number."""
    phone_number: str
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    addresses: List[Address] = []
    order_ids: List[str] = []
    wishlist: List[WishlistItem] = []
    is_admin: bool = False


# ----------------------- Discounts -----------------------
class Discount(BaseModel):
    code: str = Field(..., min_length=1)
    type: Literal["percentage", "fixed"] = "percentage"
    amount: float = Field(..., gt=0)
    expiry: datetime
    usage_limit: int = Field(..., ge=1)
    used_count: int = Field(0, ge=0)

    @field_validator("code")
    @classmethod
    def upper_code(cls, v):
        return v.strip().upper()

    @field_validator("expiry")
    @classmethod
    def expiry_naive_utc(cls, v):
        return naive_utc(v)


# ----------------------- Orders -----------------------
class CustomerInfo(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=5)
    email: Optional[EmailStr] = None
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=3)

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_none(cls, v):
        return v or None


class LineItem(BaseModel):
    """A cart line as submitted at checkout."""
    product_id: str
    variant_id: str
    name: str
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)
    quantity: int = Field(1, ge=1)
    image: Optional[str] = None

    @property
    def line_id(self) -> str:
        return f"{self.product_id}-{self.variant_id}"


class OrderItem(BaseModel):
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100)
    total_price: float = Field(..., ge=0)


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    status: OrderStatus
    timestamp: datetime
    updated_by: str = "admin"


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    order_number: str
    customer_info: CustomerInfo
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    discount_code: Optional[str] = None
    discount_amount: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    razorpay_order_id: str
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status_history: List[StatusHistoryEntry] = []
    order_date: datetime
    paid_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class Notification(BaseModel):
    user_id: Optional[str] = None
    title: str
    message: str
    type: Literal["order", "product", "system", "promotion"] = "system"
    is_read: bool = False
    data: dict = {}
