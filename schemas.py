"""
Database Schemas

Each Pydantic model represents a collection in the database. Model name is
converted to lowercase for the collection name:
- User -> "user" collection
- Product -> "product" collection
- Order -> "order" collection
- Review -> "review" collection

Documents are stored with snake_case keys. The API speaks camelCase, so every
model accepts and emits camelCase aliases as well.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

OBJECT_ID_PATTERN = r"^[0-9a-fA-F]{24}$"

Role = Literal["user", "admin"]
PaymentMethod = Literal["COD", "CARD"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
SizeFit = Literal["Runs Small", "True to Size", "Runs Large"]

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")


def check_stock_by_size(stock: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
    for size, count in (stock or {}).items():
        # sizes become Mongo field paths ("stock_by_size.M")
        if not size or "." in size or size.startswith("$"):
            raise ValueError(f"Invalid size name: {size!r}")
        if count < 0:
            raise ValueError(f"Stock for size {size} cannot be negative")
    return stock


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)


class ProductImage(ApiModel):
    url: str
    alt: str = ""
    is_primary: bool = False


class Product(ApiModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, max_length=200, description="Product name")
    price: float = Field(..., ge=0, description="Selling price")
    original_price: Optional[float] = Field(None, ge=0, description="Price before discount")
    stock_by_size: Dict[str, int] = Field(default_factory=dict, description="Units in stock per size")
    images: List[ProductImage] = Field(default_factory=list)
    category: str = Field(..., min_length=1, description="Catalog category")
    section: Optional[Literal["men", "women"]] = Field(None, description="Catalog section")
    sku: Optional[str] = None
    description: Optional[str] = Field(None, max_length=2000)
    is_active: bool = Field(True, description="Inactive products are hidden and cannot be ordered")
    rating: float = Field(0, ge=0, le=5, description="Average approved review rating")
    review_count: int = Field(0, ge=0)

    @field_validator("stock_by_size")
    @classmethod
    def check_stock(cls, v: Dict[str, int]) -> Dict[str, int]:
        return check_stock_by_size(v)


class CartLine(ApiModel):
    id: str
    product_id: str = Field(..., pattern=OBJECT_ID_PATTERN)
    size: str
    color: str
    quantity: int = Field(..., ge=1)
    added_at: datetime


class CustomerInfo(ApiModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None


class ShippingAddress(ApiModel):
    full_name: str
    address: str
    city: str
    state: str
    zip_code: str
    phone: str
    country: Optional[str] = None


class User(ApiModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Password hash (server-side)")
    role: Role = Field("user", description="Role: user | admin")
    is_active: bool = Field(True, description="Whether user is active")
    total_orders: int = Field(0, ge=0)
    total_spent: float = Field(0, ge=0)
    phone: Optional[str] = None
    avatar: Optional[str] = None
    address: Optional[ShippingAddress] = None
    cart: List[CartLine] = Field(default_factory=list)
    last_login: Optional[datetime] = None


class OrderItem(ApiModel):
    product_id: str = Field(..., pattern=OBJECT_ID_PATTERN, description="Product ObjectId as string")
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: str
    color: str
    image: Optional[str] = None


class StatusEntry(ApiModel):
    status: OrderStatus
    note: str
    timestamp: datetime
    updated_by: Optional[str] = None


class Order(ApiModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_number: str
    user_id: Optional[str] = Field(None, description="User ObjectId as string, None for guest orders")
    customer_info: CustomerInfo
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    billing_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    payment_intent_id: Optional[str] = None
    currency: str
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    status_history: List[StatusEntry] = Field(default_factory=list)
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class Review(ApiModel):
    """
    Reviews collection schema
    Collection name: "review"
    """
    user_id: str = Field(..., pattern=OBJECT_ID_PATTERN)
    user_name: str
    product_id: str = Field(..., pattern=OBJECT_ID_PATTERN)
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1, max_length=1000)
    size_fit: SizeFit
    verified_buyer: bool = False
    is_approved: bool = True
    helpful_count: int = Field(0, ge=0)


class OrderOut(Order):
    id: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    total_items: int = 0


class UserOut(ApiModel):
    id: str
    name: str
    email: str
    role: Role
    is_active: bool = True
    total_orders: int = 0
    total_spent: float = 0
    phone: Optional[str] = None
    avatar: Optional[str] = None
    address: Optional[ShippingAddress] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ProductOut(Product):
    id: str
    primary_image: Optional[str] = None
    total_stock: int = 0


class ReviewOut(Review):
    id: str
    created_at: datetime
    updated_at: Optional[datetime] = None
