"""
Database Schemas for FashionHub

Collections:
- user: shoppers and admins, with wishlist and loyalty points
- product: catalog entries with embedded reviews
- order: checkouts, one per placed cart
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from typing import Optional, List
from datetime import datetime


class Address(BaseModel):
    street: str
    city: str
    state: Optional[str] = None
    pincode: Optional[str] = None


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    password_hash: str = Field(..., description="Hashed password")
    is_admin: bool = Field(False)
    addresses: List[Address] = Field(default_factory=list)
    wishlist: List[str] = Field(default_factory=list, description="Product ids")
    orders: List[str] = Field(default_factory=list, description="Order ids whose points were credited")
    points: int = Field(0, ge=0, description="Loyalty point balance")
    referral_code: Optional[str] = None
    referred_users: List[str] = Field(default_factory=list)
    referral_earnings: float = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Review(BaseModel):
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: Optional[datetime] = None


class Product(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Product name")
    brand: Optional[str] = None
    category: str = Field(..., description="Category: tops, dresses, shoes, ...")
    price: float = Field(..., ge=0, description="Price")
    description: Optional[str] = Field(None, description="Product description")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    reviews: List[Review] = Field(default_factory=list)
    in_stock: bool = Field(True, alias="inStock", description="In stock")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderStatus(str, Enum):
    PROCESSING = "Processing"
    PACKED = "Packed"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


STATUS_TRANSITIONS = {
    OrderStatus.PROCESSING: {OrderStatus.PACKED, OrderStatus.CANCELLED},
    OrderStatus.PACKED: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


class OrderItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="product")
    size: Optional[str] = None
    color: Optional[str] = None
    quantity: int = Field(..., ge=1)


class ShippingInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    address: str
    city: str
    state: Optional[str] = None
    postal_code: Optional[str] = Field(None, alias="postalCode")
    country: Optional[str] = None


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    shipping_info: ShippingInfo
    payment_intent: Optional[str] = None
    status: OrderStatus = OrderStatus.PROCESSING
    points_earned: int = 0
    points_credited: bool = False
    idempotency_key: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
