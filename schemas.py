"""
Database Schemas

MongoDB collection schemas and request bodies, as Pydantic models.
Each collection model's lowercased name is the collection name:
- Product -> "product"
- Order -> "order"
- User -> "user"
- LoyaltyEntry -> "loyaltyentry"

Derived fields (discount percentage, order number, loyalty tier) are never
stored; the service modules compute them when serializing.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, field_validator

ZIP_CODE_PATTERN = r"^\d{5}(-\d{4})?$"
PHONE_PATTERN = r"^\+?[\d\s\-\(\)]{10,}$"

GUEST_USER_ID = "guest"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# ---------- Embedded value objects ----------

class Address(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., pattern=ZIP_CODE_PATTERN)
    country: str = Field("United States", min_length=1)
    phone: str = Field(..., pattern=PHONE_PATTERN)


class AddressUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: Optional[str] = Field(None, min_length=1)
    street: Optional[str] = Field(None, min_length=1)
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    zip_code: Optional[str] = Field(None, pattern=ZIP_CODE_PATTERN)
    country: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)


class CartItem(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    product_id: str
    quantity: int = Field(..., ge=1, le=20)
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None


class NotificationPreferences(BaseModel):
    order_updates: bool = True
    promotions: bool = True
    recommendations: bool = True


class Preferences(BaseModel):
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)
    language: str = "en"
    currency: str = "USD"


# ---------- Collections ----------

class Product(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(..., min_length=1, description="Uppercased product code")
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    image: str
    images: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    category: Optional[str] = None
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    rating: Optional[float] = Field(None, ge=0, le=5)
    reviews: int = Field(0, ge=0)
    in_stock: bool = True

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class Order(BaseModel):
    user_id: str = Field(..., description="User id, or 'guest'")
    items: List[CartItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    shipping_cost: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    shipping_address: Address
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    loyalty_points: int = Field(0, ge=0, description="Points earned by this order")
    loyalty_credited: bool = False


class User(BaseModel):
    uid: str = Field(..., description="External identity reference")
    email: Optional[EmailStr] = None
    display_name: str = Field(..., min_length=1)
    photo_url: Optional[str] = None
    password_hash: Optional[str] = Field(None, description="Set for local accounts only")
    addresses: List[Address] = Field(default_factory=list)
    preferences: Preferences = Field(default_factory=Preferences)
    loyalty_points: int = Field(0, ge=0)
    version: int = 0


class LoyaltyEntry(BaseModel):
    user_id: str
    points: int = Field(..., ge=0)
    reason: str
    order_id: Optional[str] = None


# ---------- Lookup collaborator ----------

class ProductDescription(BaseModel):
    """What the external product lookup returns for a code."""
    title: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    images: List[str] = Field(..., min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    rating: Optional[float] = Field(None, ge=0, le=5)
    rating_count: Optional[int] = Field(None, ge=0)
    available: bool = True


# ---------- Request bodies ----------

class OrderCreate(BaseModel):
    items: List[CartItem]
    shipping_address: Address
    merge_shipping: bool = True


class StatusUpdate(BaseModel):
    status: OrderStatus


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    photo_url: Optional[HttpUrl] = None


class NotificationPreferencesUpdate(BaseModel):
    order_updates: Optional[bool] = None
    promotions: Optional[bool] = None
    recommendations: Optional[bool] = None


class PreferencesUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    notifications: Optional[NotificationPreferencesUpdate] = None
    language: Optional[str] = Field(None, min_length=2, max_length=5)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class RegisterInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginInput(BaseModel):
    email: EmailStr
    password: str
