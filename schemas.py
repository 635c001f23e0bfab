"""
Database Schemas

MongoDB collection schemas as Pydantic models.
Each Pydantic model represents a collection in the database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Product -> "product" collection
- Order -> "order" collection

Documents are validated through these models before they are inserted.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Role = Literal["user", "admin"]
Category = Literal["electronics", "clothing", "books", "home", "sports", "toys", "other"]
OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "created", "completed", "failed", "refunded"]
PaymentMethod = Literal["razorpay", "cod", "wallet"]

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled")

# -----------------------------
# USERS
# -----------------------------
class RefreshToken(BaseModel):
    token: str
    created_at: datetime


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address (lowercased)")
    password: str = Field(..., description="bcrypt hash")
    role: Role = "user"
    avatar: Optional[str] = None
    is_email_verified: bool = False
    refresh_tokens: List[RefreshToken] = Field(default_factory=list)
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    backup_codes: List[str] = Field(default_factory=list, description="sha256 of unused backup codes")
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None

# -----------------------------
# PRODUCTS
# -----------------------------
class ProductImage(BaseModel):
    url: str
    alt: Optional[str] = None
    is_primary: bool = False


class Review(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., max_length=500)
    helpful: int = 0
    created_at: datetime
    updated_at: datetime


class Rating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = 0


class Product(BaseModel):
    name: str = Field(..., max_length=100, description="Product name")
    description: str = Field(..., max_length=2000)
    price: float = Field(..., ge=0, description="Price in major currency units")
    original_price: Optional[float] = Field(None, ge=0)
    category: Category
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    stock: int = Field(0, ge=0)
    images: List[ProductImage] = Field(default_factory=list)
    specifications: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    rating: Rating = Field(default_factory=Rating)
    # keyed by reviewer user id, one review per user
    reviews: Dict[str, Review] = Field(default_factory=dict)
    # bumped on every review write, guards the rating recompute
    reviews_version: int = 0
    is_active: bool = True
    is_featured: bool = False
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dict[str, float]] = None
    seller: str = Field(..., description="Seller user id")
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    views: int = 0

# -----------------------------
# ORDERS
# -----------------------------
class OrderItem(BaseModel):
    product: str
    name: str
    image: str = ""
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class ShippingAddress(BaseModel):
    full_name: str
    address: str
    city: str
    state: str
    postal_code: str
    country: str = "India"
    phone: str


class StatusEntry(BaseModel):
    status: str
    note: Optional[str] = None
    timestamp: datetime


class PaymentResult(BaseModel):
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    status: Optional[str] = None


class Order(BaseModel):
    user: str
    order_number: str
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    notes: Optional[str] = None
    items_price: float = Field(..., ge=0)
    shipping_price: float = Field(0, ge=0)
    tax_price: float = Field(0, ge=0)
    total_price: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    status_history: List[StatusEntry] = Field(default_factory=list)
    payment_status: PaymentStatus = "pending"
    payment_result: PaymentResult = Field(default_factory=PaymentResult)
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    tracking_number: Optional[str] = None
