"""
Database Schemas for the Storefront

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.
Request bodies and response helpers live at the bottom.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, EmailStr, model_validator

Category = Literal["Electronics", "Fashion", "Home", "Sports", "Books", "Food", "Other"]
PaymentMethod = Literal["credit_card", "debit_card", "paypal", "upi", "net_banking"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
Role = Literal["user", "admin"]

MAX_QUANTITY = 999


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., min_length=6, description="Plain password, hashed before storage")
    avatar_url: Optional[str] = Field(None)


class UserOut(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: Role = "user"
    avatar_url: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class Dimensions(BaseModel):
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None


class Review(BaseModel):
    user_id: str
    user_name: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=1000)
    price: float = Field(..., ge=0, le=999999)
    discount_price: Optional[float] = Field(None, ge=0)
    image: str = "https://via.placeholder.com/300"
    images: List[str] = []
    category: Category
    stock: int = Field(0, ge=0)
    sku: Optional[str] = None
    weight: Optional[float] = None
    dimensions: Optional[Dimensions] = None
    is_active: bool = True

    @model_validator(mode="after")
    def check_discount(self):
        if self.discount_price is not None and self.discount_price >= self.price:
            raise ValueError("Discount price must be less than regular price")
        return self


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    discount_price: Optional[float] = None
    image: Optional[str] = None
    images: Optional[List[str]] = None
    category: Optional[str] = None
    stock: Optional[int] = None
    sku: Optional[str] = None
    weight: Optional[float] = None
    dimensions: Optional[Dimensions] = None
    is_active: Optional[bool] = None


class CartItem(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    price: float
    discount_price: Optional[float] = None
    image: Optional[str] = None
    quantity: int = Field(..., ge=1, le=MAX_QUANTITY)
    stock: Optional[int] = None
    category: Optional[str] = None
    subtotal: float = 0.0
    added_at: datetime = Field(default_factory=_utcnow)

    @property
    def unit_price(self) -> float:
        return self.discount_price if self.discount_price is not None else self.price


class Cart(BaseModel):
    user: str
    items: List[CartItem] = []
    total_items: int = 0
    subtotal: float = 0.0
    tax_amount: float = 0.0
    shipping_cost: float = 0.0
    discount_amount: float = 0.0
    total_price: float = 0.0
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True


class Address(BaseModel):
    name: str
    phone: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str


class OrderItem(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    quantity: int = Field(..., ge=1, le=MAX_QUANTITY)
    price: float = Field(..., ge=0)
    image: Optional[str] = None
    subtotal: Optional[float] = None
    stock_reserved: bool = False


class Order(BaseModel):
    user: str
    order_number: str
    items: List[OrderItem]
    subtotal: float
    tax_amount: float = 0.0
    shipping_cost: float = 0.0
    discount_amount: float = 0.0
    total_amount: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    status: str = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None
    shipping_address: Address
    billing_address: Optional[Address] = None
    tracking_number: Optional[str] = None
    shipping_provider: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    return_reason: Optional[str] = None
    return_date: Optional[datetime] = None


# Request bodies

class ReviewIn(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = None


class CartAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=MAX_QUANTITY)


class CartUpdate(BaseModel):
    quantity: int


class OrderCreate(BaseModel):
    items: Optional[List[OrderItem]] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method: Optional[PaymentMethod] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: Optional[str] = None
    tracking_number: Optional[str] = None
    shipping_provider: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    return_reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None
