"""
Database Schemas for the storefront

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name.

Cart and order items carry denormalized name/price/image fields. They are a
snapshot frozen at add-to-cart or checkout time and are never re-synced from
the live product.
"""
from typing import List, Optional, Literal
from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field
from datetime import datetime


class ShippingAddress(BaseModel):
    full_name: str
    address: str
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = "India"
    phone: str = Field(..., pattern=r"^\d{10}$")


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: Optional[str] = None
    is_admin: bool = False


class Variant(BaseModel):
    size: str = Field(..., min_length=1)
    color_name: str = Field(..., min_length=1)
    color_hex: str = "#000000"
    stock: int = Field(0, ge=0)


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    category_id: Optional[str] = None
    images: List[str] = []
    variants: List[Variant] = Field(..., min_length=1)


class CartItem(BaseModel):
    product_id: str
    name: str
    price: float
    image: Optional[str] = None
    size: str
    color_name: str
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float
    image: Optional[str] = None
    size: str
    color_name: str
    quantity: int = Field(..., ge=1)


class PaymentDetails(BaseModel):
    gateway_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    method: Optional[str] = None


class Order(BaseModel):
    user_id: str
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_details: PaymentDetails = PaymentDetails()
    total_price: float = Field(..., ge=0)
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    is_cancelled: bool = False
    # pending -> applying -> applied, or conflict when a decrement was refused
    stock_status: Literal["pending", "applying", "applied", "conflict"] = "pending"
    stock_lock_at: Optional[datetime] = None
    # item indexes whose decrement was started / confirmed
    stock_claimed: List[int] = []
    stock_applied: List[int] = []


class StockPick(BaseModel):
    """A desired variant and quantity, as sent by carts and checkouts."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    product_id: str = Field(..., validation_alias=AliasChoices("product_id", "productId", "product", "id"))
    size: str
    color_name: str = Field(..., validation_alias=AliasChoices("color_name", "colorName"))
    quantity: int = Field(..., ge=1)
