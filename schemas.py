"""
Database Schemas for the E-commerce App

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name (OrderItem -> "orderitem").
References to other collections are stored as ObjectIds.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def is_cent_precise(value) -> bool:
    """Prices carry at most two decimal places."""
    return Decimal(str(value)).as_tuple().exponent >= -2


class Category(BaseModel):
    name: str = Field(..., min_length=1)
    icon: Optional[str] = None
    color: Optional[str] = None


class Product(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    rich_description: str = ""
    image: str = ""
    images: List[str] = []
    brand: str = ""
    price: float = Field(0, ge=0)
    category: Any = Field(..., description="Category ObjectId")
    count_in_stock: int = Field(..., ge=0)
    rating: float = 0
    num_reviews: int = 0
    is_featured: bool = False

    @field_validator("price")
    @classmethod
    def price_in_cents(cls, v):
        if not is_cent_precise(v):
            raise ValueError("price must have at most 2 decimal places")
        return v


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password")
    phone: str
    is_admin: bool = False
    street: str = ""
    apartment: str = ""
    zip: str = ""
    city: str = ""
    country: str = ""


class OrderItem(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    quantity: int = Field(..., ge=1)
    product: Any = Field(..., description="Product ObjectId")


class Order(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    order_items: List[Any] = Field(default_factory=list, description="OrderItem ObjectIds, in placement order")
    shipping_address1: str
    shipping_address2: Optional[str] = None
    city: str
    zip: str
    country: str
    phone: str
    status: str = "Pending"
    total_price: float = Field(..., ge=0)
    user: Any = Field(None, description="User ObjectId")
    date_ordered: datetime


class OrderDeletion(BaseModel):
    """Outcome of a cascading order delete, one list per item outcome."""
    order_id: str
    deleted_items: List[str] = []
    missing_items: List[str] = []
    failed_items: List[str] = []
