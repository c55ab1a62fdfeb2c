from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Any, Dict, Optional
from decimal import Decimal
import json
from datetime import datetime
from marketplace.models import OrderStatus, UserRole


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ProductCreate(CamelModel):
    name: str = Field(..., min_length=1, examples=["Organic avocados"])
    category: str = Field(..., min_length=1, examples=["fruit"])
    market_id: str = Field(..., min_length=1, examples=["market-1"])
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    stock_quantity: int = Field(0, ge=0)


class ProductUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = Field(None, min_length=1)
    market_id: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    stock_quantity: Optional[int] = Field(None, ge=0)

    # Fields may be omitted, but not cleared
    @field_validator("name", "category", "market_id", "price", "stock_quantity", mode="before")
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("must not be null")
        return v


class ProductRead(CamelModel):
    id: str
    seller_id: str
    market_id: str
    category: str
    name: str
    description: Optional[str] = None
    price: Decimal
    stock_quantity: int
    created_at: datetime
    updated_at: datetime


class MarketRead(CamelModel):
    id: str
    name: str
    city: str
    address: Optional[str] = None
    schedule: Optional[Dict[str, Any]] = None
    created_at: datetime


class UserRead(CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    role: UserRole


class LineItemRequest(CamelModel):
    product_id: str = Field(..., examples=["product-1"])
    quantity: int = Field(..., gt=0, examples=[2])


class OrderCreate(CamelModel):
    items: List[LineItemRequest] = Field(..., min_length=1)


class LineItem(CamelModel):
    product_id: str
    quantity: int
    unit_price_at_purchase: Decimal


class OrderRead(CamelModel):
    id: str
    user_id: str
    seller_id: str
    items: List[LineItem]
    total_amount: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: datetime

    @field_validator('items', mode='before')
    @classmethod
    def parse_items(cls, v: Any) -> List[LineItem]:
        if isinstance(v, str):
            return json.loads(v)
        return v
