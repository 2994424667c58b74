"""Pydantic schemas for orders.

Request schemas validate inbound payloads and query strings before the
service is called; ``OrderReadDTO`` is the single response shape for an
order.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .domain import Order


class OrderLineIn(BaseModel):
    """Input schema for a single order line.

    Attributes:
        product_id: Catalog product id.
        quantity: Positive integer indicating units requested.
    """

    product_id: int = Field(gt=0)
    quantity: int = Field(gt=0)


class ShippingAddressIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    street: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    country: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20)


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    Totals are never accepted from the client: they are computed from catalog
    prices.
    """

    items: List[OrderLineIn] = Field(min_length=1)
    shipping_address: ShippingAddressIn


class UpdateStatusDTO(BaseModel):
    # Checked against OrderStatus by the service, which answers VALIDATION_ERROR
    status: str = Field(min_length=1)


class ListQueryDTO(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    status: Optional[str] = None
    user_id: Optional[int] = Field(default=None, gt=0)


class OrderItemOut(BaseModel):
    product_id: int
    quantity: int
    price: Decimal
    subtotal: Decimal


class OrderReadDTO(BaseModel):
    id: str
    user_id: int
    status: str
    total_amount: Decimal
    shipping_address: dict
    items: List[OrderItemOut]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            user_id=order.user_id,
            status=order.status.value,
            total_amount=order.total_amount,
            shipping_address=order.shipping_address.as_dict(),
            items=[
                OrderItemOut(product_id=i.product_id, quantity=i.quantity, price=i.price, subtotal=i.subtotal)
                for i in order.items
            ],
            created_at=order.created_at,
            updated_at=order.updated_at,
        )

    def to_json(self) -> dict:
        return self.model_dump(mode="json")
