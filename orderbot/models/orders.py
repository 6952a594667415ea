from __future__ import annotations

from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .catalog import Product


class DeliveryType(StrEnum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class CartLine(BaseModel):
    """Product committed (or about to be committed) to a cart."""

    product: Product
    quantity: int = Field(default=1, ge=1)

    @property
    def unit_price(self) -> int:
        return self.product.unit_price

    @property
    def subtotal(self) -> int:
        return self.product.unit_price * self.quantity


class DiscountRule(BaseModel):
    minimum: int = Field(ge=0)
    percentage: int = Field(ge=1, le=100)
    description: str = ""


class DiscountConfig(BaseModel):
    enabled: bool = False
    rules: List[DiscountRule] = Field(default_factory=list)

    def sorted_by_minimum(self) -> "DiscountConfig":
        return self.model_copy(update={"rules": sorted(self.rules, key=lambda rule: rule.minimum)})


class DeliverySettings(BaseModel):
    enabled: bool = False
    fee: int = Field(default=0, ge=0)
    free_from: Optional[int] = Field(default=None, ge=0)


class OrderSettings(BaseModel):
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    cart_expiry_minutes: Optional[float] = Field(default=None, gt=0)


class BusinessProfile(BaseModel):
    """Business data shown to customers plus the automation switches."""

    name: str = "Mi Negocio"
    address: str = ""
    hours: str = ""
    payment_methods: str = ""
    phone: str = ""
    whatsapp: str = ""
    owner_id: Optional[str] = None
    auto_replies_enabled: bool = True
    notifications_enabled: bool = True
    notification_target: Optional[str] = None
    ignored_contacts: List[str] = Field(default_factory=list)


class OrderLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    quantity: int
    unit_price: int
    subtotal: int


class Order(BaseModel):
    """Immutable snapshot of a finalized cart."""

    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    customer_name: str
    created_at: str
    lines: List[OrderLine]
    subtotal: int
    discount: int = 0
    discount_percentage: int = 0
    discount_description: Optional[str] = None
    delivery_fee: int = 0
    total: int
    delivery_type: DeliveryType = DeliveryType.PICKUP
    status: str = "confirmed"
    payment_status: str = "pending"


class Customer(BaseModel):
    id: str
    name: str
    registered_at: str
    last_interaction: str
    total_orders: int = 0
    total_spent: int = 0
    orders: List[Order] = Field(default_factory=list)


class CustomerStats(BaseModel):
    total_customers: int = 0
    total_orders: int = 0
    total_sold: int = 0
