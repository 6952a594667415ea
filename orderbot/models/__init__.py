from __future__ import annotations

from .catalog import CatalogStats, CategorySummary, Product
from .messages import BotReply, InboundMessage, MediaAttachment, MessageResponse, OutboundMessage
from .orders import (
    BusinessProfile,
    CartLine,
    Customer,
    CustomerStats,
    DeliverySettings,
    DeliveryType,
    DiscountConfig,
    DiscountRule,
    Order,
    OrderLine,
    OrderSettings,
)

__all__ = [
    "BotReply",
    "BusinessProfile",
    "CartLine",
    "CatalogStats",
    "CategorySummary",
    "Customer",
    "CustomerStats",
    "DeliverySettings",
    "DeliveryType",
    "DiscountConfig",
    "DiscountRule",
    "InboundMessage",
    "MediaAttachment",
    "MessageResponse",
    "Order",
    "OrderLine",
    "OrderSettings",
    "OutboundMessage",
    "Product",
]
