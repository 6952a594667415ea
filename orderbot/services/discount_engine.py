"""
Money rules: threshold discounts, delivery fee and order totals.

Discount rules are read in list order and every rule whose minimum is met
replaces the previous pick, so the *last* qualifying rule wins. That equals
"highest threshold wins" only when the list is sorted ascending by minimum;
``DiscountRepository`` keeps it that way by sorting on every write.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from ..models.orders import CartLine, DeliverySettings, DeliveryType, DiscountConfig, DiscountRule


@dataclass(frozen=True)
class DiscountResult:
    discount: int = 0
    percentage: int = 0
    description: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.discount > 0


@dataclass(frozen=True)
class OrderTotals:
    subtotal: int
    discount: DiscountResult
    delivery_fee: int
    delivery_type: DeliveryType

    @property
    def total(self) -> int:
        return self.subtotal - self.discount.discount + self.delivery_fee


NO_DISCOUNT = DiscountResult()


def select_rule(rules: Iterable[DiscountRule], subtotal: int) -> Optional[DiscountRule]:
    best: Optional[DiscountRule] = None
    for rule in rules:
        if rule.minimum <= subtotal:
            best = rule
    return best


def compute_discount(config: DiscountConfig | None, subtotal: int) -> DiscountResult:
    if config is None or not config.enabled or subtotal <= 0:
        return NO_DISCOUNT
    rule = select_rule(config.rules, subtotal)
    if rule is None:
        return NO_DISCOUNT
    return DiscountResult(
        discount=subtotal * rule.percentage // 100,
        percentage=rule.percentage,
        description=rule.description or None,
    )


def compute_delivery_fee(settings: DeliverySettings | None, amount: int) -> int:
    """Flat fee for delivery, waived once ``amount`` (post-discount) reaches ``free_from``."""

    if settings is None or not settings.enabled:
        return 0
    if settings.free_from is not None and amount >= settings.free_from:
        return 0
    return settings.fee


def cart_subtotal(lines: Iterable[CartLine]) -> int:
    return sum(line.subtotal for line in lines)


def compute_totals(
    lines: Iterable[CartLine],
    *,
    discounts: DiscountConfig | None,
    delivery: DeliverySettings | None,
    delivery_type: DeliveryType = DeliveryType.PICKUP,
) -> OrderTotals:
    subtotal = cart_subtotal(lines)
    discount = compute_discount(discounts, subtotal)
    fee = 0
    if delivery_type == DeliveryType.DELIVERY:
        fee = compute_delivery_fee(delivery, subtotal - discount.discount)
    return OrderTotals(
        subtotal=subtotal,
        discount=discount,
        delivery_fee=fee,
        delivery_type=delivery_type,
    )
