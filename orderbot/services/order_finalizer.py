from __future__ import annotations

import logging
from typing import List, Sequence

from ..models.orders import CartLine, DeliveryType, Order, OrderLine
from .discount_engine import OrderTotals, compute_totals
from .error_handling import ValidationError
from .metrics import MetricsService, get_metrics_service
from .notifications import OrderNotifier
from .storage import Storage, utc_now_iso

logger = logging.getLogger(__name__)


def snapshot_lines(lines: Sequence[CartLine]) -> List[OrderLine]:
    return [
        OrderLine(
            product_id=line.product.id,
            name=line.product.display_name,
            quantity=line.quantity,
            unit_price=line.unit_price,
            subtotal=line.subtotal,
        )
        for line in lines
    ]


class OrderFinalizer:
    """
    Turns a closing cart into a persisted order.

    Saving the order is the commit point: when it fails the error propagates
    and the caller keeps the cart open. Everything after it (customer
    aggregates, owner notification) is best-effort and only logged.
    """

    def __init__(
        self,
        storage: Storage,
        notifier: OrderNotifier | None = None,
        metrics: MetricsService | None = None,
    ) -> None:
        self._storage = storage
        self._notifier = notifier
        self._metrics = metrics or get_metrics_service()

    async def preview(self, lines: Sequence[CartLine], delivery_type: DeliveryType) -> OrderTotals:
        discounts = await self._storage.discounts.load()
        settings = await self._storage.order_settings.load()
        return compute_totals(
            lines,
            discounts=discounts,
            delivery=settings.delivery,
            delivery_type=delivery_type,
        )

    async def finalize(
        self,
        customer_id: str,
        contact_name: str | None,
        lines: Sequence[CartLine],
        delivery_type: DeliveryType = DeliveryType.PICKUP,
    ) -> Order:
        if not lines:
            raise ValidationError("cannot finalize an empty cart", reason="empty_cart")
        order_lines = snapshot_lines(lines)
        totals = await self.preview(lines, delivery_type)
        created_at = utc_now_iso()

        def build(order_id: str) -> Order:
            return Order(
                id=order_id,
                customer_id=customer_id,
                customer_name=contact_name or customer_id,
                created_at=created_at,
                lines=order_lines,
                subtotal=totals.subtotal,
                discount=totals.discount.discount,
                discount_percentage=totals.discount.percentage,
                discount_description=totals.discount.description,
                delivery_fee=totals.delivery_fee,
                total=totals.total,
                delivery_type=delivery_type,
            )

        order = await self._storage.orders.append(build)
        logger.info(
            "Order %s saved for %s: subtotal=%d discount=%d delivery=%d total=%d",
            order.id,
            customer_id,
            order.subtotal,
            order.discount,
            order.delivery_fee,
            order.total,
        )
        self._metrics.record_order(order.total)

        try:
            await self._storage.customers.record_order(order)
        except Exception as exc:
            logger.exception("Failed to update customer %s after order %s: %s", customer_id, order.id, exc)

        if self._notifier is not None:
            try:
                await self._notifier.notify_new_order(order)
            except Exception as exc:
                logger.warning("Owner notification for order %s failed: %s", order.id, exc)
        return order
