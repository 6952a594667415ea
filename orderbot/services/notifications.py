from __future__ import annotations

import logging
import re

from ..models.messages import OutboundMessage
from ..models.orders import BusinessProfile, DeliveryType, Order
from .replies import RULE, money
from .storage import BusinessRepository
from .transport import MessagingTransport

logger = logging.getLogger(__name__)

_NON_DIGITS_RE = re.compile(r"\D+")


def clean_phone(customer_id: str) -> str:
    """``5491122334455@c.us`` -> ``5491122334455``."""

    return _NON_DIGITS_RE.sub("", customer_id.split("@", 1)[0])


def build_order_notification(order: Order) -> str:
    phone = clean_phone(order.customer_id)
    text = [
        "🔔 *NUEVO PEDIDO RECIBIDO*",
        RULE,
        f"📄 *Pedido:* {order.id}",
        f"👤 *Cliente:* {order.customer_name}",
        f"📱 *Teléfono:* {phone or order.customer_id}",
        f"📅 *Fecha:* {order.created_at[:16].replace('T', ' ')}",
        RULE,
        "📦 *PRODUCTOS:*",
    ]
    for number, line in enumerate(order.lines, start=1):
        text.append(f"{number}. {line.name} x{line.quantity}")
        text.append(f"   {money(line.unit_price)} c/u = {money(line.subtotal)}")
    text += [RULE, f"💰 *Subtotal:* {money(order.subtotal)}"]
    if order.discount > 0:
        text.append(f"🎁 *Descuento ({order.discount_percentage}%):* -{money(order.discount)}")
        if order.discount_description:
            text.append(f"   {order.discount_description}")
    if order.delivery_fee > 0:
        text.append(f"🚚 *Delivery:* +{money(order.delivery_fee)}")
    text += [
        RULE,
        f"💰 *TOTAL:* {money(order.total)}",
        "",
        f"🚚 *Entrega:* {'Delivery' if order.delivery_type == DeliveryType.DELIVERY else 'Retiro en local'}",
        f"💳 *Estado de pago:* {order.payment_status}",
        f"✅ *Estado:* {order.status}",
    ]
    if phone:
        text += ["", f"💬 Chat: https://wa.me/{phone}"]
    return "\n".join(text)


def notification_target(business: BusinessProfile, owner_override: str | None = None) -> str | None:
    return business.notification_target or owner_override or business.owner_id


class OrderNotifier:
    """Tells the owner about new orders through the messaging transport."""

    def __init__(
        self,
        transport: MessagingTransport,
        business: BusinessRepository,
        *,
        owner_override: str | None = None,
    ) -> None:
        self._transport = transport
        self._business = business
        self._owner_override = owner_override

    async def notify_new_order(self, order: Order) -> bool:
        profile = await self._business.load()
        if not profile.notifications_enabled:
            logger.debug("Order notifications disabled, skipping %s", order.id)
            return False
        target = notification_target(profile, self._owner_override)
        if not target:
            logger.warning("No notification target configured, order %s not announced", order.id)
            return False
        await self._transport.send(OutboundMessage(recipient=target, text=build_order_notification(order)))
        logger.info("Owner notified about order %s", order.id)
        return True
