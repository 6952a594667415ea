"""Customer and owner facing texts (Spanish, chat formatting)."""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from ..models.catalog import CategorySummary, Product
from ..models.orders import BusinessProfile, CartLine, Customer, CustomerStats, DeliverySettings, Order
from .discount_engine import DiscountResult, compute_delivery_fee
from .error_handling import SAFE_ERROR_TEXT
from .metrics import MetricsSnapshot

RULE = "━━━━━━━━━━━━━━━━━━━━━"
ORDER_EXAMPLE = '"Quiero 2 cuadernos"'
CATEGORY_PREVIEW_LIMIT = 15


def money(amount: int) -> str:
    return f"${amount}"


def price_label(product: Product) -> str:
    if product.has_starting_price:
        return f"desde {money(product.unit_price)}"
    return money(product.unit_price)


def stock_mark(product: Product) -> str:
    return "✅" if product.in_stock else "❌"


# ----------------------------------------------------------------------
# Product matching
# ----------------------------------------------------------------------
def disambiguation_prompt(candidates: Sequence[Product], total_matches: int) -> str:
    lines = [f"🔍 *Encontré {total_matches} productos que coinciden:*", ""]
    for number, product in enumerate(candidates, start=1):
        suffix = "" if product.in_stock else " (SIN STOCK)"
        lines.append(f"{number}. {stock_mark(product)} {product.display_name}")
        lines.append(f"   💰 {price_label(product)}{suffix}")
    if total_matches > len(candidates):
        lines.append(f"... y {total_matches - len(candidates)} más")
    lines += [
        "",
        RULE,
        "Por favor, especifica cuál quieres:",
        '• Escribe el *número* (ej: "1")',
        '• O escribe más detalles (ej: "lapicera azul")',
        '• O escribe *"cancelar"* para buscar otra cosa',
    ]
    return "\n".join(lines)


def confirmation_prompt(lines: Sequence[CartLine]) -> str:
    text = ["🔍 *Encontré estos productos:*", ""]
    for number, line in enumerate(lines, start=1):
        text.append(f"{number}. {stock_mark(line.product)} {line.product.display_name}")
        text.append(f"   Cantidad: {line.quantity}")
        text.append(f"   Precio unitario: {price_label(line.product)}")
        text.append(f"   Subtotal: {money(line.subtotal)}")
    if any(not line.product.in_stock for line in lines):
        text += ["", "⚠️ ATENCIÓN: Algunos productos están SIN STOCK"]
    text += [
        "",
        "¿Es correcto este pedido?",
        '• Escribe *"si"* para agregarlo al carrito',
        '• Escribe *"no"* para cancelar',
    ]
    return "\n".join(text)


def out_of_stock(products: Iterable[Product]) -> str:
    names = "\n".join(f"• {product.display_name}" for product in products)
    return (
        "❌ No puedo agregar estos productos porque están SIN STOCK:\n\n"
        f"{names}\n\n"
        "Escribe tu pedido de nuevo sin esos productos."
    )


def item_rejected() -> str:
    return "❌ Pedido cancelado.\n\nPuedes hacer otro pedido cuando quieras."


def disambiguation_cancelled() -> str:
    return "❌ Búsqueda cancelada.\n\nPuedes hacer otra búsqueda cuando quieras."


def invalid_option(max_option: int) -> str:
    return f"❌ Opción no válida. Escribe un número del 1 al {max_option}."


# ----------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------
def empty_cart() -> str:
    return (
        "🛒 Tu carrito está vacío\n\n"
        "Para hacer un pedido, escribe por ejemplo:\n"
        f'{ORDER_EXAMPLE} o "Dame 5 lapiceras"'
    )


def cart_view(lines: Sequence[CartLine], discount: DiscountResult) -> str:
    if not lines:
        return empty_cart()
    subtotal = sum(line.subtotal for line in lines)
    text = ["🛒 *TU CARRITO*", RULE, ""]
    for number, line in enumerate(lines, start=1):
        text.append(f"{number}. {line.product.display_name}")
        text.append(f"   {line.quantity} x {money(line.unit_price)} = {money(line.subtotal)}")
    text += [RULE, f"💰 Subtotal: {money(subtotal)}"]
    if discount.applied:
        if discount.description:
            text.append(f"🎉 {discount.description}")
        text.append(f"🎁 Descuento ({discount.percentage}%): -{money(discount.discount)}")
    text += [
        RULE,
        f"💰 *TOTAL: {money(subtotal - discount.discount)}*",
        "",
        "📝 Opciones:",
        '• *"confirmar"* - Finalizar pedido',
        '• *"quitar [número]"* - Eliminar producto',
        '• *"cancelar"* - Vaciar carrito',
    ]
    return "\n".join(text)


def added_to_cart(lines: Sequence[CartLine], discount: DiscountResult) -> str:
    return (
        cart_view(lines, discount)
        + "\n\n💡 ¿Deseas agregar más productos?\n"
        + '• Escribe otro pedido (ej: "3 lapiceras")\n'
        + '• O escribe *"confirmar"* para finalizar'
    )


def cart_cleared() -> str:
    return f"✅ Carrito vaciado correctamente\n\nPara hacer un nuevo pedido, escribe por ejemplo:\n{ORDER_EXAMPLE}"


def cart_already_empty() -> str:
    return "🛒 Tu carrito ya está vacío"


def line_removed(removed: CartLine, remaining: Sequence[CartLine], discount: DiscountResult) -> str:
    head = f"✅ Eliminado: {removed.product.display_name} x{removed.quantity}\n\n"
    if not remaining:
        return head + "🛒 Tu carrito está vacío"
    return head + cart_view(remaining, discount)


def invalid_line_index(lines: Sequence[CartLine], discount: DiscountResult) -> str:
    return "❌ Número de producto inválido\n\n" + cart_view(lines, discount)


def remove_needs_index() -> str:
    return '❓ Indica qué producto quitar, por ejemplo: *"quitar 2"*'


# ----------------------------------------------------------------------
# Checkout
# ----------------------------------------------------------------------
def _summary_lines(lines: Sequence[CartLine]) -> List[str]:
    return [
        f"{number}. {line.product.display_name} x{line.quantity} - {money(line.subtotal)}"
        for number, line in enumerate(lines, start=1)
    ]


def delivery_question(
    lines: Sequence[CartLine],
    discount: DiscountResult,
    business: BusinessProfile,
    delivery: DeliverySettings,
) -> str:
    subtotal = sum(line.subtotal for line in lines)
    discounted = subtotal - discount.discount
    text = ["📋 *RESUMEN DE TU PEDIDO*", RULE, *_summary_lines(lines), RULE, f"💰 Subtotal: {money(subtotal)}"]
    if discount.applied:
        text.append(f"🎁 Descuento ({discount.percentage}%): -{money(discount.discount)}")
    text += [RULE, f"💰 *TOTAL: {money(discounted)}*", "", "🚚 *¿Cómo lo querés recibir?*", ""]
    text.append("1️⃣ *Retiro en local* (Gratis)")
    if business.address:
        text.append(f"   📍 {business.address}")
    if business.hours:
        text.append(f"   🕐 {business.hours}")
    fee = compute_delivery_fee(delivery, discounted)
    if fee == 0:
        text.append("2️⃣ *Delivery* (GRATIS por tu compra)")
    else:
        text.append(f"2️⃣ *Delivery* (+{money(fee)})")
    text += ["", 'Responde *"1"* o *"2"* para continuar']
    return "\n".join(text)


def order_confirmed(order: Order, business: BusinessProfile) -> str:
    text = ["✅ *PEDIDO CONFIRMADO*", RULE, ""]
    if order.delivery_type == "delivery":
        text.append("🚚 *Delivery*")
        if order.delivery_fee > 0:
            text.append(f"Costo de envío: {money(order.delivery_fee)}")
        else:
            text.append("🎉 Envío GRATIS por tu compra")
    else:
        text.append("🏪 *Retiro en local*")
        if business.address:
            text.append(f"📍 {business.address}")
        if business.hours:
            text.append(f"🕐 {business.hours}")
    text.append("")
    for number, line in enumerate(order.lines, start=1):
        text.append(f"{number}. {line.name} x{line.quantity} - {money(line.subtotal)}")
    text += [RULE, f"💰 Subtotal: {money(order.subtotal)}"]
    if order.discount > 0:
        text.append(f"🎁 Descuento ({order.discount_percentage}%): -{money(order.discount)}")
    if order.delivery_fee > 0:
        text.append(f"🚚 Delivery: +{money(order.delivery_fee)}")
    text += [RULE, f"💰 *TOTAL: {money(order.total)}*", ""]
    if business.payment_methods:
        text += ["💳 *Medios de pago:*", business.payment_methods, ""]
    text += [f"📄 Número de pedido: *#{order.id}*", "", "🙏 ¡Gracias por tu compra!"]
    return "\n".join(text)


def checkout_failed() -> str:
    return "❌ No pudimos registrar tu pedido. Tu carrito sigue guardado, escribe *\"confirmar\"* para reintentar."


# ----------------------------------------------------------------------
# Information
# ----------------------------------------------------------------------
def order_history(orders: Sequence[Order]) -> str:
    if not orders:
        return f"📦 Todavía no tienes pedidos.\n\nPara hacer uno, escribe por ejemplo:\n{ORDER_EXAMPLE}"
    text = ["📦 *TUS ÚLTIMOS PEDIDOS*", RULE]
    for order in reversed(orders):
        text.append(f"📄 #{order.id} - {order.created_at[:10]}")
        text.append(f"   {len(order.lines)} producto(s) - {money(order.total)} - {order.status}")
    return "\n".join(text)


def catalog_overview(summaries: Sequence[CategorySummary], business: BusinessProfile) -> str:
    if not summaries:
        return "📋 El catálogo no está disponible en este momento."
    text = [f"📋 *CATÁLOGO - {business.name}*", RULE, ""]
    for summary in summaries:
        text.append(f"{summary.emoji} *{summary.display_name}* ({summary.total_products} productos)")
    text += ["", '💡 Escribe el nombre de una categoría para ver sus productos (ej: "libreria")']
    return "\n".join(text)


def category_listing(summary: CategorySummary, products: Sequence[Product]) -> str:
    text = [f"{summary.emoji} *{summary.display_name.upper()}*", RULE, ""]
    for product in products[:CATEGORY_PREVIEW_LIMIT]:
        text.append(f"{stock_mark(product)} {product.display_name} - {price_label(product)}")
    if len(products) > CATEGORY_PREVIEW_LIMIT:
        text.append(f"... y {len(products) - CATEGORY_PREVIEW_LIMIT} más")
    text += ["", f"Para pedir, escribe por ejemplo: {ORDER_EXAMPLE}"]
    return "\n".join(text)


def greeting(business: BusinessProfile, customer: Optional[Customer]) -> str:
    if customer is not None and customer.total_orders > 0:
        head = f"👋 ¡Hola de nuevo, {customer.name}! Ya hiciste {customer.total_orders} pedido(s) con nosotros."
    elif customer is not None:
        head = f"👋 ¡Hola {customer.name}! Bienvenido/a a *{business.name}*."
    else:
        head = f"👋 ¡Hola! Bienvenido/a a *{business.name}*."
    return (
        f"{head}\n\n"
        "Puedes preguntarme sobre:\n"
        '• 📋 Catálogo y precios ("lista")\n'
        f"• 🛒 Hacer un pedido (ej: {ORDER_EXAMPLE})\n"
        "• 🕐 Horarios\n"
        "• 📍 Ubicación\n"
        "• 💳 Medios de pago"
    )


def hours(business: BusinessProfile) -> str:
    return f"🕐 *Horarios de atención*\n\n{business.hours or 'Consultanos por este medio.'}"


def location(business: BusinessProfile) -> str:
    text = f"📍 *Ubicación*\n\n{business.address or 'Consultanos por este medio.'}"
    if business.hours:
        text += f"\n🕐 {business.hours}"
    return text


def payment_methods(business: BusinessProfile) -> str:
    return f"💳 *Medios de pago*\n\n{business.payment_methods or 'Consultanos por este medio.'}"


def contact(business: BusinessProfile) -> str:
    text = [f"📞 *Contacto - {business.name}*", ""]
    if business.phone:
        text.append(f"☎️ {business.phone}")
    if business.whatsapp:
        text.append(f"💬 WhatsApp: {business.whatsapp}")
    if business.address:
        text.append(f"📍 {business.address}")
    return "\n".join(text)


def stock_hint() -> str:
    return (
        "📦 Para consultar stock, dime qué producto buscas.\n\n"
        'Por ejemplo: "¿Tienen cuadernos A4?" o escribe *"lista"* para ver el catálogo.'
    )


def photo_caption(product: Product) -> str:
    return f"📸 {product.display_name} - {price_label(product)}"


def photo_missing(product: Product) -> str:
    return f"📷 No tengo fotos de {product.display_name} por ahora.\n💰 Precio: {price_label(product)}"


def photo_not_found() -> str:
    return '📷 ¿De qué producto quieres ver la foto? Ej: "foto cuaderno a4"'


def not_understood() -> str:
    return (
        "No entendí bien tu consulta 🤔\n\n"
        "Puedes preguntarme sobre:\n"
        "• Precios y productos\n"
        f"• Hacer un pedido (ej: {ORDER_EXAMPLE})\n"
        "• Ver mis pedidos anteriores\n"
        "• Horarios de atención\n"
        "• Ubicación del local\n"
        "• Medios de pago\n\n"
        "¿En qué te puedo ayudar?"
    )


def rate_limited() -> str:
    return "⏳ Estás enviando muchos mensajes. Espera un momento y vuelve a intentar."


def generic_failure() -> str:
    return SAFE_ERROR_TEXT


# ----------------------------------------------------------------------
# Owner
# ----------------------------------------------------------------------
def owner_paused() -> str:
    return '⏸️ *RESPUESTAS AUTOMÁTICAS PAUSADAS*\n\nEl bot NO responderá a los clientes.\n\nPara reanudar: "reanudar bot"'


def owner_resumed() -> str:
    return '▶️ *RESPUESTAS AUTOMÁTICAS REACTIVADAS*\n\nEl bot volverá a responder a los clientes.\n\nPara pausar: "pausar bot"'


def owner_ai(enabled: bool) -> str:
    if enabled:
        return '🤖 *IA ACTIVADA*\n\nEl bot usará IA para consultas que no entienda.\n\nPara desactivar: "desactivar ia"'
    return '🔴 *IA DESACTIVADA*\n\nEl bot solo usará respuestas predefinidas.\n\nPara activar: "activar ia"'


def owner_notifications(enabled: bool) -> str:
    if enabled:
        return "✅ *Notificaciones ACTIVADAS*\n\nRecibirás un mensaje cada vez que un cliente confirme un pedido."
    return "🔕 *Notificaciones DESACTIVADAS*\n\nYa no recibirás mensajes de nuevos pedidos."


def owner_status(
    business: BusinessProfile,
    *,
    ai_enabled: bool,
    active_sessions: int,
    catalog_products: int,
    metrics: MetricsSnapshot,
) -> str:
    return "\n".join(
        [
            "🤖 *ESTADO DEL BOT*",
            RULE,
            f"🔄 Respuestas automáticas: {'▶️ ACTIVAS' if business.auto_replies_enabled else '⏸️ PAUSADAS'}",
            f"🔔 Notificaciones: {'✅ ACTIVADAS' if business.notifications_enabled else '🔕 DESACTIVADAS'}",
            f"🤖 Inteligencia Artificial: {'🤖 ACTIVADA' if ai_enabled else '🔴 DESACTIVADA'}",
            f"📦 Productos en catálogo: {catalog_products}",
            f"🛒 Sesiones activas: {active_sessions}",
            f"💬 Mensajes procesados: {metrics.messages_total}",
            f"⚠️ Errores: {metrics.turn_errors} | Límite excedido: {metrics.rate_limit_rejections}",
            f"⌛ Carritos expirados: {metrics.expired_carts}",
            RULE,
            "*Comandos disponibles:*",
            '• "pausar bot" / "reanudar bot"',
            '• "activar ia" / "desactivar ia"',
            '• "activar notificaciones" / "desactivar notificaciones"',
            '• "estadisticas"',
        ]
    )


def owner_stats(stats: CustomerStats, last_order: Optional[Order]) -> str:
    text = [
        "📊 *ESTADÍSTICAS DEL NEGOCIO*",
        RULE,
        f"👥 Total clientes: {stats.total_customers}",
        f"📦 Total pedidos: {stats.total_orders}",
        f"💰 Total vendido: {money(stats.total_sold)}",
        RULE,
    ]
    if last_order is not None:
        text += [
            "",
            "📄 *Último pedido:*",
            f"• {last_order.id} - {last_order.customer_name}",
            f"• {money(last_order.total)} - {last_order.created_at[:16].replace('T', ' ')}",
        ]
    return "\n".join(text)
