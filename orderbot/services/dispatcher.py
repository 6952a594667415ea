"""
MessageDispatcher - entry point for one inbound customer message.

Per turn:

1. rate limit (everyone but the owner)
2. register / refresh the customer record (best-effort)
3. take the customer's turn lock and classify against the session state
4. owner commands run before the gates; everyone else passes the
   automation-paused flag and the ignore list
5. run the handler for the intent

Any exception escaping a turn is logged and answered with a generic failure
text; it never touches other customers' sessions.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import Settings
from ..intents import IntentType, OwnerCommand, get_intent_category
from ..models.catalog import Product
from ..models.messages import BotReply, InboundMessage, MediaAttachment, OutboundMessage
from ..models.orders import BusinessProfile, CartLine, DeliveryType
from ..utils.logging import TurnLoggerAdapter, get_turn_logger
from . import replies
from .ai_fallback import AIFallbackResponder
from .catalog_index import CatalogIndex
from .discount_engine import DiscountResult, cart_subtotal, compute_discount
from .error_handling import (
    CapacityError,
    ExternalServiceError,
    NotFoundError,
    RateLimitedError,
    new_trace_id,
)
from .intent_classifier import IntentClassifier, IntentMatch
from .metrics import MetricsService, get_metrics_service
from .order_finalizer import OrderFinalizer
from .session_manager import SessionManager, SessionState
from .storage import Storage
from .transport import MessagingTransport

logger = logging.getLogger(__name__)

ORDER_HISTORY_LIMIT = 5
AI_ATTEMPTS = 2


@dataclass
class DispatchResult:
    customer_id: str
    reply: Optional[BotReply]
    intent: Optional[IntentType] = None
    state: SessionState = SessionState.IDLE
    debug: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TurnContext:
    message: InboundMessage
    business: BusinessProfile
    log: TurnLoggerAdapter

    @property
    def customer_id(self) -> str:
        return self.message.customer_id


Handler = Callable[[TurnContext, IntentMatch], Awaitable[BotReply]]


def _text(value: str) -> BotReply:
    return BotReply(text=value)


class MessageDispatcher:
    def __init__(
        self,
        *,
        settings: Settings,
        storage: Storage,
        catalog: CatalogIndex,
        sessions: SessionManager,
        finalizer: OrderFinalizer,
        responder: AIFallbackResponder,
        classifier: IntentClassifier | None = None,
        transport: MessagingTransport | None = None,
        metrics: MetricsService | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._storage = storage
        self._catalog = catalog
        self._sessions = sessions
        self._finalizer = finalizer
        self._responder = responder
        self._classifier = classifier or IntentClassifier(catalog)
        self._transport = transport
        self._metrics = metrics or get_metrics_service()
        self._sleep = sleep
        self._handlers: Dict[IntentType, Handler] = {
            IntentType.DISAMBIGUATION_PICK: self._pick_candidate,
            IntentType.DISAMBIGUATION_CANCEL: self._cancel_disambiguation,
            IntentType.CONFIRM_ITEM: self._confirm_item,
            IntentType.REJECT_ITEM: self._reject_item,
            IntentType.ORDER_HISTORY: self._order_history,
            IntentType.SHOW_CART: self._show_cart,
            IntentType.CONFIRM_ORDER: self._confirm_order,
            IntentType.CLEAR_CART: self._clear_cart,
            IntentType.REMOVE_ITEM: self._remove_item,
            IntentType.DELIVERY_CHOICE: self._delivery_choice,
            IntentType.PRODUCT_PHOTO: self._product_photo,
            IntentType.CATALOG: self._catalog_overview,
            IntentType.CATEGORY_BROWSE: self._category_browse,
            IntentType.GREETING: self._greeting,
            IntentType.FAQ_HOURS: self._faq,
            IntentType.FAQ_LOCATION: self._faq,
            IntentType.FAQ_PAYMENT: self._faq,
            IntentType.FAQ_CONTACT: self._faq,
            IntentType.PRODUCT_PHRASE: self._product_phrase,
            IntentType.STOCK_INFO: self._stock_info,
            IntentType.AI_FALLBACK: self._ai_fallback,
        }

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def handle(self, message: InboundMessage) -> DispatchResult:
        trace_id = message.trace_id or new_trace_id()
        log = get_turn_logger(logger, trace_id=trace_id, customer_id=message.customer_id)
        started = time.perf_counter()
        try:
            result = await self._handle(message, log)
        except Exception as exc:
            log.exception("Turn failed: %s", exc)
            self._metrics.record_turn_error()
            result = DispatchResult(
                customer_id=message.customer_id,
                reply=_text(replies.generic_failure()),
                state=self._sessions.state(message.customer_id),
                debug={"error": getattr(exc, "reason", None) or exc.__class__.__name__},
            )
        finally:
            self._metrics.record_turn_latency((time.perf_counter() - started) * 1000)
        result.debug["trace_id"] = trace_id
        if result.reply is not None and self._settings.deliver_replies:
            await self._deliver(message.customer_id, result.reply, log)
        return result

    async def _handle(self, message: InboundMessage, log: TurnLoggerAdapter) -> DispatchResult:
        customer_id = message.customer_id
        business = await self._storage.business.load()
        is_owner = customer_id == (self._settings.owner_id or business.owner_id)

        if not is_owner and not self._metrics.check_rate_limit(
            customer_id,
            window_seconds=self._settings.rate_limit_window_seconds,
            max_calls=self._settings.rate_limit_max_messages,
        ):
            log.warning("Rate limit exceeded")
            return DispatchResult(
                customer_id=customer_id,
                reply=_text(replies.rate_limited()),
                state=self._sessions.state(customer_id),
                debug={"gate": "rate_limited"},
            )

        try:
            await self._storage.customers.register_contact(customer_id, message.contact_name)
        except Exception as exc:
            log.warning("Customer registration failed: %s", exc)

        async with self._sessions.turn(customer_id) as session:
            log = log.with_state(session.state)
            match = self._classifier.classify(message.text, state=session.state, is_owner=is_owner)
            log.info(
                "intent=%s category=%s rule=%s",
                match.intent,
                get_intent_category(match.intent),
                match.rule,
            )
            ctx = TurnContext(message=message, business=business, log=log)

            if match.intent == IntentType.OWNER_COMMAND:
                reply = await self._owner_command(ctx, match)
            elif not business.auto_replies_enabled:
                log.debug("Automatic replies paused, staying silent")
                return self._silent(customer_id, match, "paused")
            elif customer_id in business.ignored_contacts:
                log.debug("Contact is on the ignore list, staying silent")
                return self._silent(customer_id, match, "ignored")
            else:
                reply = await self._handlers[match.intent](ctx, match)

            self._metrics.record_message(match.intent.value)
            return DispatchResult(
                customer_id=customer_id,
                reply=reply,
                intent=match.intent,
                state=self._sessions.state(customer_id),
                debug=match.to_debug_dict(),
            )

    def _silent(self, customer_id: str, match: IntentMatch, gate: str) -> DispatchResult:
        return DispatchResult(
            customer_id=customer_id,
            reply=None,
            intent=match.intent,
            state=self._sessions.state(customer_id),
            debug={"gate": gate},
        )

    async def _deliver(self, customer_id: str, reply: BotReply, log: TurnLoggerAdapter) -> None:
        if self._transport is None:
            return
        outbound = OutboundMessage(
            recipient=customer_id,
            text=reply.text,
            media_url=reply.media.url if reply.media else None,
            caption=reply.media.caption if reply.media else None,
        )
        try:
            await self._transport.send(outbound)
        except ExternalServiceError as exc:
            log.error("Reply delivery failed: %s", exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _discount_for(self, lines: List[CartLine]) -> DiscountResult:
        config = await self._storage.discounts.load()
        return compute_discount(config, cart_subtotal(lines))

    async def _cart_reply(self, customer_id: str) -> BotReply:
        lines = self._sessions.snapshot(customer_id).lines
        return _text(replies.cart_view(lines, await self._discount_for(lines)))

    async def _finalize(self, ctx: TurnContext, lines: List[CartLine], delivery_type: DeliveryType) -> BotReply:
        try:
            order = await self._finalizer.finalize(
                ctx.customer_id,
                ctx.message.contact_name,
                lines,
                delivery_type,
            )
        except ExternalServiceError as exc:
            ctx.log.error("Order persistence failed, cart kept open: %s", exc)
            return _text(replies.checkout_failed())
        self._sessions.mark_closed(ctx.customer_id)
        ctx.log.info("Order %s confirmed", order.id)
        return _text(replies.order_confirmed(order, ctx.business))

    # ------------------------------------------------------------------
    # Session-bound handlers
    # ------------------------------------------------------------------
    async def _pick_candidate(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        candidates = self._sessions.snapshot(ctx.customer_id).candidates
        try:
            line = self._sessions.pick_candidate(ctx.customer_id, match.parameters["index"])
        except NotFoundError:
            return _text(replies.invalid_option(len(candidates)))
        return _text(replies.confirmation_prompt([line]))

    async def _cancel_disambiguation(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        self._sessions.cancel_disambiguation(ctx.customer_id)
        return _text(replies.disambiguation_cancelled())

    async def _confirm_item(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        try:
            self._sessions.confirm_pending(ctx.customer_id)
        except CapacityError as exc:
            ctx.log.info("Pending batch rejected, %d product(s) out of stock", len(exc.products))
            return _text(replies.out_of_stock(exc.products))
        lines = self._sessions.snapshot(ctx.customer_id).lines
        return _text(replies.added_to_cart(lines, await self._discount_for(lines)))

    async def _reject_item(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        self._sessions.reject_pending(ctx.customer_id)
        return _text(replies.item_rejected())

    async def _delivery_choice(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        delivery_type = self._sessions.choose_delivery(ctx.customer_id, match.parameters["option"])
        lines = self._sessions.snapshot(ctx.customer_id).lines
        return await self._finalize(ctx, lines, delivery_type)

    # ------------------------------------------------------------------
    # Cart handlers
    # ------------------------------------------------------------------
    async def _order_history(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        orders = await self._storage.orders.list_for_customer(ctx.customer_id, limit=ORDER_HISTORY_LIMIT)
        return _text(replies.order_history(orders))

    async def _show_cart(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        return await self._cart_reply(ctx.customer_id)

    async def _confirm_order(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        order_settings = await self._storage.order_settings.load()
        delivery = order_settings.delivery
        try:
            lines = self._sessions.request_checkout(ctx.customer_id, delivery_enabled=delivery.enabled)
        except NotFoundError:
            return _text(replies.empty_cart())
        if delivery.enabled:
            discount = await self._discount_for(lines)
            return _text(replies.delivery_question(lines, discount, ctx.business, delivery))
        return await self._finalize(ctx, lines, DeliveryType.PICKUP)

    async def _clear_cart(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        if self._sessions.clear(ctx.customer_id):
            return _text(replies.cart_cleared())
        return _text(replies.cart_already_empty())

    async def _remove_item(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        index = match.parameters.get("index")
        if index is None:
            return _text(replies.remove_needs_index())
        try:
            removed = self._sessions.remove_line(ctx.customer_id, index)
        except NotFoundError as exc:
            if exc.reason == "empty_cart":
                return _text(replies.empty_cart())
            lines = self._sessions.snapshot(ctx.customer_id).lines
            return _text(replies.invalid_line_index(lines, await self._discount_for(lines)))
        lines = self._sessions.snapshot(ctx.customer_id).lines
        return _text(replies.line_removed(removed, lines, await self._discount_for(lines)))

    # ------------------------------------------------------------------
    # Information handlers
    # ------------------------------------------------------------------
    async def _product_photo(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        if not match.products:
            return _text(replies.photo_not_found())
        product: Product = match.products[0]
        if not product.images:
            return _text(replies.photo_missing(product))
        caption = replies.photo_caption(product)
        return BotReply(text=caption, media=MediaAttachment(url=product.images[0], caption=caption))

    async def _catalog_overview(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        return _text(replies.catalog_overview(self._catalog.category_summaries(), ctx.business))

    async def _category_browse(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        category = match.parameters["category"]
        summary = next(
            (item for item in self._catalog.category_summaries() if item.name == category),
            None,
        )
        if summary is None:
            return _text(replies.catalog_overview(self._catalog.category_summaries(), ctx.business))
        return _text(replies.category_listing(summary, match.products))

    async def _greeting(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        customer = await self._storage.customers.get(ctx.customer_id)
        return _text(replies.greeting(ctx.business, customer))

    async def _faq(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        texts = {
            IntentType.FAQ_HOURS: replies.hours,
            IntentType.FAQ_LOCATION: replies.location,
            IntentType.FAQ_PAYMENT: replies.payment_methods,
            IntentType.FAQ_CONTACT: replies.contact,
        }
        return _text(texts[match.intent](ctx.business))

    async def _product_phrase(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        quantity = match.entities.quantity if match.entities else 1
        pending_quantity = self._sessions.snapshot(ctx.customer_id).pending_quantity
        if pending_quantity is not None and not (match.entities and match.entities.quantity_given):
            # Narrowing a disambiguation keeps the quantity asked for.
            quantity = pending_quantity
        session = self._sessions.propose_products(ctx.customer_id, match.products, quantity)
        if session.state == SessionState.DISAMBIGUATING:
            return _text(replies.disambiguation_prompt(session.candidates, len(match.products)))
        return _text(replies.confirmation_prompt(session.pending_lines))

    async def _stock_info(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        return _text(replies.stock_hint())

    async def _ai_fallback(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        answer = await self._ask_responder(ctx)
        return _text(answer or replies.not_understood())

    async def _ask_responder(self, ctx: TurnContext) -> Optional[str]:
        for attempt in range(1, AI_ATTEMPTS + 1):
            try:
                return await self._responder.answer(
                    ctx.message.text,
                    business=ctx.business,
                    products=self._catalog.all_products(),
                    customer_id=ctx.customer_id,
                )
            except RateLimitedError:
                if attempt == AI_ATTEMPTS:
                    ctx.log.warning("AI fallback still rate limited, giving up")
                    return None
                ctx.log.info("AI fallback rate limited, retrying in %.1fs", self._settings.ai_retry_delay_seconds)
                await self._sleep(self._settings.ai_retry_delay_seconds)
            except ExternalServiceError as exc:
                ctx.log.warning("AI fallback unavailable: %s", exc)
                return None
        return None

    # ------------------------------------------------------------------
    # Owner commands
    # ------------------------------------------------------------------
    async def _owner_command(self, ctx: TurnContext, match: IntentMatch) -> BotReply:
        command: OwnerCommand = match.parameters["command"]
        ctx.log.info("Owner command %s", command)
        if command == OwnerCommand.PAUSE:
            await self._storage.business.update(auto_replies_enabled=False)
            return _text(replies.owner_paused())
        if command == OwnerCommand.RESUME:
            await self._storage.business.update(auto_replies_enabled=True)
            return _text(replies.owner_resumed())
        if command in (OwnerCommand.AI_ON, OwnerCommand.AI_OFF):
            enabled = command == OwnerCommand.AI_ON
            self._responder.set_enabled(enabled)
            return _text(replies.owner_ai(enabled))
        if command in (OwnerCommand.NOTIFICATIONS_ON, OwnerCommand.NOTIFICATIONS_OFF):
            enabled = command == OwnerCommand.NOTIFICATIONS_ON
            await self._storage.business.update(notifications_enabled=enabled)
            return _text(replies.owner_notifications(enabled))
        if command == OwnerCommand.STATUS:
            business = await self._storage.business.load()
            return _text(
                replies.owner_status(
                    business,
                    ai_enabled=self._responder.enabled,
                    active_sessions=self._sessions.active_sessions(),
                    catalog_products=self._catalog.stats().total_products,
                    metrics=self._metrics.snapshot(),
                )
            )
        stats = await self._storage.customers.stats()
        last_order = await self._storage.orders.last_order()
        return _text(replies.owner_stats(stats, last_order))
