"""
Conversation-level tests: one MessageDispatcher over a temp data directory.

Each scenario runs inside a single ``asyncio.run`` so the session expiry
tasks live on the same loop as the turns that create them.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
from conftest import OWNER_ID, SAMPLE_BUSINESS, RecordingTransport, write_json

from orderbot.config import Settings
from orderbot.intents import IntentType
from orderbot.models.messages import InboundMessage
from orderbot.services.catalog_index import CatalogIndex
from orderbot.services.dispatcher import DispatchResult, MessageDispatcher
from orderbot.services.error_handling import SAFE_ERROR_TEXT, ExternalServiceError, RateLimitedError
from orderbot.services.intent_classifier import IntentClassifier
from orderbot.services.metrics import MetricsService
from orderbot.services.notifications import OrderNotifier
from orderbot.services.order_finalizer import OrderFinalizer
from orderbot.services.session_manager import SessionManager, SessionState
from orderbot.services.storage import Storage

CUSTOMER = "5491122334455@c.us"

SHOP_CATALOG: dict[str, Any] = {
    "libreria": {
        "cuadernos": {"cuaderno_a4": {"price": 1500, "images": ["https://img.test/cuaderno.jpg"]}},
        "lapiceras": {"lapicera_azul": {"price": 300}, "lapicera_negra": {"price": 320}},
        "gomas": {"goma_de_borrar": {"price": 150, "stock": False}},
    }
}


class FakeResponder:
    def __init__(self, outcomes: list[Any] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.enabled = True
        self.questions: list[str] = []

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    async def answer(self, question, *, business, products, customer_id=None):
        self.questions.append(question)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class ExplodingClassifier(IntentClassifier):
    def classify(self, text, *, state=SessionState.IDLE, is_owner=False):
        if text == "boom":
            raise RuntimeError("classifier exploded")
        return super().classify(text, state=state, is_owner=is_owner)


@dataclass
class Harness:
    dispatcher: MessageDispatcher
    storage: Storage
    sessions: SessionManager
    metrics: MetricsService
    transport: RecordingTransport
    responder: FakeResponder
    sleeps: list[float] = field(default_factory=list)

    async def say(self, text: str, customer_id: str = CUSTOMER) -> DispatchResult:
        return await self.dispatcher.handle(InboundMessage(customer_id=customer_id, text=text, contact_name="Ana"))

    async def texts(self, *messages: str, customer_id: str = CUSTOMER) -> list[DispatchResult]:
        return [await self.say(message, customer_id) for message in messages]


@pytest.fixture
def shop_dir(tmp_path: Path) -> Path:
    path = tmp_path / "shop"
    write_json(path, "catalog.json", SHOP_CATALOG)
    write_json(path, "business.json", SAMPLE_BUSINESS)
    return path


def make_harness(
    data_dir: Path,
    *,
    responder: FakeResponder | None = None,
    sessions: SessionManager | None = None,
    classifier_cls: type[IntentClassifier] = IntentClassifier,
    **settings_overrides: Any,
) -> Harness:
    options: dict[str, Any] = {"data_dir": data_dir, "openai_api_key": "", "ai_retry_delay_seconds": 2.0}
    options.update(settings_overrides)
    settings = Settings(**options)
    storage = Storage(data_dir)
    catalog = CatalogIndex()
    catalog.build(SHOP_CATALOG)
    metrics = MetricsService()
    transport = RecordingTransport()
    sessions = sessions or SessionManager()
    responder = responder or FakeResponder()
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    dispatcher = MessageDispatcher(
        settings=settings,
        storage=storage,
        catalog=catalog,
        classifier=classifier_cls(catalog),
        sessions=sessions,
        finalizer=OrderFinalizer(storage, notifier=OrderNotifier(transport, storage.business), metrics=metrics),
        responder=responder,
        transport=transport,
        metrics=metrics,
        sleep=fake_sleep,
    )
    return Harness(dispatcher, storage, sessions, metrics, transport, responder, sleeps)


def run(harness: Harness, coro_factory):
    async def scenario():
        try:
            return await coro_factory(harness)
        finally:
            await harness.sessions.shutdown()

    return asyncio.run(scenario())


def test_single_match_order_and_pickup_checkout(shop_dir: Path):
    harness = make_harness(shop_dir)

    results = run(harness, lambda h: h.texts("hola", "quiero 2 cuadernos", "si", "confirmar", "mis pedidos"))
    greeting, proposal, added, confirmed, history = results

    assert "¡Hola Ana!" in greeting.reply.text
    assert proposal.intent == IntentType.PRODUCT_PHRASE
    assert proposal.state == SessionState.PENDING_ITEM_CONFIRM
    assert "Subtotal: $3000" in proposal.reply.text
    assert added.state == SessionState.CART_OPEN
    assert "TOTAL: $3000" in added.reply.text
    assert confirmed.state == SessionState.CLOSED
    assert "PEDIDO CONFIRMADO" in confirmed.reply.text
    assert "#PED-001" in confirmed.reply.text
    assert "#PED-001" in history.reply.text

    orders = asyncio.run(harness.storage.orders.list_all())
    assert [(order.id, order.total, order.delivery_type) for order in orders] == [("PED-001", 3000, "pickup")]
    [notification] = harness.transport.sent
    assert notification.recipient == OWNER_ID


def test_disambiguation_pick_then_confirm(shop_dir: Path):
    harness = make_harness(shop_dir)

    options, picked, added = run(harness, lambda h: h.texts("quiero 3 lapiceras", "2", "si"))

    assert options.state == SessionState.DISAMBIGUATING
    assert "Encontré 2 productos" in options.reply.text
    assert picked.intent == IntentType.DISAMBIGUATION_PICK
    assert "Lapicera Negra" in picked.reply.text
    assert "Cantidad: 3" in picked.reply.text
    assert added.state == SessionState.CART_OPEN
    assert "TOTAL: $960" in added.reply.text


def test_more_specific_phrase_settles_a_disambiguation(shop_dir: Path):
    harness = make_harness(shop_dir)

    options, narrowed, added = run(harness, lambda h: h.texts("quiero 3 lapiceras", "lapicera azul", "si"))

    assert options.state == SessionState.DISAMBIGUATING
    assert "lapicera azul" in options.reply.text
    assert narrowed.intent == IntentType.PRODUCT_PHRASE
    assert narrowed.state == SessionState.PENDING_ITEM_CONFIRM
    assert "Lapicera Azul" in narrowed.reply.text
    assert "Cantidad: 3" in narrowed.reply.text
    assert added.state == SessionState.CART_OPEN
    assert "TOTAL: $900" in added.reply.text


def test_stated_quantity_replaces_the_pending_one(shop_dir: Path):
    harness = make_harness(shop_dir)

    _, narrowed = run(harness, lambda h: h.texts("quiero 3 lapiceras", "5 lapicera negra"))

    assert narrowed.state == SessionState.PENDING_ITEM_CONFIRM
    assert "Cantidad: 5" in narrowed.reply.text


def test_odd_digit_while_disambiguating_is_not_a_failure(shop_dir: Path):
    harness = make_harness(shop_dir)

    _, odd = run(harness, lambda h: h.texts("quiero 3 lapiceras", "²"))

    assert odd.reply.text != SAFE_ERROR_TEXT
    assert odd.state == SessionState.DISAMBIGUATING
    assert harness.metrics.snapshot().turn_errors == 0


def test_invalid_pick_and_cancel(shop_dir: Path):
    harness = make_harness(shop_dir)

    _, invalid, cancelled = run(harness, lambda h: h.texts("lapiceras", "7", "cancelar"))

    assert "Escribe un número del 1 al 2" in invalid.reply.text
    assert invalid.state == SessionState.DISAMBIGUATING
    assert cancelled.intent == IntentType.DISAMBIGUATION_CANCEL
    assert cancelled.state == SessionState.IDLE


def test_delivery_checkout_with_discount(shop_dir: Path):
    write_json(shop_dir, "discounts.json", {"enabled": True, "rules": [{"minimum": 5000, "percentage": 10}]})
    write_json(shop_dir, "order_settings.json", {"delivery": {"enabled": True, "fee": 800, "free_from": 20000}})
    harness = make_harness(shop_dir)

    *_, question, confirmed = run(harness, lambda h: h.texts("quiero 4 cuadernos", "si", "confirmar", "2"))

    assert question.state == SessionState.AWAITING_DELIVERY_CHOICE
    assert "¿Cómo lo querés recibir?" in question.reply.text
    assert "Descuento (10%): -$600" in question.reply.text
    assert "*Delivery* (+$800)" in question.reply.text
    assert confirmed.intent == IntentType.DELIVERY_CHOICE
    assert confirmed.state == SessionState.CLOSED
    assert "Costo de envío: $800" in confirmed.reply.text
    assert "TOTAL: $6200" in confirmed.reply.text

    [order] = asyncio.run(harness.storage.orders.list_all())
    assert (order.subtotal, order.discount, order.delivery_fee, order.total) == (6000, 600, 800, 6200)


def test_failed_save_keeps_cart_for_retry(shop_dir: Path):
    (shop_dir / "orders.json").write_text("{broken", encoding="utf-8")
    harness = make_harness(shop_dir)

    async def scenario(h: Harness):
        *_, failed = await h.texts("quiero 2 cuadernos", "si", "confirmar")
        lines = h.sessions.snapshot(CUSTOMER).lines
        (shop_dir / "orders.json").unlink()
        retried = await h.say("confirmar")
        return failed, lines, retried

    failed, lines, retried = run(harness, scenario)

    assert "No pudimos registrar tu pedido" in failed.reply.text
    assert failed.state == SessionState.CART_OPEN
    assert len(lines) == 1
    assert retried.state == SessionState.CLOSED
    assert "#PED-001" in retried.reply.text


def test_out_of_stock_batch_is_rejected(shop_dir: Path):
    harness = make_harness(shop_dir)

    proposal, rejected, cart = run(harness, lambda h: h.texts("goma de borrar", "si", "ver carrito"))

    assert "SIN STOCK" in proposal.reply.text
    assert "No puedo agregar estos productos" in rejected.reply.text
    assert rejected.state == SessionState.IDLE
    assert "Tu carrito está vacío" in cart.reply.text


def test_reject_pending_item(shop_dir: Path):
    harness = make_harness(shop_dir)

    _, rejected = run(harness, lambda h: h.texts("quiero 2 cuadernos", "no"))

    assert rejected.intent == IntentType.REJECT_ITEM
    assert rejected.state == SessionState.IDLE


def test_remove_and_clear(shop_dir: Path):
    harness = make_harness(shop_dir)

    results = run(
        harness,
        lambda h: h.texts("quiero 2 cuadernos", "si", "quitar 5", "quitar", "quitar 1", "quiero 1 cuaderno", "si", "cancelar", "cancelar"),
    )
    invalid, missing_index, removed = results[2:5]
    cleared, already_empty = results[7:9]

    assert "Número de producto inválido" in invalid.reply.text
    assert "quitar 2" in missing_index.reply.text
    assert "Eliminado: Cuaderno A4 x2" in removed.reply.text
    assert removed.state == SessionState.IDLE
    assert "Carrito vaciado" in cleared.reply.text
    assert cleared.state == SessionState.CANCELLED
    assert "ya está vacío" in already_empty.reply.text


def test_cart_expires_after_inactivity(shop_dir: Path):
    harness = make_harness(shop_dir, sessions=SessionManager(expiry_seconds=0.05))

    async def scenario(h: Harness):
        await h.texts("quiero 2 cuadernos", "si", "lapicera azul", "si")
        lines = len(h.sessions.snapshot(CUSTOMER).lines)
        await asyncio.sleep(0.3)
        tracked = len(h.sessions._sessions)
        return lines, tracked, await h.say("ver carrito")

    lines, tracked, cart = run(harness, scenario)

    assert lines == 2
    assert tracked == 0
    assert "Tu carrito está vacío" in cart.reply.text
    assert cart.state == SessionState.IDLE


def test_information_intents(shop_dir: Path):
    harness = make_harness(shop_dir)

    catalog, category, hours, location, payment, contact, stock = run(
        harness,
        lambda h: h.texts("lista", "libreria", "horarios", "donde estan", "medios de pago", "contacto", "hay stock?"),
    )

    assert "CATÁLOGO - Librería Central" in catalog.reply.text
    assert "Cuaderno A4 - $1500" in category.reply.text
    assert "Lunes a viernes de 9 a 18" in hours.reply.text
    assert "Av. Siempre Viva 742" in location.reply.text
    assert "Efectivo, transferencia" in payment.reply.text
    assert "011 4444-5555" in contact.reply.text
    assert stock.intent == IntentType.STOCK_INFO


def test_product_photo(shop_dir: Path):
    harness = make_harness(shop_dir)

    with_image, without_image, unknown = run(
        harness, lambda h: h.texts("foto cuaderno a4", "foto de la lapicera azul", "foto")
    )

    assert with_image.reply.media.url == "https://img.test/cuaderno.jpg"
    assert "Cuaderno A4" in with_image.reply.media.caption
    assert without_image.reply.media is None
    assert "No tengo fotos de Lapicera Azul" in without_image.reply.text
    assert "¿De qué producto" in unknown.reply.text


def test_returning_customer_greeting(shop_dir: Path):
    harness = make_harness(shop_dir)

    *_, greeting = run(harness, lambda h: h.texts("quiero 2 cuadernos", "si", "confirmar", "hola"))

    assert "Hola de nuevo, Ana" in greeting.reply.text
    assert "1 pedido(s)" in greeting.reply.text


def test_ai_fallback_answer(shop_dir: Path):
    harness = make_harness(shop_dir, responder=FakeResponder(["Sí, hacemos envíos a todo el barrio."]))

    [result] = run(harness, lambda h: h.texts("hacen envios al barrio norte"))

    assert result.intent == IntentType.AI_FALLBACK
    assert result.reply.text == "Sí, hacemos envíos a todo el barrio."
    assert harness.responder.questions == ["hacen envios al barrio norte"]


def test_ai_fallback_without_answer(shop_dir: Path):
    harness = make_harness(shop_dir, responder=FakeResponder([None]))

    [result] = run(harness, lambda h: h.texts("xyzzy plugh"))

    assert "No entendí bien tu consulta" in result.reply.text


def test_ai_fallback_retries_once_when_rate_limited(shop_dir: Path):
    harness = make_harness(shop_dir, responder=FakeResponder([RateLimitedError("slow down"), "Respuesta"]))

    [result] = run(harness, lambda h: h.texts("xyzzy plugh"))

    assert result.reply.text == "Respuesta"
    assert harness.sleeps == [2.0]
    assert len(harness.responder.questions) == 2


def test_ai_fallback_gives_up_after_second_rate_limit(shop_dir: Path):
    responder = FakeResponder([RateLimitedError("slow"), RateLimitedError("still slow"), "never used"])
    harness = make_harness(shop_dir, responder=responder)

    [result] = run(harness, lambda h: h.texts("xyzzy plugh"))

    assert "No entendí bien tu consulta" in result.reply.text
    assert harness.sleeps == [2.0]
    assert len(responder.questions) == 2


def test_ai_fallback_provider_error(shop_dir: Path):
    harness = make_harness(shop_dir, responder=FakeResponder([ExternalServiceError("down")]))

    [result] = run(harness, lambda h: h.texts("xyzzy plugh"))

    assert "No entendí bien tu consulta" in result.reply.text
    assert harness.sleeps == []


def test_owner_pause_silences_customers(shop_dir: Path):
    harness = make_harness(shop_dir)

    async def scenario(h: Harness):
        paused = await h.say("pausar bot", OWNER_ID)
        silent = await h.say("hola")
        owner_chat = await h.say("hola", OWNER_ID)
        resumed = await h.say("reanudar bot", OWNER_ID)
        back = await h.say("hola")
        return paused, silent, owner_chat, resumed, back

    paused, silent, owner_chat, resumed, back = run(harness, scenario)

    assert "PAUSADAS" in paused.reply.text
    assert silent.reply is None
    assert silent.debug["gate"] == "paused"
    assert owner_chat.reply is None
    assert "REACTIVADAS" in resumed.reply.text
    assert back.reply is not None
    business = json.loads((shop_dir / "business.json").read_text(encoding="utf-8"))
    assert business["auto_replies_enabled"] is True


def test_ignored_contacts_get_no_reply(shop_dir: Path):
    write_json(shop_dir, "business.json", {**SAMPLE_BUSINESS, "ignored_contacts": [CUSTOMER]})
    harness = make_harness(shop_dir)

    async def scenario(h: Harness):
        return await h.say("hola"), await h.say("hola", "5491199999999@c.us")

    ignored, other = run(harness, scenario)

    assert ignored.reply is None
    assert ignored.debug["gate"] == "ignored"
    assert other.reply is not None


def test_owner_toggles_and_reports(shop_dir: Path):
    harness = make_harness(shop_dir)

    async def scenario(h: Harness):
        await h.texts("quiero 2 cuadernos", "si", "confirmar")
        ai_off = await h.say("desactivar ia", OWNER_ID)
        notifications_off = await h.say("desactivar notificaciones", OWNER_ID)
        status = await h.say("estado del bot", OWNER_ID)
        stats = await h.say("estadisticas", OWNER_ID)
        return ai_off, notifications_off, status, stats

    ai_off, notifications_off, status, stats = run(harness, scenario)

    assert "IA DESACTIVADA" in ai_off.reply.text
    assert harness.responder.enabled is False
    assert "Notificaciones DESACTIVADAS" in notifications_off.reply.text
    assert "ESTADO DEL BOT" in status.reply.text
    assert "Productos en catálogo: 4" in status.reply.text
    assert "🔕 DESACTIVADAS" in status.reply.text
    assert "Total pedidos: 1" in stats.reply.text
    assert "PED-001" in stats.reply.text


def test_customers_cannot_run_owner_commands(shop_dir: Path):
    harness = make_harness(shop_dir)

    [result] = run(harness, lambda h: h.texts("pausar bot"))

    assert result.intent != IntentType.OWNER_COMMAND
    business = json.loads((shop_dir / "business.json").read_text(encoding="utf-8"))
    assert business.get("auto_replies_enabled", True) is True


def test_failing_turn_is_isolated(shop_dir: Path):
    harness = make_harness(shop_dir, classifier_cls=ExplodingClassifier)

    async def scenario(h: Harness):
        broken = await h.say("boom")
        same_customer = await h.say("hola")
        other_customer = await h.say("hola", "5491199999999@c.us")
        return broken, same_customer, other_customer

    broken, same_customer, other_customer = run(harness, scenario)

    assert broken.reply.text == SAFE_ERROR_TEXT
    assert broken.debug["error"] == "RuntimeError"
    assert "Hola" in same_customer.reply.text
    assert "Hola" in other_customer.reply.text
    assert harness.metrics.snapshot().turn_errors == 1


def test_rate_limit_per_customer(shop_dir: Path):
    harness = make_harness(shop_dir, rate_limit_max_messages=2)

    async def scenario(h: Harness):
        customer = await h.texts("hola", "hola", "hola")
        owner = await h.texts("estado del bot", "estado del bot", "estado del bot", customer_id=OWNER_ID)
        return customer, owner

    customer, owner = run(harness, scenario)

    assert "muchos mensajes" in customer[2].reply.text
    assert customer[2].debug["gate"] == "rate_limited"
    assert all("ESTADO DEL BOT" in result.reply.text for result in owner)
    assert harness.metrics.snapshot().rate_limit_rejections == 1


def test_replies_are_delivered_when_enabled(shop_dir: Path):
    harness = make_harness(shop_dir, deliver_replies=True)

    [result] = run(harness, lambda h: h.texts("hola"))

    [outbound] = harness.transport.sent
    assert outbound.recipient == CUSTOMER
    assert outbound.text == result.reply.text


def test_contact_is_registered_on_first_message(shop_dir: Path):
    harness = make_harness(shop_dir)

    run(harness, lambda h: h.texts("hola"))

    customer = asyncio.run(harness.storage.customers.get(CUSTOMER))
    assert customer is not None
    assert customer.name == "Ana"
    assert harness.metrics.snapshot().messages_total == 1
