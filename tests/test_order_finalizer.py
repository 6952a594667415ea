from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest
from conftest import OWNER_ID, RecordingTransport, write_json

from orderbot.models.orders import CartLine, DeliveryType
from orderbot.services.catalog_index import CatalogIndex
from orderbot.services.error_handling import ExternalServiceError, ValidationError
from orderbot.services.metrics import MetricsService
from orderbot.services.notifications import OrderNotifier, build_order_notification, clean_phone
from orderbot.services.order_finalizer import OrderFinalizer
from orderbot.services.storage import Storage

CUSTOMER = "5491122334455@c.us"


@pytest.fixture
def lines(catalog: CatalogIndex) -> list[CartLine]:
    return [
        CartLine(product=catalog.get("libreria::cuadernos::cuaderno_a4"), quantity=3),
        CartLine(product=catalog.get("libreria::lapiceras::lapicera_azul"), quantity=2),
    ]


@pytest.fixture
def priced_data_dir(data_dir: Path) -> Path:
    write_json(data_dir, "discounts.json", {"enabled": True, "rules": [{"minimum": 5000, "percentage": 10}]})
    write_json(data_dir, "order_settings.json", {"delivery": {"enabled": True, "fee": 800, "free_from": 20000}})
    return data_dir


def _finalizer(storage: Storage, transport: RecordingTransport, metrics: MetricsService) -> OrderFinalizer:
    notifier = OrderNotifier(transport, storage.business)
    return OrderFinalizer(storage, notifier=notifier, metrics=metrics)


def test_finalize_persists_order_with_totals(priced_data_dir: Path, lines, transport):
    storage = Storage(priced_data_dir)
    metrics = MetricsService()
    finalizer = _finalizer(storage, transport, metrics)

    order = asyncio.run(finalizer.finalize(CUSTOMER, "Ana", lines, DeliveryType.DELIVERY))

    assert order.id == "PED-001"
    assert order.subtotal == 5100
    assert order.discount == 510
    assert order.discount_percentage == 10
    assert order.delivery_fee == 800
    assert order.total == order.subtotal - order.discount + order.delivery_fee == 5390
    assert [(line.name, line.quantity, line.subtotal) for line in order.lines] == [
        ("Cuaderno A4", 3, 4500),
        ("Lapicera Azul", 2, 600),
    ]

    saved = asyncio.run(storage.orders.list_all())
    assert [saved_order.id for saved_order in saved] == ["PED-001"]
    customer = asyncio.run(storage.customers.get(CUSTOMER))
    assert customer.total_orders == 1
    assert customer.total_spent == 5390
    assert metrics.snapshot().orders_total == 1
    assert metrics.snapshot().sales_total == 5390


def test_pickup_never_charges_delivery(priced_data_dir: Path, lines, transport):
    storage = Storage(priced_data_dir)
    finalizer = _finalizer(storage, transport, MetricsService())

    order = asyncio.run(finalizer.finalize(CUSTOMER, None, lines, DeliveryType.PICKUP))

    assert order.delivery_fee == 0
    assert order.total == 4590
    assert order.customer_name == CUSTOMER


def test_owner_is_notified(priced_data_dir: Path, lines, transport):
    storage = Storage(priced_data_dir)
    finalizer = _finalizer(storage, transport, MetricsService())

    order = asyncio.run(finalizer.finalize(CUSTOMER, "Ana", lines, DeliveryType.PICKUP))

    [message] = transport.sent
    assert message.recipient == OWNER_ID
    assert order.id in message.text
    assert "https://wa.me/5491122334455" in message.text


def test_notifications_disabled(priced_data_dir: Path, lines, transport):
    storage = Storage(priced_data_dir)
    asyncio.run(storage.business.update(notifications_enabled=False))
    finalizer = _finalizer(storage, transport, MetricsService())

    asyncio.run(finalizer.finalize(CUSTOMER, "Ana", lines))

    assert transport.sent == []


def test_notification_failure_does_not_undo_order(priced_data_dir: Path, lines, caplog):
    storage = Storage(priced_data_dir)
    finalizer = _finalizer(storage, RecordingTransport(fail=True), MetricsService())

    with caplog.at_level(logging.WARNING):
        order = asyncio.run(finalizer.finalize(CUSTOMER, "Ana", lines))

    assert order.id == "PED-001"
    assert len(asyncio.run(storage.orders.list_all())) == 1
    assert any("notification" in record.getMessage().lower() for record in caplog.records)


def test_persistence_failure_propagates(priced_data_dir: Path, lines, transport):
    (priced_data_dir / "orders.json").write_text("][", encoding="utf-8")
    storage = Storage(priced_data_dir)
    finalizer = _finalizer(storage, transport, MetricsService())

    with pytest.raises(ExternalServiceError):
        asyncio.run(finalizer.finalize(CUSTOMER, "Ana", lines))

    assert asyncio.run(storage.customers.get(CUSTOMER)) is None
    assert transport.sent == []


def test_empty_cart_cannot_be_finalized(storage: Storage, transport):
    finalizer = _finalizer(storage, transport, MetricsService())

    with pytest.raises(ValidationError):
        asyncio.run(finalizer.finalize(CUSTOMER, "Ana", []))


def test_preview_matches_finalized_totals(priced_data_dir: Path, lines, transport):
    storage = Storage(priced_data_dir)
    finalizer = _finalizer(storage, transport, MetricsService())

    totals = asyncio.run(finalizer.preview(lines, DeliveryType.DELIVERY))
    order = asyncio.run(finalizer.finalize(CUSTOMER, "Ana", lines, DeliveryType.DELIVERY))

    assert totals.total == order.total


def test_clean_phone():
    assert clean_phone("5491122334455@c.us") == "5491122334455"
    assert clean_phone("+54 9 11 2233-4455") == "5491122334455"


def test_notification_text_mentions_discount_and_delivery(priced_data_dir: Path, lines, transport):
    storage = Storage(priced_data_dir)
    finalizer = _finalizer(storage, transport, MetricsService())
    order = asyncio.run(finalizer.finalize(CUSTOMER, "Ana", lines, DeliveryType.DELIVERY))

    text = build_order_notification(order)

    assert "Descuento (10%)" in text
    assert "Delivery:* +$800" in text
    assert "TOTAL:* $5390" in text
