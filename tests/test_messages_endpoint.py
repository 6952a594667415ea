from __future__ import annotations

from pathlib import Path

import pytest
from conftest import SAMPLE_CATALOG, write_json
from fastapi.testclient import TestClient

from orderbot import create_app
from orderbot.config import Settings


@pytest.fixture
def client(settings: Settings):
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def _post(client: TestClient, customer_id: str, text: str):
    return client.post(
        "/api/bot/message",
        json={"customer_id": customer_id, "text": text, "contact_name": "Ana"},
    )


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_message_endpoint_runs_a_conversation(client: TestClient):
    customer = "5491177700001@c.us"

    greeting = _post(client, customer, "hola").json()
    options = _post(client, customer, "quiero 2 lapiceras").json()
    picked = _post(client, customer, "1").json()
    added = _post(client, customer, "si").json()

    assert greeting["intent"] == "GREETING"
    assert "Librería Central" in greeting["reply"]["text"]
    assert options["state"] == "DISAMBIGUATING"
    assert picked["state"] == "PENDING_ITEM_CONFIRM"
    assert added["state"] == "CART_OPEN"
    assert "TOTAL: $600" in added["reply"]["text"]
    assert added["debug"]["trace_id"]


def test_checkout_through_the_endpoint(client: TestClient, data_dir: Path):
    customer = "5491177700002@c.us"

    for text in ("2 fotocopia simple", "si"):
        _post(client, customer, text)
    confirmed = _post(client, customer, "confirmar").json()

    assert confirmed["intent"] == "CONFIRM_ORDER"
    assert confirmed["state"] == "CLOSED"
    assert "#PED-001" in confirmed["reply"]["text"]
    assert (data_dir / "orders.json").exists()


def test_photo_reply_carries_media(client: TestClient):
    body = _post(client, "5491177700003@c.us", "foto cuaderno a4").json()

    assert body["reply"]["media"]["url"] == "https://img.test/cuaderno.jpg"


def test_empty_customer_id_is_rejected(client: TestClient):
    response = client.post("/api/bot/message", json={"customer_id": "", "text": "hola"})

    assert response.status_code == 422
    body = response.json()
    assert body["meta"]["error"] == {"code": "BAD_REQUEST", "reason": "request_validation_error"}
    assert body["reply"] is None


def test_barcode_lookup(client: TestClient):
    response = client.get("/api/bot/catalog/barcode/7790001")

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == "libreria::cuadernos::cuaderno_a4"
    assert body["display_name"] == "Cuaderno A4"


def test_unknown_barcode_is_not_found(client: TestClient):
    response = client.get("/api/bot/catalog/barcode/0000000")

    assert response.status_code == 404
    body = response.json()
    assert body["meta"]["error"] == {"code": "NOT_FOUND", "reason": "barcode_not_found"}
    assert body["meta"]["debug"]["trace_id"]


def test_catalog_reload_picks_up_changes(client: TestClient, data_dir: Path):
    catalog = {**SAMPLE_CATALOG, "regaleria": {"tazas": {"taza_blanca": {"price": 2500}}}}
    write_json(data_dir, "catalog.json", catalog)

    response = client.post("/api/bot/catalog/reload")

    assert response.status_code == 200
    assert response.json()["total_products"] == 7
    assert response.json()["total_categories"] == 3
    body = _post(client, "5491177700004@c.us", "taza blanca").json()
    assert body["intent"] == "PRODUCT_PHRASE"
    assert "Taza Blanca" in body["reply"]["text"]
