"""Shared pytest fixtures for all tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from orderbot.config import Settings
from orderbot.models.messages import OutboundMessage
from orderbot.services.error_handling import ExternalServiceError
from orderbot.services.catalog_index import CatalogIndex
from orderbot.services.storage import Storage

OWNER_ID = "5491100000000@c.us"

SAMPLE_CATALOG: dict[str, Any] = {
    "libreria": {
        "cuadernos": {
            "cuaderno_a4": {"price": 1500, "barcode": "7790001", "images": ["https://img.test/cuaderno.jpg"]},
            "cuaderno_rayado": {"price": 1200},
        },
        "lapiceras": {
            "lapicera_azul": {"price": 300},
            "lapicera_negra": {"price": 320},
        },
        "gomas": {
            "goma_de_borrar": {"price": 150, "stock": False},
        },
    },
    "impresiones": {
        "fotocopias": {
            "fotocopia_simple": {"price_from": 50},
        },
    },
}

SAMPLE_BUSINESS: dict[str, Any] = {
    "name": "Librería Central",
    "address": "Av. Siempre Viva 742",
    "hours": "Lunes a viernes de 9 a 18",
    "payment_methods": "Efectivo, transferencia",
    "phone": "011 4444-5555",
    "whatsapp": "+54 9 11 0000-0000",
    "owner_id": OWNER_ID,
}


def write_json(data_dir: Path, filename: str, payload: Any) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / filename).write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")


class RecordingTransport:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[OutboundMessage] = []
        self.fail = fail

    async def send(self, message: OutboundMessage) -> None:
        if self.fail:
            raise ExternalServiceError("gateway down", reason="transport_failed")
        self.sent.append(message)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    path = tmp_path / "data"
    write_json(path, "catalog.json", SAMPLE_CATALOG)
    write_json(path, "business.json", SAMPLE_BUSINESS)
    return path


@pytest.fixture
def settings(data_dir: Path) -> Settings:
    """Default settings for tests: no AI provider, no gateway."""
    return Settings(
        data_dir=data_dir,
        openai_api_key="",
        transport_url=None,
        owner_id=None,
        ai_retry_delay_seconds=0,
    )


@pytest.fixture
def storage(data_dir: Path) -> Storage:
    return Storage(data_dir)


@pytest.fixture
def catalog() -> CatalogIndex:
    index = CatalogIndex()
    index.build(SAMPLE_CATALOG)
    return index


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()
