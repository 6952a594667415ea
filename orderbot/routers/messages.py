from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from ..models.catalog import CatalogStats, Product
from ..models.messages import InboundMessage, MessageResponse
from ..services.catalog_index import CatalogIndex
from ..services.dispatcher import MessageDispatcher
from ..services.error_handling import NotFoundError
from ..services.storage import Storage

router = APIRouter(prefix="/api/bot", tags=["bot"])
logger = logging.getLogger(__name__)


def get_dispatcher(request: Request) -> MessageDispatcher:
    return request.app.state.dispatcher


def get_catalog_index(request: Request) -> CatalogIndex:
    return request.app.state.catalog


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


@router.post("/message", response_model=MessageResponse)
async def post_message(
    message: InboundMessage,
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> MessageResponse:
    result = await dispatcher.handle(message)
    return MessageResponse(
        customer_id=result.customer_id,
        reply=result.reply,
        intent=result.intent.value if result.intent else None,
        state=result.state.value,
        debug=result.debug,
    )


@router.post("/catalog/reload", response_model=CatalogStats)
async def reload_catalog(
    catalog: CatalogIndex = Depends(get_catalog_index),
    storage: Storage = Depends(get_storage),
) -> CatalogStats:
    stats = catalog.build(await storage.catalog.load())
    logger.info(
        "Catalog reloaded: %d products, %d skipped",
        stats.total_products,
        stats.skipped_records,
    )
    return stats


@router.get("/catalog/barcode/{code}", response_model=Product)
async def lookup_barcode(
    code: str,
    catalog: CatalogIndex = Depends(get_catalog_index),
) -> Product:
    product = catalog.lookup_by_barcode(code)
    if product is None:
        raise NotFoundError(f"no product with barcode {code}", reason="barcode_not_found")
    return product
