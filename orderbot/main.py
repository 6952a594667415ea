from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError

from .config import Settings, get_settings
from .routers import messages
from .services.ai_fallback import AIFallbackResponder
from .services.catalog_index import CatalogIndex
from .services.dispatcher import MessageDispatcher
from .services.error_handling import (
    AppError,
    build_error_response,
    log_exception,
    map_exception_to_error_code,
    new_trace_id,
)
from .services.intent_classifier import IntentClassifier
from .services.metrics import get_metrics_service
from .services.notifications import OrderNotifier
from .services.order_finalizer import OrderFinalizer
from .services.session_manager import SessionManager
from .services.storage import Storage
from .services.transport import build_transport

logger = logging.getLogger(__name__)


async def build_components(app: FastAPI, settings: Settings) -> None:
    """Wire storage, catalog index, sessions and the dispatcher onto ``app.state``."""

    metrics = get_metrics_service()
    storage = Storage(settings.data_dir)

    catalog = CatalogIndex()
    stats = catalog.build(await storage.catalog.load())
    logger.info(
        "Catalog indexed: %d products in %d categories (%d skipped)",
        stats.total_products,
        stats.total_categories,
        stats.skipped_records,
    )

    order_settings = await storage.order_settings.load()
    sessions = SessionManager(
        expiry_seconds=settings.cart_expiry_seconds,
        max_candidates=settings.max_disambiguation_options,
        on_expire=lambda customer_id: metrics.record_expired_cart(),
    )
    sessions.configure_expiry(order_settings.cart_expiry_minutes)

    transport = build_transport(settings)
    notifier = OrderNotifier(transport, storage.business, owner_override=settings.owner_id)
    finalizer = OrderFinalizer(storage, notifier=notifier, metrics=metrics)
    responder = AIFallbackResponder(settings, metrics=metrics)

    app.state.settings = settings
    app.state.storage = storage
    app.state.catalog = catalog
    app.state.sessions = sessions
    app.state.dispatcher = MessageDispatcher(
        settings=settings,
        storage=storage,
        catalog=catalog,
        classifier=IntentClassifier(catalog),
        sessions=sessions,
        finalizer=finalizer,
        responder=responder,
        transport=transport,
        metrics=metrics,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await build_components(app, settings)
        logger.info("Order bot ready (data_dir=%s)", settings.data_dir)
        try:
            yield
        finally:
            await app.state.sessions.shutdown()
            logger.info("Order bot stopped")

    app = FastAPI(
        title="Order Bot",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        trace_id = new_trace_id()
        await log_exception(request=request, exc=exc, trace_id=trace_id, handled=True)
        error_code, reason, status_code = map_exception_to_error_code(exc)
        return build_error_response(
            error_code=error_code,
            reason=reason,
            status_code=status_code,
            debug_payload={"trace_id": trace_id},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        trace_id = new_trace_id()
        await log_exception(request=request, exc=exc, trace_id=trace_id, handled=True)
        error_code, reason, status_code = map_exception_to_error_code(exc)
        return build_error_response(
            error_code=error_code,
            reason=reason,
            status_code=status_code,
            debug_payload={"trace_id": trace_id},
        )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        trace_id = new_trace_id()
        await log_exception(request=request, exc=exc, trace_id=trace_id, handled=True)
        error_code, reason, status_code = map_exception_to_error_code(exc)
        debug_payload = {"trace_id": trace_id}
        if exc.debug:
            debug_payload.update(exc.debug)
        return build_error_response(
            error_code=error_code,
            reason=reason,
            status_code=status_code,
            debug_payload=debug_payload,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        trace_id = new_trace_id()
        await log_exception(request=request, exc=exc, trace_id=trace_id, handled=False)
        error_code, reason, status_code = map_exception_to_error_code(exc)
        return build_error_response(
            error_code=error_code,
            reason=reason,
            status_code=status_code,
            debug_payload={"trace_id": trace_id},
        )

    app.include_router(messages.router)
    if settings.langsmith_api_key and settings.langsmith_tracing_v2:
        logger.info(
            "LangSmith tracing enabled for project=%s",
            settings.langsmith_project or "order-bot",
        )
    else:
        logger.info("LangSmith tracing disabled (no API key or flag)")
    logger.info("FastAPI app initialized (env=%s)", settings.env)
    return app
