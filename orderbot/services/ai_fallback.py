"""
Bridge to the free-text responder used when no rule matched.

The model receives a compact context (business name, up to
``ai_context_product_limit`` catalog lines, hours/address/payment text) and
returns either text or the ``SIN_RESPUESTA`` marker, which maps to ``None``.
Provider throttling surfaces as ``RateLimitedError`` so the dispatcher can
retry once; any other provider failure is ``ExternalServiceError``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional

import openai
from langchain_core.messages import AIMessage
from langchain_openai import ChatOpenAI
from langsmith import traceable

from ..config import Settings
from ..models.catalog import Product
from ..models.orders import BusinessProfile
from ..prompts.fallback_prompt import NO_ANSWER_TOKEN, build_fallback_prompt
from .cache import FallbackAnswerCache, get_fallback_cache
from .error_handling import ExternalServiceError, RateLimitedError
from .metrics import MetricsService, get_metrics_service
from .text_normalizer import normalize_message

logger = logging.getLogger(__name__)

_SENTENCE_BREAK_RE = re.compile(r"([.!])\s+([A-ZÁÉÍÓÚÑ¿¡])")
_EXTRA_BLANK_LINES_RE = re.compile(r"\n{3,}")


def build_catalog_summary(products: List[Product], limit: int = 50) -> str:
    if not products:
        return "No hay productos disponibles en este momento."
    lines: List[str] = []
    current_category: str | None = None
    for product in products[:limit]:
        if product.category != current_category:
            current_category = product.category
            lines.append(f"📂 {current_category.replace('_', ' ').upper()}:")
        unit = f" ({product.unit})" if product.unit else ""
        stock = "✅" if product.in_stock else "❌"
        lines.append(f"  {stock} {product.display_name}: ${product.unit_price}{unit}")
    return "\n".join(lines)


def build_business_info(business: BusinessProfile) -> str:
    return "\n".join(
        [
            f"📍 Dirección: {business.address or '-'}",
            f"🕐 Horarios: {business.hours or '-'}",
            f"💳 Medios de pago: {business.payment_methods or '-'}",
            f"📞 WhatsApp: {business.whatsapp or '-'}",
            f"☎️ Teléfono: {business.phone or '-'}",
        ]
    )


def tidy_answer(text: str) -> str:
    """One idea per line, no runs of blank lines."""

    text = _SENTENCE_BREAK_RE.sub(r"\1\n\2", text.strip())
    return _EXTRA_BLANK_LINES_RE.sub("\n\n", text)


class AIFallbackResponder:
    """Thin wrapper around a LangChain chat model for catch-all questions."""

    def __init__(
        self,
        settings: Settings,
        *,
        llm: Any | None = None,
        cache: FallbackAnswerCache | None = None,
        metrics: MetricsService | None = None,
    ) -> None:
        self._enabled = settings.ai_fallback_enabled
        self._cache_ttl = settings.ai_answer_cache_ttl
        self._product_limit = settings.ai_context_product_limit
        if llm is None and settings.openai_api_key:
            llm = ChatOpenAI(
                model=settings.openai_model,
                api_key=settings.openai_api_key,
                temperature=settings.openai_temperature,
                max_tokens=settings.openai_max_tokens,
                timeout=settings.http_timeout_seconds,
                base_url=settings.openai_base_url,
                max_retries=0,
            )
        self._llm = llm
        self._prompt = build_fallback_prompt()
        self._cache = cache or get_fallback_cache()
        self._metrics = metrics or get_metrics_service()
        if self._llm is None:
            logger.info("AI fallback has no model configured (OPENAI_API_KEY missing)")

    @property
    def available(self) -> bool:
        return self._llm is not None

    @property
    def enabled(self) -> bool:
        return self._enabled and self.available

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info("AI fallback %s", "enabled" if enabled else "disabled")

    @traceable(run_type="llm", name="ai_fallback_answer")
    async def answer(
        self,
        question: str,
        *,
        business: BusinessProfile,
        products: List[Product],
        customer_id: str | None = None,
    ) -> Optional[str]:
        """Return formatted text, or ``None`` when the responder has no answer."""

        if not self.enabled:
            return None
        normalized = normalize_message(question)
        if not normalized:
            return None

        catalog_summary = build_catalog_summary(products, self._product_limit)
        business_info = build_business_info(business)
        signature = self._cache.compute_context_signature(
            f"{business.name}|{catalog_summary}|{business_info}"
        )
        cached = self._cache.get(normalized, signature)
        if cached is not None:
            self._metrics.record_fallback_call(cached=True)
            return cached

        messages = self._prompt.format_messages(
            business_name=business.name,
            catalog_summary=catalog_summary,
            business_info=business_info,
            no_answer_token=NO_ANSWER_TOKEN,
            question=question,
        )
        try:
            result = await self._llm.ainvoke(messages)
        except openai.RateLimitError as exc:
            logger.warning("AI provider rate limit for customer=%s: %s", customer_id or "-", exc)
            raise RateLimitedError(str(exc), reason="ai_rate_limited") from exc
        except openai.OpenAIError as exc:
            logger.error("AI provider error for customer=%s: %s", customer_id or "-", exc)
            raise ExternalServiceError(str(exc), reason="ai_provider_error") from exc

        content = result.content if isinstance(result, AIMessage) else str(result)
        content = (content or "").strip()
        if not content or NO_ANSWER_TOKEN in content:
            self._metrics.record_fallback_call(answered=False)
            return None
        answer = tidy_answer(content)
        self._cache.set(normalized, signature, answer, ttl_seconds=self._cache_ttl)
        self._metrics.record_fallback_call()
        logger.info("AI fallback answered customer=%s (%d chars)", customer_id or "-", len(answer))
        return answer
