from __future__ import annotations

import logging
from typing import Protocol

import httpx

from ..config import Settings
from ..models.messages import OutboundMessage
from .error_handling import ExternalServiceError

logger = logging.getLogger(__name__)


class MessagingTransport(Protocol):
    async def send(self, message: OutboundMessage) -> None:
        ...


class HttpMessagingTransport:
    """Posts outbound messages to the chat gateway as JSON."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 15.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout = httpx.Timeout(timeout_seconds)
        self._http_transport = http_transport

    async def send(self, message: OutboundMessage) -> None:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        payload = message.model_dump(exclude_none=True)
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._http_transport) as client:
            try:
                response = await client.post(self._url, json=payload, headers=headers)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.error("Transport error sending to %s: %s", message.recipient, exc)
                raise ExternalServiceError(str(exc), reason="transport_failed") from exc


class LoggingTransport:
    """Used when no gateway URL is configured: outbound messages are only logged."""

    async def send(self, message: OutboundMessage) -> None:
        logger.info(
            "Outbound message to %s (%d chars, media=%s)",
            message.recipient,
            len(message.text),
            bool(message.media_url),
        )


def build_transport(settings: Settings) -> MessagingTransport:
    if settings.transport_url:
        return HttpMessagingTransport(
            settings.transport_url,
            token=settings.transport_token,
            timeout_seconds=settings.http_timeout_seconds,
        )
    logger.info("TRANSPORT_URL not set, outbound messages will only be logged")
    return LoggingTransport()
