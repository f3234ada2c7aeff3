"""
Catalog/ordering API client.

Thin adapter over the surrounding app's HTTP API. Only the calls voice
ordering needs are exposed: today's catalog, order submission, delivery
confirmation, and transcript telemetry.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Literal

import httpx
from pydantic import TypeAdapter, ValidationError

from voice_order_agent.config import get_settings
from voice_order_agent.errors import StoreError
from voice_order_agent.order.schemas import CatalogEntry, OrderItem, ParsedOrderItem, VoiceOrderPayload

logger = logging.getLogger(__name__)

_CATALOG = TypeAdapter(list[CatalogEntry])

DeliveryChoice = Literal["YES", "NO"]


class StoreClientBase(ABC):
    """Abstract base class for catalog/ordering API clients."""

    @abstractmethod
    async def list_catalog(self) -> list[CatalogEntry]:
        """Fetch today's catalog."""
        ...

    @abstractmethod
    async def submit_order(self, user_id: str, items: Sequence[OrderItem]) -> None:
        """Submit the finished order for a user."""
        ...

    @abstractmethod
    async def log_voice_transcript(self, transcript: str, items: Sequence[ParsedOrderItem]) -> None:
        """Best-effort telemetry of a parsed voice order. Never raises."""
        ...

    async def send_delivery_confirmation(self, user_id: str, choice: DeliveryChoice) -> None:
        """Record whether the user wants delivery today. Never raises."""
        return None


class StoreClient(StoreClientBase):
    """
    HTTP client for the catalog/ordering API.

    Uses a lazily created httpx.AsyncClient; call close() when done.
    """

    def __init__(
        self,
        endpoint: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the store client.

        Args:
            endpoint: API base URL (uses config if not provided).
            timeout: Request timeout in seconds (uses config if not provided).
            transport: Optional httpx transport, mainly for tests.
        """
        settings = get_settings()
        self._endpoint = endpoint or settings.store_endpoint
        self._timeout = timeout or settings.store_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._endpoint,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise StoreError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def list_catalog(self) -> list[CatalogEntry]:
        response = await self._request("GET", "/vegetables")
        try:
            return _CATALOG.validate_python(response.json())
        except (ValueError, ValidationError) as e:
            raise StoreError(f"Catalog response is malformed: {e}") from e

    async def submit_order(self, user_id: str, items: Sequence[OrderItem]) -> None:
        payload = {
            "userId": user_id,
            "items": [item.model_dump(mode="json", by_alias=True) for item in items],
        }
        await self._request("POST", "/orders", json=payload)
        logger.info(f"[ORDER] submitted {len(items)} item(s) for user {user_id}")

    async def log_voice_transcript(self, transcript: str, items: Sequence[ParsedOrderItem]) -> None:
        payload = VoiceOrderPayload(transcription=transcript, items=list(items))
        try:
            await self._request("POST", "/voice-orders", json=payload.model_dump(mode="json", by_alias=True))
        except StoreError as e:
            logger.info(f"[ORDER] transcript telemetry dropped: {e}")

    async def send_delivery_confirmation(self, user_id: str, choice: DeliveryChoice) -> None:
        try:
            await self._request("POST", "/deliveries/confirmation", json={"userId": user_id, "choice": choice})
        except StoreError as e:
            logger.info(f"[ORDER] delivery confirmation not recorded: {e}")
