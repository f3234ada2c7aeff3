"""
Order parser agent.

Turns a finished voice transcript into structured order items. The model is
asked for a fixed JSON shape; anything that does not validate strictly is
rejected as a whole so the caller can take the substring fallback instead of
acting on partial data.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import TypeAdapter, ValidationError

from voice_order_agent.errors import ParsingUnavailable
from voice_order_agent.models.llm_client import LLMClient, LLMClientBase
from voice_order_agent.order.schemas import NO_QUANTITY, ParsedOrderItem, QuantityLabel

logger = logging.getLogger(__name__)

_PARSED_ITEMS = TypeAdapter(list[ParsedOrderItem])

ORDER_ITEMS_SCHEMA: dict[str, Any] = {
    "type": "ARRAY",
    "items": {
        "type": "OBJECT",
        "properties": {
            "vegetable": {
                "type": "STRING",
                "description": "The name of the vegetable in English or Hindi.",
            },
            "quantity": {
                "type": "STRING",
                "enum": [q.value for q in QuantityLabel] + [NO_QUANTITY],
                "description": "The quantity. Must be one of: '100g', '250g', '500g', '1kg', or '' to remove.",
            },
        },
        "required": ["vegetable", "quantity"],
    },
}


class OrderParserBase(ABC):
    """Abstract base class for transcript parsers."""

    @abstractmethod
    async def parse(self, transcript: str) -> list[ParsedOrderItem]:
        """
        Parse a transcript into order items.

        Args:
            transcript: Finished transcript text.

        Returns:
            Validated parsed items (possibly empty).

        Raises:
            ParsingUnavailable: If the parser failed or returned invalid structure.
        """
        ...


class OrderParser(OrderParserBase):
    """
    LLM-based transcript parser.

    Extracts (vegetable, quantity) pairs constrained to the closed quantity set.
    """

    PARSING_PROMPT = (
        "Parse the following user request and extract the vegetable names and their quantities. "
        "The quantity must be one of '100g', '250g', '500g', or '1kg'. "
        "Normalize weights like 'half a kilo' to '500g', 'a quarter kilo' to '250g', and 'pao' to '250g'. "
        "If no quantity is mentioned for a vegetable, default it to '1kg'. "
        "If the user asks to remove a vegetable, set its quantity to an empty string. "
        'Request: "{transcript}"'
    )

    def __init__(self, llm_client: LLMClientBase | None = None) -> None:
        """
        Initialize the order parser.

        Args:
            llm_client: LLM client for parsing. Creates default if None.
        """
        self._llm_client = llm_client or LLMClient()

    async def parse(self, transcript: str) -> list[ParsedOrderItem]:
        text = (transcript or "").strip()
        if not text:
            return []

        logger.info(f'[ORDER] parsing transcript: "{text[:80]}"')
        prompt = self.PARSING_PROMPT.format(transcript=text)

        try:
            data = await self._llm_client.generate_json(
                prompt,
                response_schema=ORDER_ITEMS_SCHEMA,
                temperature=0.0,
            )
        except Exception as e:
            raise ParsingUnavailable(f"Transcript parser failed: {e}") from e

        if data is None:
            raise ParsingUnavailable("Transcript parser returned no usable output")

        return self.validate(data)

    @staticmethod
    def validate(data: Any) -> list[ParsedOrderItem]:
        """
        Strictly validate a parser payload.

        A bare list is expected; {"items": [...]} is accepted as well since
        some models wrap arrays in an object.

        Raises:
            ParsingUnavailable: If the payload does not match the schema.
        """
        if isinstance(data, dict) and set(data) == {"items"}:
            data = data["items"]
        if not isinstance(data, list):
            raise ParsingUnavailable(f"Expected a list of items, got {type(data).__name__}")

        try:
            return _PARSED_ITEMS.validate_python(data)
        except ValidationError as e:
            logger.warning(f"[ORDER] parser payload rejected: {e.error_count()} validation error(s)")
            raise ParsingUnavailable("Transcript parser returned invalid items") from e
