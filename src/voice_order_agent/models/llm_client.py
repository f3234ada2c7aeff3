"""
LLM client abstraction.

Provides a small interface over Google Gemini for structured JSON generation.
Responses are parsed with best-effort repair because models occasionally wrap
JSON in fences or emit Python-style literals.
"""

import ast
import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from voice_order_agent.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"


class LLMResponse(BaseModel):
    """Response from an LLM."""

    content: str = Field(..., description="Generated text content")
    finish_reason: str = Field(default="stop", description="Reason for completion")
    model: str = Field(default="", description="Model used for generation")
    raw_response: dict[str, Any] = Field(
        default_factory=dict,
        description="Raw response details or error information",
    )


class LLMError(Exception):
    """Exception raised when the model cannot be reached or fails."""


class LLMClientBase(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        temperature: float = 0.2,
        response_schema: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        """
        Generate a completion for a single prompt.

        Args:
            prompt: Input prompt.
            temperature: Sampling temperature.
            response_schema: Optional JSON schema the output must follow.
            **kwargs: Additional model-specific parameters.

        Returns:
            Generated response. Failures are reported with finish_reason="error".
        """
        ...

    async def generate_json(
        self,
        prompt: str,
        response_schema: dict[str, Any] | None = None,
        temperature: float = 0.2,
        **kwargs: Any,
    ) -> Any | None:
        """
        Generate a completion and parse it as JSON.

        Returns:
            Parsed JSON (dict or list), or None if generation or parsing failed.
        """
        response = await self.generate(
            prompt,
            temperature=temperature,
            response_schema=response_schema,
            **kwargs,
        )

        if response.finish_reason == "error" or not response.content:
            logger.warning("JSON generation failed, returning None")
            return None

        content = response.content.strip()
        parsed = parse_json_loose(_extract_json_block(content))
        if parsed is None:
            parsed = parse_json_loose(content)
        if parsed is None:
            logger.warning("Failed to parse JSON from response")
            logger.debug(f"Response content: {content[:500]}")
        return parsed


class LLMClient(LLMClientBase):
    """
    Gemini-based LLM client.

    Uses the google-genai async API with JSON response mode.
    """

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        max_retries: int = 1,
        timeout: float | None = None,
    ) -> None:
        """
        Initialize the Gemini client.

        Args:
            model: Model name (defaults to settings.parser_model).
            api_key: API key (defaults to settings.google_api_key).
            max_retries: Number of retries on failure (default 1).
            timeout: Timeout in seconds per request (defaults to settings.parser_timeout).
        """
        settings = get_settings()
        self._model = model or settings.parser_model or DEFAULT_GEMINI_MODEL
        self._api_key = api_key or settings.google_api_key
        self._max_retries = max_retries
        self._timeout = timeout or settings.parser_timeout
        self._client = None

        logger.info(f"Initialized Gemini LLM client with model: {self._model}")

    @property
    def model(self) -> str:
        """Get the model name."""
        return self._model

    def _get_client(self):
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise LLMError("Google API key is not configured (set GOOGLE_API_KEY)")

        from google import genai

        self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def generate(
        self,
        prompt: str,
        temperature: float = 0.2,
        response_schema: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        config: dict[str, Any] = {"temperature": temperature}
        if response_schema is not None:
            config["response_mime_type"] = "application/json"
            config["response_schema"] = response_schema
        config.update(kwargs)

        last_error: Exception | None = None
        attempts = 0

        while attempts <= self._max_retries:
            attempts += 1
            try:
                client = self._get_client()
                logger.debug(f"Calling Gemini (attempt {attempts}) model={self._model}")
                response = await asyncio.wait_for(
                    client.aio.models.generate_content(
                        model=self._model,
                        contents=prompt,
                        config=config,
                    ),
                    timeout=self._timeout,
                )
                text = (getattr(response, "text", None) or "").strip()
                logger.debug(f"Gemini response length: {len(text)} chars")
                return LLMResponse(content=text, finish_reason="stop", model=self._model)

            except LLMError as e:
                # Configuration problems won't improve on retry.
                last_error = e
                break

            except asyncio.TimeoutError:
                logger.warning(f"Gemini timed out after {self._timeout}s (attempt {attempts})")
                last_error = LLMError(f"Gemini timed out after {self._timeout} seconds")

            except Exception as e:
                logger.warning(f"Gemini error (attempt {attempts}): {e}")
                last_error = LLMError(str(e))

        logger.error(f"Gemini generation failed: {last_error}")
        return LLMResponse(
            content="",
            finish_reason="error",
            model=self._model,
            raw_response={"error": str(last_error)},
        )


def _extract_json_block(content: str) -> str:
    """Return the first balanced JSON array or object in the text, if any."""
    starts = [i for i in (content.find("["), content.find("{")) if i != -1]
    if not starts:
        return content

    start_idx = min(starts)
    open_bracket = content[start_idx]
    close_bracket = "]" if open_bracket == "[" else "}"
    depth = 0
    for i, char in enumerate(content[start_idx:], start=start_idx):
        if char == open_bracket:
            depth += 1
        elif char == close_bracket:
            depth -= 1
            if depth == 0:
                return content[start_idx : i + 1]
    return content[start_idx:]


def fix_json_string(json_str: str) -> str:
    """
    Attempt to fix common JSON issues from LLM output.

    Args:
        json_str: Raw JSON string that may have issues.

    Returns:
        Cleaned JSON string.
    """
    if not json_str:
        return ""

    result = json_str.strip()

    # Strip common fenced blocks.
    result = re.sub(r"^```(?:json)?\s*", "", result, flags=re.IGNORECASE)
    result = re.sub(r"\s*```$", "", result)

    # Normalize curly quotes.
    result = (
        result.replace("“", '"')
        .replace("”", '"')
        .replace("‘", "'")
        .replace("’", "'")
    )

    # Remove trailing commas before closing braces/brackets.
    result = re.sub(r",(\s*[}\]])", r"\1", result)

    # Convert Python literals to JSON literals.
    result = re.sub(r"\bNone\b", "null", result)
    result = re.sub(r"\bTrue\b", "true", result)
    result = re.sub(r"\bFalse\b", "false", result)

    # Quote bare keys, only right after { or , so values are left alone.
    result = re.sub(
        r"([\{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)(\s*:)",
        r'\1"\2"\3',
        result,
    )

    if result.count("'") > 0 and result.count('"') == 0:
        result = result.replace("'", '"')

    return result


def _coerce_to_json_types(obj: Any) -> Any:
    """Coerce a Python literal (from ast.literal_eval) to JSON-safe types."""
    if obj is ...:
        return None
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict):
        return {str(k): _coerce_to_json_types(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_coerce_to_json_types(v) for v in obj]
    return str(obj)


def parse_json_loose(raw: str) -> dict[str, Any] | list[Any] | None:
    """Parse JSON with best-effort repair.

    Returns a dict/list on success, else None.
    """
    if not raw:
        return None

    cleaned = fix_json_string(raw)
    try:
        parsed = json.loads(cleaned)
        return parsed if isinstance(parsed, (dict, list)) else None
    except json.JSONDecodeError:
        pass

    try:
        obj = ast.literal_eval(raw.strip())
    except Exception:
        try:
            obj = ast.literal_eval(cleaned)
        except Exception:
            return None

    if not isinstance(obj, (dict, list, tuple, set)):
        return None

    try:
        return json.loads(json.dumps(_coerce_to_json_types(obj)))
    except (TypeError, ValueError):
        return None
