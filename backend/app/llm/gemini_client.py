"""Gemini client wrapper for report generation."""

import asyncio
import logging
import os

from google import genai
from google.genai import types
from pydantic import BaseModel
from pydantic import Field as PydanticField

logger = logging.getLogger(__name__)

# Default retry configuration
MAX_RETRIES = 3
RETRY_DELAY = 1.0  # seconds
RETRY_MULTIPLIER = 2.0

DEFAULT_MODEL = "gemini-2.5-pro"

# USD per million tokens
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gemini-2.5-pro": (1.25, 10.0),
    "gemini-2.5-flash": (0.30, 2.50),
    "gemini-2.0-flash": (0.10, 0.40),
}


class TextUsage(BaseModel):
    """Token usage of one generation."""

    prompt_tokens: int = PydanticField(default=0, alias="promptTokens")
    completion_tokens: int = PydanticField(default=0, alias="completionTokens")
    total_tokens: int = PydanticField(default=0, alias="totalTokens")

    model_config = {"populate_by_name": True}


class TextGeneration(BaseModel):
    """Generated text with its usage and USD cost."""

    text: str
    model: str
    usage: TextUsage = PydanticField(default_factory=TextUsage)
    cost: float = 0.0


def calculate_cost(model: str, usage: TextUsage) -> float:
    """Price a generation from its token usage. Unknown models cost nothing."""
    input_price, output_price = MODEL_PRICING.get(model, (0.0, 0.0))
    return (
        usage.prompt_tokens * input_price + usage.completion_tokens * output_price
    ) / 1_000_000


def _is_retryable(error: Exception) -> bool:
    error_str = str(error).lower()
    return "rate" in error_str or "limit" in error_str or "500" in error_str or "503" in error_str


class GeminiClient:
    """Wrapper around Google GenAI client."""

    def __init__(self, api_key: str | None = None):
        """Initialize the client.

        Args:
            api_key: Google API key. If not provided, uses GOOGLE_API_KEY env var.
        """
        self.api_key = api_key or os.getenv("GOOGLE_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Google API key required. Set GOOGLE_API_KEY environment variable "
                "or pass api_key parameter."
            )
        self._client = genai.Client(api_key=self.api_key)

    async def generate_text(
        self,
        prompt: str,
        model: str = DEFAULT_MODEL,
        system: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> TextGeneration:
        """Generate text from Gemini.

        Rate-limit and server errors are retried with exponential backoff;
        anything else propagates immediately.

        Args:
            prompt: The user prompt
            model: Gemini model name
            system: Optional system instruction
            temperature: Sampling temperature (0-2)
            max_tokens: Maximum tokens in response

        Returns:
            The text, token usage and cost
        """
        last_error: Exception | None = None
        delay = RETRY_DELAY

        for attempt in range(MAX_RETRIES):
            try:
                config = types.GenerateContentConfig(
                    temperature=temperature,
                    max_output_tokens=max_tokens,
                    system_instruction=system,
                )

                response = await self._client.aio.models.generate_content(
                    model=model,
                    contents=prompt,
                    config=config,
                )

                metadata = response.usage_metadata
                usage = TextUsage(
                    prompt_tokens=(metadata.prompt_token_count or 0) if metadata else 0,
                    completion_tokens=(metadata.candidates_token_count or 0) if metadata else 0,
                    total_tokens=(metadata.total_token_count or 0) if metadata else 0,
                )
                return TextGeneration(
                    text=response.text or "",
                    model=model,
                    usage=usage,
                    cost=calculate_cost(model, usage),
                )

            except Exception as e:
                if not _is_retryable(e):
                    raise
                last_error = e
                logger.warning(
                    f"Gemini error (attempt {attempt + 1}/{MAX_RETRIES}), "
                    f"retrying in {delay}s: {e}"
                )
                await asyncio.sleep(delay)
                delay *= RETRY_MULTIPLIER

        raise last_error or RuntimeError("Unexpected retry failure")


# Global client instance (lazy initialization)
_gemini_client: GeminiClient | None = None


def get_gemini_client() -> GeminiClient | None:
    """Get or create the global Gemini client instance.

    Returns None if GOOGLE_API_KEY is not set (allows graceful fallback).
    """
    global _gemini_client
    if _gemini_client is None:
        try:
            _gemini_client = GeminiClient()
        except ValueError:
            # No API key, return None for fallback
            return None
    return _gemini_client


def gemini_available() -> bool:
    """Check if Gemini is available (API key is set)."""
    return bool(os.getenv("GOOGLE_API_KEY"))
