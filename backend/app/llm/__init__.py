"""LLM integration module for task report generation."""

from app.llm.gemini_client import (
    DEFAULT_MODEL,
    GeminiClient,
    TextGeneration,
    TextUsage,
    calculate_cost,
    gemini_available,
    get_gemini_client,
)

__all__ = [
    "GeminiClient",
    "get_gemini_client",
    "gemini_available",
    "TextGeneration",
    "TextUsage",
    "calculate_cost",
    "DEFAULT_MODEL",
]
