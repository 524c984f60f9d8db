"""Reasoning provider selection."""

from __future__ import annotations

from ..core.logging import get_logger
from ..core.settings import Settings
from .base import ReasoningProvider

logger = get_logger(__name__)


def get_reasoning_provider(settings: Settings) -> ReasoningProvider:
    """Build the provider named by ``settings.provider_mode``."""
    if settings.provider_mode == "mock":
        from .mock import ScriptedProvider

        logger.info("Initialized deterministic mock provider (PROVIDER_MODE=mock)")
        return ScriptedProvider()

    from .anthropic import AnthropicProvider

    if not settings.anthropic_api_key:
        logger.warning("BRON_ANTHROPIC_API_KEY is empty; runs will fail at the first reasoning call")
    logger.info("Initialized anthropic provider", data={"model": settings.anthropic_model})
    return AnthropicProvider(
        base_url=settings.anthropic_base_url,
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        max_tokens=settings.anthropic_max_tokens,
        api_version=settings.anthropic_version,
        timeout=settings.provider_timeout_seconds,
    )
