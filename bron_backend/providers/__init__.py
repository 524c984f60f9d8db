"""Reasoning providers."""

from .base import ContentBlock, ReasoningProvider, ReasoningResponse
from .registry import get_reasoning_provider

__all__ = ["ContentBlock", "ReasoningProvider", "ReasoningResponse", "get_reasoning_provider"]
