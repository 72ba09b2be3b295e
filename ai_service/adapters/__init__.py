"""
Provider adapters for the supported AI platforms.
"""

from .base import ProviderAdapter, RateLimitEnvelope
from .openai_adapter import OpenAIAdapter
from .anthropic_adapter import AnthropicAdapter
from .google_adapter import GoogleAdapter
from .perplexity_adapter import PerplexityAdapter

ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "google": GoogleAdapter,
    "perplexity": PerplexityAdapter,
}

__all__ = [
    "ProviderAdapter",
    "RateLimitEnvelope",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GoogleAdapter",
    "PerplexityAdapter",
    "ADAPTER_CLASSES",
]
