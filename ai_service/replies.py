"""
Raw provider replies.

Adapters wrap the decoded JSON body of a successful HTTP call in one of these
types and hand it to the normalizer. Nothing outside ``normalizer.py`` looks
inside ``body``.
"""

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class OpenAIReply:
    """Chat Completions body (``choices[].message.content`` + ``usage``)."""
    body: dict[str, Any] = field(default_factory=dict)


@dataclass
class AnthropicReply:
    """Messages API body (``content[]`` blocks + ``usage``)."""
    body: dict[str, Any] = field(default_factory=dict)


@dataclass
class GoogleReply:
    """generateContent body (``candidates[]`` + ``usageMetadata``)."""
    body: dict[str, Any] = field(default_factory=dict)


@dataclass
class PerplexityReply:
    """OpenAI-compatible body; ``usage`` is frequently missing."""
    body: dict[str, Any] = field(default_factory=dict)


ProviderReply = Union[OpenAIReply, AnthropicReply, GoogleReply, PerplexityReply]
