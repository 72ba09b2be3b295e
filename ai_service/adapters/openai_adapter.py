"""
OpenAI provider adapter implementation.
"""

from ..models import GenerationRequest, ModelDescriptor
from ..replies import OpenAIReply
from .base import ProviderAdapter, RateLimitEnvelope


class OpenAIAdapter(ProviderAdapter):
    """
    Adapter for the OpenAI Chat Completions API.

    Messages pass through unchanged. Reasoning models (o1/o3 family) reject
    ``temperature`` and take ``max_completion_tokens`` instead of ``max_tokens``.
    """

    name: str = "openai"
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    RATE_LIMIT = RateLimitEnvelope(requests_per_minute=60)
    MODELS = (
        ModelDescriptor(
            id="gpt-4o",
            provider_name="openai",
            max_tokens=4096,
            context_window=128000,
            capabilities=frozenset({"chat", "completion", "function-calling"}),
            fallback_model_id="gpt-3.5-turbo",
            priority=10,
            display_name="GPT-4o",
        ),
        ModelDescriptor(
            id="o1",
            provider_name="openai",
            max_tokens=4096,
            context_window=128000,
            capabilities=frozenset({"chat", "completion", "reasoning", "thinking", "analysis"}),
            temperature_supported=False,
            fallback_model_id="o1-mini",
            priority=30,
            display_name="O1",
        ),
        ModelDescriptor(
            id="o3-mini",
            provider_name="openai",
            max_tokens=100000,
            context_window=200000,
            capabilities=frozenset({"chat", "completion", "reasoning", "thinking", "analysis"}),
            temperature_supported=False,
            priority=35,
            display_name="O3 Mini",
        ),
        ModelDescriptor(
            id="o1-mini",
            provider_name="openai",
            max_tokens=4096,
            context_window=128000,
            capabilities=frozenset({"chat", "completion", "reasoning", "thinking"}),
            temperature_supported=False,
            fallback_model_id="gpt-3.5-turbo",
            priority=40,
            display_name="O1 Mini",
        ),
        ModelDescriptor(
            id="gpt-3.5-turbo",
            provider_name="openai",
            max_tokens=4096,
            context_window=16385,
            capabilities=frozenset({"chat", "completion"}),
            priority=50,
            display_name="GPT-3.5 Turbo",
        ),
    )

    CHAT_PATH = "/chat/completions"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, request: GenerationRequest, model: ModelDescriptor) -> dict:
        """Translate a canonical request into a Chat Completions body."""
        payload = {
            "model": model.id,
            "messages": [message.to_dict() for message in request.messages],
        }
        if model.temperature_supported:
            if request.temperature is not None:
                payload["temperature"] = request.temperature
            if request.max_tokens is not None:
                payload["max_tokens"] = request.max_tokens
        elif request.max_tokens is not None:
            payload["max_completion_tokens"] = request.max_tokens
        return payload

    async def _send(self, request: GenerationRequest, model: ModelDescriptor) -> OpenAIReply:
        data = await self._post_json(self.CHAT_PATH, self.build_payload(request, model), model.id)
        return OpenAIReply(body=data)
