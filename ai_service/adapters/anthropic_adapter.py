"""
Anthropic provider adapter implementation.
"""

from ..models import GenerationRequest, ModelDescriptor
from ..replies import AnthropicReply
from .base import ProviderAdapter, RateLimitEnvelope


class AnthropicAdapter(ProviderAdapter):
    """
    Adapter for the Anthropic Messages API.

    System messages are lifted out of the message list into the top-level
    ``system`` field. ``max_tokens`` is mandatory for this API.
    """

    name: str = "anthropic"
    DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"
    RATE_LIMIT = RateLimitEnvelope(requests_per_minute=50)
    MODELS = (
        ModelDescriptor(
            id="claude-3-7-sonnet-20250219",
            provider_name="anthropic",
            max_tokens=4096,
            context_window=200000,
            capabilities=frozenset({"chat", "completion", "analysis", "reasoning", "thinking"}),
            fallback_model_id="claude-3-5-sonnet-20241022",
            priority=20,
            display_name="Claude 3.7 Sonnet",
        ),
        ModelDescriptor(
            id="claude-3-5-sonnet-20241022",
            provider_name="anthropic",
            max_tokens=4096,
            context_window=200000,
            capabilities=frozenset({"chat", "completion", "analysis"}),
            fallback_model_id="claude-3-5-haiku-20241022",
            priority=25,
            display_name="Claude 3.5 Sonnet",
        ),
        ModelDescriptor(
            id="claude-3-5-haiku-20241022",
            provider_name="anthropic",
            max_tokens=4096,
            context_window=200000,
            capabilities=frozenset({"chat", "completion"}),
            priority=55,
            display_name="Claude 3.5 Haiku",
        ),
    )

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.API_VERSION,
            "Content-Type": "application/json",
        }

    def build_payload(self, request: GenerationRequest, model: ModelDescriptor) -> dict:
        """Translate a canonical request into a Messages API body."""
        payload = {
            "model": model.id,
            "messages": [
                {"role": message.role, "content": message.content}
                for message in request.conversation()
            ],
            "max_tokens": request.max_tokens or model.max_tokens,
        }
        system = request.system_prompt()
        if system:
            payload["system"] = system
        if model.temperature_supported and request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    async def _send(self, request: GenerationRequest, model: ModelDescriptor) -> AnthropicReply:
        data = await self._post_json("/messages", self.build_payload(request, model), model.id)
        return AnthropicReply(body=data)
