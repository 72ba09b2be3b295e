"""
Perplexity (search-augmented) provider adapter.
"""

from ..models import GenerationRequest, ModelDescriptor
from ..replies import PerplexityReply
from .base import RateLimitEnvelope
from .openai_adapter import OpenAIAdapter


class PerplexityAdapter(OpenAIAdapter):
    """
    Adapter for the Perplexity API.

    The API is Chat Completions compatible, so payload building is shared with
    OpenAIAdapter. Replies often omit ``usage``; the normalizer estimates it.
    """

    name: str = "perplexity"
    DEFAULT_BASE_URL = "https://api.perplexity.ai"
    RATE_LIMIT = RateLimitEnvelope(requests_per_minute=50)
    MODELS = (
        ModelDescriptor(
            id="sonar-pro",
            provider_name="perplexity",
            max_tokens=4096,
            context_window=8192,
            capabilities=frozenset({"chat", "completion", "search", "analysis"}),
            fallback_model_id="sonar-medium",
            priority=60,
            display_name="Sonar Pro",
        ),
        ModelDescriptor(
            id="sonar-medium",
            provider_name="perplexity",
            max_tokens=2048,
            context_window=4096,
            capabilities=frozenset({"chat", "completion", "search"}),
            priority=70,
            display_name="Sonar Medium",
        ),
    )

    async def _send(self, request: GenerationRequest, model: ModelDescriptor) -> PerplexityReply:
        data = await self._post_json(self.CHAT_PATH, self.build_payload(request, model), model.id)
        return PerplexityReply(body=data)
