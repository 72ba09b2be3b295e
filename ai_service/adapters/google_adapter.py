"""
Google Gemini provider adapter implementation.
"""

from ..models import GenerationRequest, ModelDescriptor
from ..replies import GoogleReply
from .base import ProviderAdapter, RateLimitEnvelope


HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class GoogleAdapter(ProviderAdapter):
    """
    Adapter for the Gemini generateContent REST API.

    Roles map to Gemini's ``user``/``model``; system text goes into
    ``systemInstruction``. Every call carries the default safety settings.
    """

    name: str = "google"
    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
    RATE_LIMIT = RateLimitEnvelope(requests_per_minute=60)
    SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"
    MODELS = (
        ModelDescriptor(
            id="gemini-2.0-pro",
            provider_name="google",
            max_tokens=8192,
            context_window=2000000,
            capabilities=frozenset({"chat", "completion", "analysis", "reasoning", "thinking", "tool_use"}),
            fallback_model_id="gemini-2.0-flash",
            priority=15,
            display_name="Gemini 2.0 Pro",
        ),
        ModelDescriptor(
            id="gemini-2.0-flash",
            provider_name="google",
            max_tokens=8192,
            context_window=1000000,
            capabilities=frozenset({"chat", "completion", "analysis", "multimodal"}),
            fallback_model_id="gemini-2.0-flash-lite",
            priority=45,
            display_name="Gemini 2.0 Flash",
        ),
        ModelDescriptor(
            id="gemini-2.0-flash-lite",
            provider_name="google",
            max_tokens=8192,
            context_window=1000000,
            capabilities=frozenset({"chat", "completion"}),
            priority=65,
            display_name="Gemini 2.0 Flash Lite",
        ),
        ModelDescriptor(
            id="gemini-1.5-pro",
            provider_name="google",
            max_tokens=2048,
            context_window=32768,
            capabilities=frozenset({"chat", "completion", "analysis"}),
            priority=80,
            display_name="Gemini 1.5 Pro",
        ),
    )

    def _headers(self) -> dict[str, str]:
        return {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }

    def build_payload(self, request: GenerationRequest, model: ModelDescriptor) -> dict:
        """Translate a canonical request into a generateContent body."""
        contents = [
            {
                "role": "model" if message.role == "assistant" else "user",
                "parts": [{"text": message.content}],
            }
            for message in request.conversation()
        ]
        payload = {
            "contents": contents,
            "safetySettings": [
                {"category": category, "threshold": self.SAFETY_THRESHOLD}
                for category in HARM_CATEGORIES
            ],
        }

        system = request.system_prompt()
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        generation_config = {}
        if model.temperature_supported and request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.max_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_tokens
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    async def _send(self, request: GenerationRequest, model: ModelDescriptor) -> GoogleReply:
        path = f"/models/{model.id}:generateContent"
        data = await self._post_json(path, self.build_payload(request, model), model.id)
        return GoogleReply(body=data)
