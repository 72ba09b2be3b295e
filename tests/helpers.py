"""
Test doubles and factories shared by the ai_service tests.
"""

from collections.abc import Awaitable, Callable

import httpx

from ai_service.adapters.base import ProviderAdapter
from ai_service.config import Config
from ai_service.models import (
    CanonicalMessage,
    GenerationRequest,
    GenerationResult,
    ModelDescriptor,
    TokenUsage,
)
from ai_service.service import AIService
from ai_service.usage import InMemoryUsageRecorder


def descriptor(
    model_id: str,
    provider: str = "fake",
    capabilities: tuple[str, ...] = ("chat",),
    fallback: str | None = None,
    priority: int = 100,
    max_tokens: int = 1000,
    **kwargs,
) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        provider_name=provider,
        max_tokens=max_tokens,
        context_window=8192,
        capabilities=frozenset(capabilities),
        fallback_model_id=fallback,
        priority=priority,
        **kwargs,
    )


def ok(content: str, model_id: str, prompt: int = 2, completion: int = 1, latency_ms: int = 5) -> GenerationResult:
    return GenerationResult(
        content=content,
        model_id=model_id,
        latency_ms=latency_ms,
        usage=TokenUsage(prompt_tokens=prompt, completion_tokens=completion),
        provider="fake",
    )


def user_request(text: str = "hi", model_id: str | None = None, **kwargs) -> GenerationRequest:
    return GenerationRequest(messages=[CanonicalMessage(role="user", content=text)], model_id=model_id, **kwargs)


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Scripted adapter made a real HTTP call to {request.url}")


Outcome = GenerationResult | Exception | Callable[[GenerationRequest], Awaitable[GenerationResult]]


class ScriptedAdapter(ProviderAdapter):
    """
    Adapter whose replies are scripted per model.

    ``script[model_id]`` is a list of outcomes consumed in order; the last one
    repeats. An outcome is a GenerationResult, an exception to raise, or an
    async callable taking the request.
    """

    def __init__(self, models: list[ModelDescriptor], script: dict[str, list[Outcome]] | None = None, name: str = "fake"):
        self.name = name
        self.MODELS = tuple(models)
        super().__init__(
            api_key="test-key",
            client=httpx.AsyncClient(transport=httpx.MockTransport(_unreachable)),
        )
        self.script = {key: list(value) for key, value in (script or {}).items()}
        self.calls: list[GenerationRequest] = []

    async def _send(self, request, model):
        raise AssertionError("ScriptedAdapter does not send")

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.get_model(request.model_id)
        self.calls.append(request)
        outcomes = self.script.get(request.model_id) or [ok("ok", request.model_id)]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return await outcome(request)
        return outcome

    def called_models(self) -> list[str]:
        return [request.model_id for request in self.calls]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_service(
    adapter: ScriptedAdapter,
    config: Config | None = None,
    recorder=None,
    **kwargs,
) -> tuple[AIService, InMemoryUsageRecorder, RecordingSleep]:
    recorder = recorder if recorder is not None else InMemoryUsageRecorder()
    sleep = RecordingSleep()
    config = config or Config()
    if config.service.default_model not in {m.id for m in adapter.MODELS} and adapter.MODELS:
        config.service.default_model = adapter.MODELS[0].id
    service = AIService(
        {adapter.name: adapter},
        config=config,
        recorder=recorder,
        sleep=sleep,
        **kwargs,
    )
    return service, recorder, sleep
