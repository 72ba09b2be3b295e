"""
AIService: the public entry point of the orchestration layer.

generate() composes Router -> Rate Limiter -> Retry Controller ->
Provider Adapter -> Normalizer, and records one usage entry per attempt.
"""

import asyncio
import uuid
from dataclasses import asdict, replace
from typing import Awaitable, Callable

import structlog

from .adapters import ADAPTER_CLASSES, ProviderAdapter
from .config import Config, ConfigManager
from .errors import (
    AIServiceError,
    ConfigError,
    InvalidRequest,
    LocalRateLimitRejected,
    UnsupportedModel,
)
from .fallback import FallbackResolver
from .fallback_tracker import FallbackTracker
from .models import AttemptRecord, GenerationRequest, GenerationResult, ModelDescriptor, UsageRecord
from .preferences import NoPreferenceSource, PreferenceSource
from .rate_limiter import RateLimiter
from .registry import ConfigModelSource, ModelRegistry, ModelSource, RegistrySnapshot, YamlModelSource
from .retry import RetryController, RetryPolicy
from .router import CapabilityRouter
from .usage import UsageRecorder, build_recorder

logger = structlog.get_logger()


class AIService:
    """
    多供应商AI补全编排层 - 对外提供单一API，对内调度多个模型平台。

    Features:
    - Capability-based model selection with subject preferences
    - Per-subject, per-model local rate limiting
    - Retry with linear/exponential backoff and fallback chains
    - One normalized result shape across providers
    - Usage telemetry for every attempt
    """

    def __init__(
        self,
        adapters: dict[str, ProviderAdapter],
        config: Config | None = None,
        registry: ModelRegistry | None = None,
        recorder: UsageRecorder | None = None,
        preferences: PreferenceSource | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize AIService.

        Args:
            adapters: Provider adapters keyed by provider name
            config: Service configuration; defaults apply if None
            registry: Model registry; built from the adapter catalogs if None
            recorder: Usage sink; built from ``config.usage`` if None
            preferences: Subject preference source; no preferences if None
            rate_limiter: Local rate limiter; built from ``config.rate_limits`` if None
            sleep: Backoff sleep, injectable for tests
        """
        self.config = config or Config()
        self.adapters = adapters
        self.registry = registry if registry is not None else ModelRegistry(adapters)
        self.router = CapabilityRouter(self.registry, self.config.service.default_model)
        self.resolver = FallbackResolver(self.registry)
        self.fallback_tracker = FallbackTracker()
        self.controller = RetryController(
            RetryPolicy.from_config(self.config.retry), self.resolver, self.fallback_tracker, sleep=sleep
        )

        limits = self.config.rate_limits
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(
            window_ms=limits.window_ms,
            default_limit=limits.default_limit,
            cleanup_multiplier=limits.cleanup_multiplier,
        )
        self.recorder = recorder if recorder is not None else build_recorder(self.config.usage)
        self.preferences = preferences if preferences is not None else NoPreferenceSource()

        self.temperature = self.config.service.temperature
        self.max_tokens = self.config.service.max_tokens

        self._apply_rate_limits(self.registry.snapshot)
        self.registry.add_listener(self._apply_rate_limits)

    @classmethod
    def from_config(
        cls,
        config_manager: ConfigManager | None = None,
        config_path: str | None = None,
        **kwargs,
    ) -> "AIService":
        """
        Build a service, its adapters and its model source from YAML config.

        Registry rows are loaded by ``start()``; until then the adapter
        catalogs are used.

        Raises:
            ConfigError: If no configured provider has an adapter
        """
        manager = config_manager or ConfigManager(config_path)
        config = manager.config
        proxy_url = manager.get_proxy_url()

        adapters: dict[str, ProviderAdapter] = {}
        for name, provider_config in config.providers.items():
            adapter_class = ADAPTER_CLASSES.get(name)
            if adapter_class is None:
                logger.warning("unknown_provider_skipped", provider=name)
                continue
            adapters[name] = adapter_class(
                api_key=provider_config.api_key,
                base_url=provider_config.base_url,
                timeout=provider_config.timeout or config.http_client.timeout,
                http_client=asdict(config.http_client),
                proxy_url=proxy_url,
            )
        if not adapters:
            raise ConfigError("No providers configured with an API key")

        source: ModelSource | None = None
        if config.registry.source_path:
            source = YamlModelSource(config.registry.source_path)
        elif config.models:
            source = ConfigModelSource(manager)

        registry = ModelRegistry(adapters, source)
        return cls(adapters, config=config, registry=registry, **kwargs)

    # ------------------------------------------------------------------
    # Configuration getters/setters
    # ------------------------------------------------------------------

    @property
    def temperature(self) -> float:
        return self._temperature

    @temperature.setter
    def temperature(self, value: float) -> None:
        if not 0.0 <= value <= 1.0:
            raise InvalidRequest("Temperature must be between 0 and 1")
        self._temperature = value

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @max_tokens.setter
    def max_tokens(self, value: int) -> None:
        if value < 1:
            raise InvalidRequest("Max tokens must be greater than 0")
        self._max_tokens = value

    @property
    def retry_policy(self) -> RetryPolicy:
        return self.controller.policy

    @retry_policy.setter
    def retry_policy(self, policy: RetryPolicy) -> None:
        """Applies to every generate() call started afterwards."""
        self.controller.policy = policy

    def set_retry_attempts(self, max_attempts: int) -> None:
        """
        Change the attempt budget per request.

        Raises:
            InvalidRequest: If max_attempts is below 1
        """
        self._update_retry_policy(max_attempts=max_attempts)

    def set_retry_delay(self, base_delay_ms: int) -> None:
        """
        Change the base backoff delay in milliseconds.

        Raises:
            InvalidRequest: If the delay is negative
        """
        self._update_retry_policy(base_delay_ms=base_delay_ms)

    def _update_retry_policy(self, **changes) -> None:
        try:
            self.retry_policy = replace(self.retry_policy, **changes)
        except ValueError as e:
            raise InvalidRequest(str(e))

    @property
    def default_model(self) -> ModelDescriptor:
        """The default model, or the first by priority if it is not registered."""
        return self.router.default_model()

    def set_default_model(self, model_id: str) -> None:
        """
        Change the default model.

        Raises:
            UnsupportedModel: If the model is not registered
        """
        if self.registry.get(model_id) is None:
            raise UnsupportedModel(f"Invalid model: {model_id}", model_id=model_id)
        self.router.default_model_id = model_id

    def available_models(self) -> list[ModelDescriptor]:
        """All registered models in routing order."""
        return list(self.registry.snapshot.models)

    def provider_models(self, provider: str) -> list[ModelDescriptor]:
        return self.registry.snapshot.for_provider(provider)

    def rate_limit_status(self, subject_id: str | None = None) -> dict[str, dict]:
        """Limiter status for every registered model for one subject."""
        return {
            descriptor.id: self.rate_limiter.status(subject_id, descriptor.id)
            for descriptor in self.registry.snapshot.models
        }

    def fallback_stats(self) -> dict:
        return self.fallback_tracker.get_stats().get_summary()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def refresh_models(self) -> RegistrySnapshot:
        """Reload the registry from its source now."""
        return await self.registry.refresh()

    async def start(self) -> None:
        """Load the registry and start the refresh and sweeper tasks."""
        await self.refresh_models()
        self.registry.start_auto_refresh(self.config.registry.refresh_interval_s)
        if self.config.rate_limits.enabled:
            self.rate_limiter.start_sweeper(self.config.rate_limits.sweep_interval_s)

    async def aclose(self) -> None:
        """Stop background tasks and close HTTP clients and the usage sink."""
        await self.registry.stop_auto_refresh()
        await self.rate_limiter.stop_sweeper()
        for adapter in self.adapters.values():
            await adapter.aclose()
        await self.recorder.aclose()

    async def __aenter__(self) -> "AIService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        request: GenerationRequest,
        capability: str | None = None,
        subject_id: str | None = None,
        timeout: float | None = None,
    ) -> GenerationResult:
        """
        Generate a completion.

        This is the main entry point. It:
        1. Validates the request
        2. Picks the model (requested, preferred, routed or default)
        3. Runs the attempts through the retry controller
        4. Records usage for every attempt

        Args:
            request: Canonical request; model_id is optional
            capability: Capability to route on when no model is requested
            subject_id: Caller identity for rate limiting, preferences and usage
            timeout: Overall deadline in seconds for all attempts

        Returns:
            GenerationResult from the first successful attempt

        Raises:
            AIServiceError: Typed error tagged with the attempt history
        """
        errors = request.validate()
        if errors:
            raise InvalidRequest("; ".join(errors), model_id=request.model_id)

        descriptor = await self._select(request, capability, subject_id)
        request_id = uuid.uuid4().hex

        async def attempt(model_id: str, attempt_number: int) -> GenerationResult:
            return await self._attempt(request, model_id, subject_id)

        async def on_attempt(
            attempt_number: int,
            record: AttemptRecord,
            result: GenerationResult | None,
            error: AIServiceError | None,
        ) -> None:
            await self._record(request_id, subject_id, attempt_number, record, result, error)

        return await self.controller.run(
            descriptor.id,
            attempt,
            on_attempt,
            deadline_s=timeout,
            request_id=request_id,
        )

    async def _select(
        self,
        request: GenerationRequest,
        capability: str | None,
        subject_id: str | None,
    ) -> ModelDescriptor:
        if request.model_id:
            descriptor = self.registry.get(request.model_id)
            if descriptor is None:
                raise UnsupportedModel(
                    f"Model {request.model_id} is not registered", model_id=request.model_id
                )
            return descriptor

        preference = await self._preferred_model(subject_id)
        if capability is not None:
            return self.router.select_model(capability, preference)
        if preference and self.registry.get(preference) is not None:
            return self.registry.get(preference)
        return self.router.default_model()

    async def _preferred_model(self, subject_id: str | None) -> str | None:
        if not subject_id:
            return None
        try:
            return await self.preferences.preferred_model(subject_id)
        except Exception as e:
            logger.warning("preference_lookup_failed", subject=subject_id, error=str(e))
            return None

    async def _attempt(
        self,
        request: GenerationRequest,
        model_id: str,
        subject_id: str | None,
    ) -> GenerationResult:
        descriptor = self.registry.get(model_id)
        if descriptor is None:
            raise UnsupportedModel(f"Model {model_id} is not registered", model_id=model_id)

        if self.config.rate_limits.enabled and not self.rate_limiter.try_acquire(subject_id, model_id):
            wait_ms = self.rate_limiter.time_until_available(subject_id, model_id)
            raise LocalRateLimitRejected(
                f"Local rate limit reached, available again in {wait_ms}ms",
                provider=descriptor.provider_name,
                model_id=model_id,
            )

        adapter = self.registry.adapter_for(descriptor)
        result = await adapter.generate(self._prepare(request, descriptor))

        if self.config.rate_limits.enabled:
            self.rate_limiter.record_tokens(subject_id, model_id, result.usage.total_tokens)
        return result

    def _prepare(self, request: GenerationRequest, descriptor: ModelDescriptor) -> GenerationRequest:
        """Fill request defaults and cap max_tokens at the model's limit."""
        temperature = request.temperature
        if temperature is None:
            temperature = (
                descriptor.default_temperature
                if descriptor.default_temperature is not None
                else self._temperature
            )
        max_tokens = min(request.max_tokens or self._max_tokens, descriptor.max_tokens)
        return replace(request, model_id=descriptor.id, temperature=temperature, max_tokens=max_tokens)

    async def _record(
        self,
        request_id: str,
        subject_id: str | None,
        attempt_number: int,
        record: AttemptRecord,
        result: GenerationResult | None,
        error: AIServiceError | None,
    ) -> None:
        descriptor = self.registry.get(record.model_id)
        provider = descriptor.provider_name if descriptor else (error.provider if error else None)
        usage = UsageRecord(
            request_id=request_id,
            model_id=record.model_id,
            provider=provider or "unknown",
            prompt_tokens=result.usage.prompt_tokens if result else 0,
            completion_tokens=result.usage.completion_tokens if result else 0,
            total_tokens=result.usage.total_tokens if result else 0,
            latency_ms=record.latency_ms,
            success=record.success,
            subject_id=subject_id,
            error_code=record.error_code,
            error_message=error.message if error else None,
            attempt=attempt_number,
        )
        try:
            await self.recorder.record(usage)
        except Exception as e:
            logger.warning(
                "usage_record_failed",
                request_id=request_id,
                model=record.model_id,
                error=str(e),
            )

    def _apply_rate_limits(self, snapshot: RegistrySnapshot) -> None:
        """Per-model limit: config override, then descriptor, then adapter envelope."""
        overrides = self.config.rate_limits.model_limits
        for descriptor in snapshot.models:
            adapter = self.adapters.get(descriptor.provider_name)
            envelope = adapter.RATE_LIMIT if adapter else None
            limit = (
                overrides.get(descriptor.id)
                or descriptor.requests_per_minute
                or (envelope.requests_per_minute if envelope else None)
                or self.rate_limiter.default_limit
            )
            token_limit = envelope.tokens_per_minute if envelope else None
            self.rate_limiter.set_limit(descriptor.id, limit, token_limit)
