"""
AI Service - 多供应商AI补全编排层

A single entry point over several AI completion providers with
capability-based routing, local rate limiting, retries with fallback chains,
normalized responses and per-attempt usage telemetry.

Example usage:
    from ai_service import AIService, CanonicalMessage, GenerationRequest

    async with AIService.from_config(config_path="config.yaml") as service:
        result = await service.generate(
            GenerationRequest(messages=[CanonicalMessage("user", "Hello!")]),
            capability="chat",
            subject_id="user123",
        )
        print(result.content, result.usage.total_tokens)
"""

__version__ = "0.1.0"

# Core data models
from .models import (
    AttemptRecord,
    CanonicalMessage,
    GenerationRequest,
    GenerationResult,
    ModelDescriptor,
    RateLimitWindow,
    TokenUsage,
    UsageRecord,
)

# Errors
from .errors import (
    AIServiceError,
    AuthError,
    CapabilityNotFound,
    ConfigError,
    DeadlineExceeded,
    EmptyResponse,
    InvalidRequest,
    LocalRateLimitRejected,
    NormalizationError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
    SafetyBlocked,
    UnsupportedModel,
)

# Configuration and logging
from .config import Config, ConfigManager
from .log import configure_logging

# Components
from .normalizer import estimate_tokens, normalize
from .rate_limiter import RateLimiter
from .registry import (
    ConfigModelSource,
    ModelRegistry,
    ModelSource,
    RegistrySnapshot,
    StaticModelSource,
    YamlModelSource,
)
from .router import CapabilityRouter
from .fallback import FallbackResolver, validate_chains
from .fallback_tracker import FallbackEvent, FallbackStats, FallbackTracker
from .retry import RetryController, RetryPolicy
from .usage import InMemoryUsageRecorder, JsonlUsageRecorder, NullUsageRecorder, UsageRecorder
from .preferences import PreferenceSource, StaticPreferenceSource

# Main entry point
from .service import AIService

# Provider adapters
from .adapters import (
    AnthropicAdapter,
    GoogleAdapter,
    OpenAIAdapter,
    PerplexityAdapter,
    ProviderAdapter,
    RateLimitEnvelope,
)

__all__ = [
    "__version__",
    "AIService",
    "AttemptRecord",
    "CanonicalMessage",
    "GenerationRequest",
    "GenerationResult",
    "ModelDescriptor",
    "RateLimitWindow",
    "TokenUsage",
    "UsageRecord",
    "AIServiceError",
    "AuthError",
    "CapabilityNotFound",
    "ConfigError",
    "DeadlineExceeded",
    "EmptyResponse",
    "InvalidRequest",
    "LocalRateLimitRejected",
    "NormalizationError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "RateLimited",
    "SafetyBlocked",
    "UnsupportedModel",
    "Config",
    "ConfigManager",
    "configure_logging",
    "estimate_tokens",
    "normalize",
    "RateLimiter",
    "ConfigModelSource",
    "ModelRegistry",
    "ModelSource",
    "RegistrySnapshot",
    "StaticModelSource",
    "YamlModelSource",
    "CapabilityRouter",
    "FallbackResolver",
    "validate_chains",
    "FallbackEvent",
    "FallbackStats",
    "FallbackTracker",
    "RetryController",
    "RetryPolicy",
    "InMemoryUsageRecorder",
    "JsonlUsageRecorder",
    "NullUsageRecorder",
    "UsageRecorder",
    "PreferenceSource",
    "StaticPreferenceSource",
    "AnthropicAdapter",
    "GoogleAdapter",
    "OpenAIAdapter",
    "PerplexityAdapter",
    "ProviderAdapter",
    "RateLimitEnvelope",
]
