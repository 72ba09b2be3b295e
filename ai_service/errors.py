"""
Error taxonomy for the AI service.

Every failure that can reach a caller is an ``AIServiceError`` subclass with a
stable ``code`` and a ``retryable`` flag. The retry controller is the only
place that reads ``retryable``; adapters just raise.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import AttemptRecord


class AIServiceError(Exception):
    """Base exception for all AI service errors."""

    code: str = "ai_service_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        model_id: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message
        self.provider = provider
        self.model_id = model_id
        self.status_code = status_code
        # Filled in by the retry controller when the request gives up
        self.attempts: int = 0
        self.models_tried: list[str] = []
        self.history: list[AttemptRecord] = []
        prefix = f"[{provider}] " if provider else ""
        super().__init__(f"{prefix}{message}")

    def tag(self, history: list[AttemptRecord]) -> "AIServiceError":
        """Attach the attempt history of the request that raised this error."""
        self.history = list(history)
        self.attempts = len(history)
        self.models_tried = []
        for record in history:
            if record.model_id not in self.models_tried:
                self.models_tried.append(record.model_id)
        return self

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "provider": self.provider,
            "model_id": self.model_id,
            "status_code": self.status_code,
            "attempts": self.attempts,
            "models_tried": list(self.models_tried),
        }


class ConfigError(AIServiceError):
    """Configuration related errors"""
    code = "config_error"


# Terminal provider errors

class AuthError(AIServiceError):
    """Credentials were rejected by the provider."""
    code = "auth_error"


class InvalidRequest(AIServiceError):
    """The request was malformed or rejected as invalid."""
    code = "invalid_request"


class SafetyBlocked(AIServiceError):
    """The provider refused the content on policy grounds."""
    code = "safety_blocked"


# Retryable provider errors

class RateLimited(AIServiceError):
    """Provider-side rate limit (HTTP 429)."""
    code = "rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderTimeout(AIServiceError):
    """The call exceeded its per-call deadline."""
    code = "timeout"
    retryable = True


class ProviderUnavailable(AIServiceError):
    """5xx response or connection failure."""
    code = "provider_unavailable"
    retryable = True


class LocalRateLimitRejected(AIServiceError):
    """The local limiter refused the call before it was issued."""
    code = "local_rate_limited"
    retryable = True


# Contract and configuration violations

class UnsupportedModel(AIServiceError):
    """The model is not in the adapter catalog or the registry."""
    code = "unsupported_model"


class CapabilityNotFound(AIServiceError):
    """No registered model declares the requested capability."""
    code = "capability_not_found"


class EmptyResponse(AIServiceError):
    """The provider answered without usable content."""
    code = "empty_response"


class NormalizationError(AIServiceError):
    """The provider reply could not be mapped to a GenerationResult."""
    code = "normalization_error"


class DeadlineExceeded(ProviderTimeout):
    """The overall request deadline ran out before a result was produced."""
    code = "deadline_exceeded"
    retryable = False
