"""
Abstract base class for provider adapters.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from ..errors import (
    AIServiceError,
    AuthError,
    InvalidRequest,
    NormalizationError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
    SafetyBlocked,
    UnsupportedModel,
)
from ..models import GenerationRequest, GenerationResult, ModelDescriptor
from ..normalizer import normalize
from ..replies import ProviderReply

logger = structlog.get_logger()


SAFETY_ERROR_CODES = {"content_policy_violation", "content_filter", "safety"}


@dataclass(frozen=True)
class RateLimitEnvelope:
    """Default request/token budget a provider is expected to tolerate."""
    requests_per_minute: int
    tokens_per_minute: int | None = None


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Each adapter owns one long-lived ``httpx.AsyncClient`` (built here or
    injected) and issues exactly one HTTP call per ``generate()``. Retries are
    the caller's business.

    Subclasses provide:
    - ``MODELS``: the static model catalog
    - ``RATE_LIMIT``: the default rate-limit envelope
    - ``_send()``: translate the request, call the API, wrap the JSON body
    """

    name: str = "base"
    DEFAULT_BASE_URL: str = ""
    DEFAULT_TIMEOUT: float = 30.0
    RATE_LIMIT = RateLimitEnvelope(requests_per_minute=60)
    MODELS: tuple[ModelDescriptor, ...] = ()

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        **kwargs,
    ):
        """
        Initialize the adapter.

        Args:
            api_key: API key for the provider
            base_url: Optional custom base URL (proxies, compatible gateways)
            client: Optional pre-built HTTP client; the adapter builds one if None
            timeout: Per-call timeout in seconds (default 30s)
            **kwargs: http_client (pool settings dict) and proxy_url
        """
        if not api_key:
            raise AuthError(f"{self.name} API key is required", provider=self.name)
        self.api_key = api_key
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.config = kwargs
        self._models = {model.id: model for model in self.MODELS}
        self._owns_client = client is None
        self._client = client or self._build_client()

    def _build_client(self) -> httpx.AsyncClient:
        http_config = self.config.get("http_client") or {}
        client_kwargs: dict[str, Any] = {
            "timeout": self.timeout,
            "limits": httpx.Limits(
                max_connections=http_config.get("max_connections", 100),
                max_keepalive_connections=http_config.get("max_keepalive_connections", 20),
            ),
        }
        proxy_url = self.config.get("proxy_url")
        if proxy_url:
            client_kwargs["proxy"] = proxy_url
        return httpx.AsyncClient(**client_kwargs)

    def list_models(self) -> list[ModelDescriptor]:
        """Static catalog of models this adapter can serve."""
        return list(self.MODELS)

    def supports(self, capability: str) -> bool:
        """True if any catalog model declares the capability."""
        return any(model.supports(capability) for model in self.MODELS)

    def get_model(self, model_id: str) -> ModelDescriptor:
        """
        Look up a catalog entry.

        Raises:
            UnsupportedModel: If the adapter does not serve the model
        """
        try:
            return self._models[model_id]
        except KeyError:
            available = ", ".join(self._models)
            raise UnsupportedModel(
                f"Model {model_id} is not supported. Available models: {available}",
                provider=self.name,
                model_id=model_id,
            )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Run one call against the provider and normalize the reply.

        Args:
            request: Request whose model_id belongs to this adapter

        Returns:
            GenerationResult from the normalizer

        Raises:
            AIServiceError: Typed provider or normalization error
        """
        if not request.model_id:
            raise InvalidRequest("model_id is required", provider=self.name)
        model = self.get_model(request.model_id)

        started = time.perf_counter()
        reply = await self._send(request, model)
        elapsed_ms = (time.perf_counter() - started) * 1000

        result = normalize(reply, model.id, elapsed_ms, request.prompt_text())
        logger.debug(
            "provider_call_succeeded",
            provider=self.name,
            model=model.id,
            latency_ms=result.latency_ms,
            total_tokens=result.usage.total_tokens,
        )
        return result

    @abstractmethod
    async def _send(self, request: GenerationRequest, model: ModelDescriptor) -> ProviderReply:
        """
        Translate the canonical request and issue the HTTP call.

        Returns:
            The decoded body wrapped in the adapter's reply type
        """

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post_json(
        self,
        path: str,
        payload: dict[str, Any],
        model_id: str,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """POST JSON to the provider and return the decoded body or raise a typed error."""
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.post(url, headers=self._headers(), json=payload, params=params)
        except httpx.TimeoutException:
            raise ProviderTimeout("Request timed out", provider=self.name, model_id=model_id)
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"Request failed: {e}", provider=self.name, model_id=model_id)

        if response.status_code >= 400:
            error = self._error_from_response(response, model_id)
            logger.warning(
                "provider_call_failed",
                provider=self.name,
                model=model_id,
                status_code=response.status_code,
                error_code=error.code,
            )
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise NormalizationError(
                f"Response body is not valid JSON: {e}", provider=self.name, model_id=model_id
            )
        if not isinstance(data, dict):
            raise NormalizationError(
                "Response body must be a JSON object", provider=self.name, model_id=model_id
            )
        return data

    def _error_from_response(self, response: httpx.Response, model_id: str) -> AIServiceError:
        """Map an HTTP error response onto the error taxonomy."""
        status = response.status_code
        detail, error_code = _error_detail(response)
        kwargs = {"provider": self.name, "model_id": model_id, "status_code": status}

        if _is_safety_rejection(error_code, detail):
            return SafetyBlocked(f"Content was blocked: {detail}", **kwargs)
        if status in (401, 403):
            return AuthError(f"Invalid {self.name} API key or access denied: {detail}", **kwargs)
        if status == 429:
            return RateLimited(
                f"Rate limit exceeded: {detail}",
                retry_after=_retry_after(response),
                **kwargs,
            )
        if status in (408, 504):
            return ProviderTimeout(f"Provider timed out: {detail}", **kwargs)
        if status >= 500:
            return ProviderUnavailable(f"Server error: {detail}", **kwargs)
        return InvalidRequest(f"Invalid request: {detail}", **kwargs)

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()


def _error_detail(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, None

    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        message = error.get("message") or response.text
        code = error.get("code") or error.get("type") or error.get("status")
        return str(message), str(code) if code is not None else None
    if isinstance(error, str):
        return error, None
    return response.text or response.reason_phrase, None


def _is_safety_rejection(error_code: str | None, detail: str) -> bool:
    if error_code and error_code.lower() in SAFETY_ERROR_CODES:
        return True
    return "SAFETY" in detail


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
