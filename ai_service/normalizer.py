"""
Response normalizer.

Maps every provider reply shape onto one ``GenerationResult``.

Token estimation: when a provider omits a count, that side is estimated as
``ceil(len(text) / 4)`` (about four characters per token for English text).
The prompt side uses the request's message contents joined by newlines, the
completion side uses the returned content. Only the missing side is estimated
and ``usage_estimated`` is set on the result.
"""

import math
from typing import Any

from .errors import EmptyResponse, NormalizationError, SafetyBlocked
from .models import GenerationResult, TokenUsage
from .replies import AnthropicReply, GoogleReply, OpenAIReply, PerplexityReply, ProviderReply


CHARS_PER_TOKEN = 4

GOOGLE_SAFETY_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII"}


def estimate_tokens(text: str) -> int:
    """Estimate token count for text: ceil(characters / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def normalize(
    reply: ProviderReply,
    model_id: str,
    elapsed_ms: float,
    prompt_text: str = "",
) -> GenerationResult:
    """
    Convert a provider reply into a GenerationResult.

    Args:
        reply: Tagged provider reply
        model_id: Model the call was issued against
        elapsed_ms: Wall time of the call in milliseconds
        prompt_text: Flattened request text, used only for estimation

    Returns:
        GenerationResult with non-empty content and consistent usage

    Raises:
        EmptyResponse: If the reply carries no usable text
        SafetyBlocked: If the provider withheld content on policy grounds
        NormalizationError: If the reply shape is not recognised
    """
    try:
        if isinstance(reply, (OpenAIReply, PerplexityReply)):
            provider = "openai" if isinstance(reply, OpenAIReply) else "perplexity"
            content, prompt_tokens, completion_tokens = _from_chat_completion(reply.body, provider)
        elif isinstance(reply, AnthropicReply):
            provider = "anthropic"
            content, prompt_tokens, completion_tokens = _from_anthropic(reply.body)
        elif isinstance(reply, GoogleReply):
            provider = "google"
            content, prompt_tokens, completion_tokens = _from_google(reply.body)
        else:
            raise NormalizationError(f"Unrecognised reply type: {type(reply).__name__}")
    except (NormalizationError, EmptyResponse, SafetyBlocked) as e:
        e.model_id = e.model_id or model_id
        raise

    if content is None or not content.strip():
        raise EmptyResponse("No content in response", provider=provider, model_id=model_id)

    estimated = False
    if prompt_tokens is None:
        prompt_tokens = estimate_tokens(prompt_text)
        estimated = True
    if completion_tokens is None:
        completion_tokens = estimate_tokens(content)
        estimated = True

    return GenerationResult(
        content=content,
        model_id=model_id,
        latency_ms=max(0, int(round(elapsed_ms))),
        usage=TokenUsage(
            prompt_tokens=_count(prompt_tokens, "prompt", provider, model_id),
            completion_tokens=_count(completion_tokens, "completion", provider, model_id),
        ),
        provider=provider,
        usage_estimated=estimated,
    )


def _count(value: Any, side: str, provider: str, model_id: str) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise NormalizationError(
            f"Invalid {side} token count: {value!r}", provider=provider, model_id=model_id
        )
    if count < 0:
        raise NormalizationError(
            f"Negative {side} token count: {count}", provider=provider, model_id=model_id
        )
    return count


def _mapping(value: Any, what: str, provider: str) -> dict:
    """``value`` as a dict; a missing value reads as empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise NormalizationError(
            f"Invalid response format: {what} is {type(value).__name__}, expected an object",
            provider=provider,
        )
    return value


def _text(value: Any, what: str, provider: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise NormalizationError(
        f"Invalid response format: {what} is {type(value).__name__}, expected text",
        provider=provider,
    )


def _from_chat_completion(body: dict, provider: str) -> tuple[str | None, Any, Any]:
    try:
        choice = body["choices"][0]
        message = choice["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise NormalizationError(f"Invalid response format: {e}", provider=provider)
    choice = _mapping(choice, "choice", provider)
    content = _text(_mapping(message, "message", provider).get("content"), "message content", provider)

    if not content and choice.get("finish_reason") == "content_filter":
        raise SafetyBlocked("Content was blocked by the provider's content filter", provider=provider)

    usage = _mapping(body.get("usage"), "usage", provider)
    return content, usage.get("prompt_tokens"), usage.get("completion_tokens")


def _from_anthropic(body: dict) -> tuple[str | None, Any, Any]:
    blocks = body.get("content")
    if not isinstance(blocks, list):
        raise NormalizationError("Invalid response format: missing content blocks", provider="anthropic")

    texts = [
        _text(b.get("text"), "text block", "anthropic") or ""
        for b in blocks
        if isinstance(b, dict) and b.get("type") == "text"
    ]
    content = "".join(texts)

    if not content and body.get("stop_reason") == "refusal":
        raise SafetyBlocked("Request was refused on policy grounds", provider="anthropic")

    usage = _mapping(body.get("usage"), "usage", "anthropic")
    return content, usage.get("input_tokens"), usage.get("output_tokens")


def _from_google(body: dict) -> tuple[str | None, Any, Any]:
    feedback = _mapping(body.get("promptFeedback"), "promptFeedback", "google")
    if feedback.get("blockReason"):
        raise SafetyBlocked(
            f"Content was blocked by safety filters: {feedback['blockReason']}",
            provider="google",
        )

    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise EmptyResponse("No candidates in response", provider="google")

    candidate = _mapping(candidates[0], "candidate", "google")
    parts = _mapping(candidate.get("content"), "candidate content", "google").get("parts") or []
    if not isinstance(parts, list):
        raise NormalizationError("Invalid response format: parts is not a list", provider="google")
    content = "".join(
        _text(p.get("text"), "part text", "google") or "" for p in parts if isinstance(p, dict)
    )

    if not content and candidate.get("finishReason") in GOOGLE_SAFETY_FINISH_REASONS:
        raise SafetyBlocked(
            f"Content was blocked by safety filters: {candidate['finishReason']}",
            provider="google",
        )

    usage = _mapping(body.get("usageMetadata"), "usageMetadata", "google")
    return content, usage.get("promptTokenCount"), usage.get("candidatesTokenCount")
