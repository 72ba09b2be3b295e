"""
Core data models for the AI service.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Literal


Role = Literal["system", "user", "assistant"]

VALID_ROLES = ("system", "user", "assistant")

# Older callers still send Gemini-style "model" turns
ROLE_ALIASES = {"model": "assistant"}


@dataclass(frozen=True)
class CanonicalMessage:
    """统一消息结构"""
    role: Role
    content: str
    name: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "CanonicalMessage":
        role = data.get("role", "")
        role = ROLE_ALIASES.get(role, role)
        return cls(role=role, content=data.get("content", ""), name=data.get("name"))

    def to_dict(self) -> dict:
        data = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class ModelDescriptor:
    """
    Static description of one model served by one provider.

    Descriptors are immutable; the registry replaces them wholesale on refresh.
    ``fallback_model_id`` edges form the fallback graph consulted by the
    FallbackResolver. ``priority`` is the routing rank (lower = preferred).
    """
    id: str
    provider_name: str
    max_tokens: int
    context_window: int
    capabilities: frozenset[str]
    temperature_supported: bool = True
    fallback_model_id: str | None = None
    priority: int = 100
    default_temperature: float | None = None
    requests_per_minute: int | None = None
    display_name: str | None = None

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities


@dataclass
class GenerationRequest:
    """统一生成请求"""
    messages: list[CanonicalMessage]
    model_id: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None

    def validate(self) -> list[str]:
        """验证请求参数，返回错误列表"""
        errors = []
        if not self.messages:
            errors.append("messages is required and cannot be empty")
        for index, message in enumerate(self.messages):
            if message.role not in VALID_ROLES:
                errors.append(
                    f"message {index}: role must be one of: {', '.join(VALID_ROLES)}"
                )
            if not isinstance(message.content, str):
                errors.append(f"message {index}: content must be text")
            elif not message.content.strip():
                errors.append(f"message {index}: content cannot be empty")
        if self.temperature is not None and not 0.0 <= self.temperature <= 1.0:
            errors.append("temperature must be between 0 and 1")
        if self.max_tokens is not None and self.max_tokens < 1:
            errors.append("max_tokens must be greater than 0")
        return errors

    def system_prompt(self) -> str | None:
        """All system messages joined, or None when there are none."""
        parts = [m.content for m in self.messages if m.role == "system"]
        return "\n\n".join(parts) if parts else None

    def conversation(self) -> list[CanonicalMessage]:
        """Messages without the system turns, in order."""
        return [m for m in self.messages if m.role != "system"]

    def prompt_text(self) -> str:
        """Flattened text of every message, used for token estimation."""
        return "\n".join(m.content for m in self.messages)

    def for_model(self, model_id: str) -> "GenerationRequest":
        return replace(self, model_id=model_id)


@dataclass(frozen=True)
class TokenUsage:
    """Token使用统计"""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """总Token数 = 输入Token + 输出Token"""
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class GenerationResult:
    """统一生成结果"""
    content: str
    model_id: str
    latency_ms: int
    usage: TokenUsage
    provider: str | None = None
    usage_estimated: bool = False


@dataclass
class RateLimitWindow:
    """Fixed-window counter for one (subject, model) key."""
    subject_key: str
    window_start_ms: int
    count: int
    limit: int
    window_ms: int
    tokens: int = 0
    token_limit: int | None = None

    def expired(self, now_ms: int) -> bool:
        return now_ms - self.window_start_ms >= self.window_ms

    def exhausted(self) -> bool:
        if self.count >= self.limit:
            return True
        return self.token_limit is not None and self.tokens >= self.token_limit


@dataclass(frozen=True)
class AttemptRecord:
    """One attempt inside a single generate() call."""
    model_id: str
    success: bool
    latency_ms: int
    error_code: str | None = None


@dataclass
class UsageRecord:
    """使用日志记录"""
    request_id: str
    model_id: str
    provider: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    latency_ms: int
    success: bool
    subject_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempt: int = 1
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "request_id": self.request_id,
            "attempt": self.attempt,
            "model_id": self.model_id,
            "provider": self.provider,
            "subject_id": self.subject_id,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "latency_ms": self.latency_ms,
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }
