"""
Retry/backoff policy and the per-request attempt state machine.

States: Selecting -> Attempting -> {Success, Retrying, Exhausted}.
The controller is the only place that reads ``AIServiceError.retryable``.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from .config import RetryConfig
from .errors import AIServiceError, DeadlineExceeded, ProviderTimeout
from .fallback import FallbackResolver
from .fallback_tracker import FallbackEvent, FallbackTracker
from .models import AttemptRecord, GenerationResult

logger = structlog.get_logger()


AttemptFn = Callable[[str, int], Awaitable[GenerationResult]]
AttemptHook = Callable[[int, AttemptRecord, GenerationResult | None, AIServiceError | None], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget, backoff and timeouts for one logical request."""
    max_attempts: int = 3
    base_delay_ms: int = 1000
    strategy: str = "linear"
    max_delay_ms: int = 10_000
    per_call_timeout_s: float = 30.0
    request_deadline_s: float | None = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.strategy not in ("linear", "exponential"):
            raise ValueError(f"Unknown backoff strategy: {self.strategy}")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("Backoff delays must not be negative")

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            strategy=config.strategy,
            max_delay_ms=config.max_delay_ms,
            per_call_timeout_s=config.per_call_timeout_s,
            request_deadline_s=config.request_deadline_s,
        )

    def delay_for(self, attempt: int) -> float:
        """
        Backoff in seconds after the given (1-based) failed attempt.

        linear: base * attempt; exponential: base * 2 ** (attempt - 1).
        Both are capped at max_delay_ms.
        """
        if self.strategy == "exponential":
            delay_ms = self.base_delay_ms * 2 ** (attempt - 1)
        else:
            delay_ms = self.base_delay_ms * attempt
        return min(delay_ms, self.max_delay_ms) / 1000

    def max_backoff_s(self) -> float:
        if self.max_attempts < 2:
            return 0.0
        return max(self.delay_for(n) for n in range(1, self.max_attempts))

    def deadline_s(self) -> float:
        """Overall bound: explicit deadline, else attempts x (per-call timeout + max backoff)."""
        if self.request_deadline_s is not None:
            return self.request_deadline_s
        return self.max_attempts * (self.per_call_timeout_s + self.max_backoff_s())


class RetryController:
    """
    Runs the attempts of one request.

    Each attempt is passed to ``attempt_fn(model_id, attempt_number)`` under a
    timeout of ``min(per_call_timeout, remaining deadline)``. After every
    attempt ``on_attempt`` is awaited with the attempt record.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        resolver: FallbackResolver,
        tracker: FallbackTracker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy
        self.resolver = resolver
        self.tracker = tracker
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        model_id: str,
        attempt_fn: AttemptFn,
        on_attempt: AttemptHook,
        deadline_s: float | None = None,
        request_id: str = "",
    ) -> GenerationResult:
        """
        Drive the request to Success or Exhausted.

        Returns:
            The first successful GenerationResult

        Raises:
            AIServiceError: The last error, tagged with the attempt history
            DeadlineExceeded: If the overall deadline ran out
        """
        policy = self.policy
        budget = deadline_s if deadline_s is not None else policy.deadline_s()
        deadline = self._clock() + budget
        history: list[AttemptRecord] = []
        attempted: list[str] = []
        pending_fallback: FallbackEvent | None = None
        attempt = 0

        while True:
            attempt += 1
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise DeadlineExceeded(
                    f"Request deadline of {budget:.1f}s exceeded after {len(history)} attempts",
                    model_id=model_id,
                ).tag(history)

            if model_id not in attempted:
                attempted.append(model_id)
            call_timeout = min(policy.per_call_timeout_s, remaining)
            started = self._clock()
            result: GenerationResult | None = None
            error: AIServiceError | None = None
            try:
                result = await asyncio.wait_for(attempt_fn(model_id, attempt), timeout=call_timeout)
            except asyncio.TimeoutError:
                if call_timeout < policy.per_call_timeout_s:
                    error = DeadlineExceeded(
                        f"Request deadline of {budget:.1f}s exceeded", model_id=model_id
                    )
                else:
                    error = ProviderTimeout(
                        f"Call exceeded {call_timeout:.1f}s", model_id=model_id
                    )
            except AIServiceError as e:
                error = e

            latency_ms = max(0, int((self._clock() - started) * 1000))
            record = AttemptRecord(
                model_id=model_id,
                success=error is None,
                latency_ms=result.latency_ms if result is not None else latency_ms,
                error_code=error.code if error is not None else None,
            )
            history.append(record)
            await on_attempt(attempt, record, result, error)

            if pending_fallback is not None and self.tracker is not None:
                self.tracker.settle(pending_fallback, error is None)
                pending_fallback = None

            if error is None:
                return result

            if not error.retryable:
                logger.info("request_failed", request_id=request_id, model=model_id, error_code=error.code)
                raise error.tag(history)

            if attempt >= policy.max_attempts:
                logger.warning(
                    "retries_exhausted", request_id=request_id, model=model_id, attempts=attempt
                )
                raise error.tag(history)

            # Retrying
            candidate = self.resolver.next_candidate(model_id, attempted)
            if candidate is None and self.resolver.fallback_exhausted(model_id, attempted):
                logger.warning(
                    "fallback_chain_exhausted", request_id=request_id, models=list(attempted)
                )
                raise error.tag(history)

            delay = policy.delay_for(attempt)
            remaining = deadline - self._clock()
            logger.info(
                "retrying_request",
                request_id=request_id,
                model=model_id,
                attempt=attempt,
                error_code=error.code,
                delay_s=delay,
            )
            await self._sleep(max(0.0, min(delay, remaining)))

            if candidate is not None:
                if self.tracker is not None:
                    pending_fallback = self.tracker.record_fallback(
                        request_id, model_id, candidate, error.code
                    )
                logger.info("falling_back", request_id=request_id, model=model_id, fallback=candidate)
                model_id = candidate
