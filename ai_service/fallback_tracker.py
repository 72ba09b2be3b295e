"""
Counts model-to-model fallbacks and whether the substitute attempt succeeded.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class FallbackEvent:
    """Record of a single switch from one model to its substitute."""
    timestamp: datetime
    request_id: str
    original_model: str
    fallback_model: str
    error_code: str
    success: bool | None = None


@dataclass
class FallbackStats:
    """降级事件统计"""
    total_fallbacks: int = 0
    successful_fallbacks: int = 0
    failed_fallbacks: int = 0
    by_edge: dict[str, int] = field(default_factory=dict)
    events: list[FallbackEvent] = field(default_factory=list)

    def get_summary(self) -> dict:
        """Plain-dict view for status endpoints and logs."""
        settled = self.successful_fallbacks + self.failed_fallbacks
        return {
            "total_fallbacks": self.total_fallbacks,
            "successful_fallbacks": self.successful_fallbacks,
            "failed_fallbacks": self.failed_fallbacks,
            "success_rate": self.successful_fallbacks / settled if settled else 0.0,
            "by_edge": dict(self.by_edge),
        }


class FallbackTracker:
    """Per-service tracker for fallback events."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self.stats = FallbackStats()
        self._lock = threading.Lock()

    def record_fallback(
        self,
        request_id: str,
        original_model: str,
        fallback_model: str,
        error_code: str,
    ) -> FallbackEvent:
        """
        Record that a request switched models.

        Args:
            request_id: Request that fell back
            original_model: Model whose attempt failed
            fallback_model: Substitute chosen by the resolver
            error_code: Code of the error that triggered the switch

        Returns:
            FallbackEvent object, settled later by ``settle()``
        """
        event = FallbackEvent(
            timestamp=datetime.now(),
            request_id=request_id,
            original_model=original_model,
            fallback_model=fallback_model,
            error_code=error_code,
        )
        edge = f"{original_model}->{fallback_model}"
        with self._lock:
            self.stats.total_fallbacks += 1
            self.stats.by_edge[edge] = self.stats.by_edge.get(edge, 0) + 1
            self.stats.events.append(event)
            if len(self.stats.events) > self.max_events:
                del self.stats.events[: len(self.stats.events) - self.max_events]
        return event

    def settle(self, event: FallbackEvent, success: bool) -> None:
        """Mark whether the attempt on the substitute succeeded."""
        with self._lock:
            if event.success is not None:
                return
            event.success = success
            if success:
                self.stats.successful_fallbacks += 1
            else:
                self.stats.failed_fallbacks += 1

    def get_stats(self) -> FallbackStats:
        """Live statistics object (not a copy)."""
        return self.stats

    def get_recent_events(self, limit: int = 10) -> list[FallbackEvent]:
        """Newest ``limit`` events, oldest first."""
        with self._lock:
            return self.stats.events[-limit:]

    def clear(self):
        """Drop all events and counters."""
        with self._lock:
            self.stats = FallbackStats()
