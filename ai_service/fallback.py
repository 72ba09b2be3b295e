"""
Fallback chain resolution.

Each descriptor may name one ``fallback_model_id``. Following those edges
gives the fallback chain for a model.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .registry import ModelRegistry, RegistrySnapshot


class FallbackResolver:
    """Suggests the next model to try after a failure."""

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def declares_fallback(self, model_id: str) -> bool:
        """True if the model names a fallback edge (dangling or not)."""
        descriptor = self.registry.snapshot.get(model_id)
        return descriptor is not None and descriptor.fallback_model_id is not None

    def next_candidate(self, failed_model_id: str, attempted: Iterable[str] = ()) -> str | None:
        """
        Return the substitute for a failed model.

        Args:
            failed_model_id: Model whose attempt just failed
            attempted: Models already tried in this request

        Returns:
            The fallback model id, or None when the model has no edge, the
            target is not registered, or the target was already attempted
        """
        snapshot = self.registry.snapshot
        descriptor = snapshot.get(failed_model_id)
        if descriptor is None or descriptor.fallback_model_id is None:
            return None

        candidate = descriptor.fallback_model_id
        if candidate not in snapshot or candidate in set(attempted):
            return None
        return candidate

    def fallback_exhausted(self, model_id: str, attempted: Iterable[str]) -> bool:
        """
        True if the model's fallback target is registered but already attempted.

        A missing or dangling edge is not exhaustion; the caller retries the
        same model instead.
        """
        snapshot = self.registry.snapshot
        descriptor = snapshot.get(model_id)
        if descriptor is None or descriptor.fallback_model_id is None:
            return False
        target = descriptor.fallback_model_id
        return target in snapshot and target in set(attempted)

    def chain(self, model_id: str) -> list[str]:
        """The full fallback chain starting at ``model_id``, stopping at a repeat."""
        snapshot = self.registry.snapshot
        chain = [model_id]
        current = snapshot.get(model_id)
        while current is not None and current.fallback_model_id:
            if current.fallback_model_id in chain:
                break
            chain.append(current.fallback_model_id)
            current = snapshot.get(current.fallback_model_id)
        return chain


def validate_chains(snapshot: RegistrySnapshot) -> list[str]:
    """
    Report dangling edges and cycles in the fallback graph.

    Returns:
        Human-readable issues; empty when the graph is clean
    """
    issues = []
    for descriptor in snapshot.models:
        target = descriptor.fallback_model_id
        if target is not None and target not in snapshot:
            issues.append(f"{descriptor.id} falls back to unregistered model {target}")

    reported: set[frozenset[str]] = set()
    for descriptor in snapshot.models:
        seen = [descriptor.id]
        current = descriptor
        while current is not None and current.fallback_model_id in snapshot:
            target = current.fallback_model_id
            if target in seen:
                cycle = seen[seen.index(target):]
                if frozenset(cycle) not in reported:
                    reported.add(frozenset(cycle))
                    issues.append("fallback cycle: " + " -> ".join(cycle + [target]))
                break
            seen.append(target)
            current = snapshot.get(target)
    return issues
