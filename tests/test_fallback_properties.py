"""
Property-based tests for fallback chain resolution.

Property 9: 回退链循环保护
"""

from hypothesis import given, strategies as st, settings

from ai_service.fallback import FallbackResolver, validate_chains
from ai_service.fallback_tracker import FallbackTracker
from ai_service.registry import ModelRegistry

from helpers import ScriptedAdapter, descriptor


def build_resolver(models) -> FallbackResolver:
    return FallbackResolver(ModelRegistry({"fake": ScriptedAdapter(models)}))


@st.composite
def fallback_graphs(draw):
    """Random fallback graphs, possibly cyclic or dangling."""
    size = draw(st.integers(min_value=1, max_value=6))
    ids = [f"m{i}" for i in range(size)]
    targets = ids + ["missing", None]
    return [descriptor(model_id, fallback=draw(st.sampled_from(targets))) for model_id in ids]


class TestFallbackCycleGuardProperty:
    """
    Property 9: 回退链循环保护

    Following next_candidate() while accumulating attempted models visits
    each model at most once and always terminates.
    """

    @settings(max_examples=200)
    @given(models=fallback_graphs(), data=st.data())
    def test_walk_terminates_without_repeats(self, models, data):
        resolver = build_resolver(models)
        start = data.draw(st.sampled_from([m.id for m in models]))

        attempted = [start]
        current = start
        while True:
            candidate = resolver.next_candidate(current, attempted)
            if candidate is None:
                break
            assert candidate not in attempted
            attempted.append(candidate)
            current = candidate

        assert len(attempted) == len(set(attempted))
        assert len(attempted) <= len(models)

    def test_two_model_cycle_visits_each_once(self):
        resolver = build_resolver([descriptor("A", fallback="B"), descriptor("B", fallback="A")])
        assert resolver.next_candidate("A", ["A"]) == "B"
        assert resolver.next_candidate("B", ["A", "B"]) is None
        assert resolver.fallback_exhausted("B", ["A", "B"]) is True


class TestFallbackResolver:
    def test_absent_edge_returns_none(self):
        resolver = build_resolver([descriptor("A")])
        assert resolver.next_candidate("A") is None
        assert resolver.declares_fallback("A") is False
        assert resolver.fallback_exhausted("A", ["A"]) is False

    def test_dangling_edge_returns_none_but_is_not_exhaustion(self):
        resolver = build_resolver([descriptor("A", fallback="ghost")])
        assert resolver.declares_fallback("A") is True
        assert resolver.next_candidate("A", ["A"]) is None
        assert resolver.fallback_exhausted("A", ["A"]) is False

    def test_unknown_model_returns_none(self):
        assert build_resolver([descriptor("A")]).next_candidate("nope") is None

    def test_chain_stops_at_repeat(self):
        resolver = build_resolver([
            descriptor("A", fallback="B"),
            descriptor("B", fallback="C"),
            descriptor("C", fallback="A"),
        ])
        assert resolver.chain("A") == ["A", "B", "C"]


class TestValidateChains:
    def test_reports_dangling_and_cycles(self):
        registry = ModelRegistry({"fake": ScriptedAdapter([
            descriptor("A", fallback="B"),
            descriptor("B", fallback="A"),
            descriptor("C", fallback="ghost"),
            descriptor("D", fallback="A"),
        ])})
        issues = validate_chains(registry.snapshot)
        assert any("ghost" in issue for issue in issues)
        assert sum("cycle" in issue for issue in issues) == 1

    def test_clean_graph_has_no_issues(self):
        registry = ModelRegistry({"fake": ScriptedAdapter([
            descriptor("A", fallback="B"),
            descriptor("B"),
        ])})
        assert validate_chains(registry.snapshot) == []


class TestFallbackTracker:
    def test_stats_by_edge_and_settlement(self):
        tracker = FallbackTracker()
        first = tracker.record_fallback("r1", "A", "B", "timeout")
        second = tracker.record_fallback("r2", "A", "B", "provider_unavailable")
        tracker.settle(first, True)
        tracker.settle(second, False)
        tracker.settle(second, True)

        summary = tracker.get_stats().get_summary()
        assert summary["total_fallbacks"] == 2
        assert summary["successful_fallbacks"] == 1
        assert summary["failed_fallbacks"] == 1
        assert summary["success_rate"] == 0.5
        assert summary["by_edge"] == {"A->B": 2}

    def test_event_buffer_is_bounded(self):
        tracker = FallbackTracker(max_events=3)
        for i in range(5):
            tracker.record_fallback(f"r{i}", "A", "B", "timeout")
        assert [e.request_id for e in tracker.get_recent_events()] == ["r2", "r3", "r4"]
        tracker.clear()
        assert tracker.get_stats().total_fallbacks == 0
