"""
Tests for the AIService orchestration state machine.

Property 12: 成功结果一致性
Property 13: 可重试错误必经回退
Property 14: 终止错误不重试
"""

import asyncio

import httpx
import pytest
from hypothesis import given, strategies as st, settings

from ai_service.adapters import OpenAIAdapter
from ai_service.config import Config
from ai_service.errors import (
    AuthError,
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
from ai_service.models import CanonicalMessage, GenerationRequest
from ai_service.preferences import PreferenceSource, StaticPreferenceSource
from ai_service.rate_limiter import RateLimiter
from ai_service.retry import RetryPolicy
from ai_service.usage import InMemoryUsageRecorder, UsageRecorder

from helpers import ScriptedAdapter, descriptor, make_service, ok, user_request


RETRYABLE_ERRORS = [
    lambda: ProviderTimeout("timed out"),
    lambda: ProviderUnavailable("502"),
    lambda: RateLimited("429"),
]
TERMINAL_ERRORS = [
    lambda: AuthError("bad key"),
    lambda: InvalidRequest("bad input"),
    lambda: SafetyBlocked("blocked"),
]


def two_model_adapter(script, m1_fallback="m2", m2_fallback=None):
    return ScriptedAdapter(
        [descriptor("m1", fallback=m1_fallback, priority=1), descriptor("m2", fallback=m2_fallback, priority=2)],
        script,
    )


async def slow(request):
    await asyncio.sleep(5)
    return ok("late", request.model_id)


class TestSuccessProperty:
    """
    Property 12: 成功结果一致性

    A valid request whose adapter succeeds first time yields total ==
    prompt + completion, latency >= 0 and exactly one success record.
    """

    @settings(max_examples=50)
    @given(
        prompt=st.integers(min_value=0, max_value=100_000),
        completion=st.integers(min_value=0, max_value=100_000),
        text=st.text(min_size=1, max_size=100).filter(lambda x: x.strip()),
    )
    def test_first_attempt_success(self, prompt, completion, text):
        adapter = ScriptedAdapter([descriptor("m1")], {"m1": [ok(text, "m1", prompt, completion)]})
        service, recorder, _ = make_service(adapter)

        result = asyncio.run(service.generate(user_request(model_id="m1")))

        assert result.content == text
        assert result.usage.total_tokens == prompt + completion
        assert result.latency_ms >= 0
        records = recorder.get_all_records()
        assert len(records) == 1
        assert records[0].success is True
        assert records[0].total_tokens == prompt + completion


class TestRetryableFallbackProperty:
    """
    Property 13: 可重试错误必经回退

    When the primary fails with a retryable error and a fallback exists, the
    fallback is attempted and at least two records exist.
    """

    @settings(max_examples=30)
    @given(make_error=st.sampled_from(RETRYABLE_ERRORS))
    def test_fallback_attempted(self, make_error):
        adapter = two_model_adapter({"m1": [make_error()], "m2": [ok("fine", "m2")]})
        service, recorder, _ = make_service(adapter)

        result = asyncio.run(service.generate(user_request(model_id="m1")))

        assert result.model_id == "m2"
        assert adapter.called_models() == ["m1", "m2"]
        assert len(recorder.get_all_records()) >= 2

    async def test_timeout_then_fallback_scenario(self):
        adapter = two_model_adapter({
            "m1": [ProviderTimeout("timed out")],
            "m2": [ok("hello", "m2", prompt=2, completion=1)],
        })
        service, recorder, sleep = make_service(adapter)

        result = await service.generate(user_request("hi", model_id="m1"))

        assert result.content == "hello"
        assert result.model_id == "m2"
        assert (result.usage.prompt_tokens, result.usage.completion_tokens, result.usage.total_tokens) == (2, 1, 3)

        records = recorder.get_all_records()
        assert [(r.model_id, r.success) for r in records] == [("m1", False), ("m2", True)]
        assert records[0].error_code == "timeout"
        assert records[0].request_id == records[1].request_id
        assert [r.attempt for r in records] == [1, 2]
        assert sleep.delays == [1.0]
        assert service.fallback_stats()["successful_fallbacks"] == 1


class TestTerminalErrorProperty:
    """
    Property 14: 终止错误不重试

    Terminal errors surface unchanged in type after exactly one attempt.
    """

    @settings(max_examples=30)
    @given(make_error=st.sampled_from(TERMINAL_ERRORS))
    def test_single_attempt(self, make_error):
        error = make_error()
        adapter = two_model_adapter({"m1": [error]})
        service, recorder, sleep = make_service(adapter)

        with pytest.raises(type(error)) as exc_info:
            asyncio.run(service.generate(user_request(model_id="m1")))

        assert adapter.called_models() == ["m1"]
        assert len(recorder.get_all_records()) == 1
        assert sleep.delays == []
        assert exc_info.value.attempts == 1
        assert exc_info.value.models_tried == ["m1"]

    async def test_auth_error_has_one_record(self):
        adapter = two_model_adapter({"m1": [AuthError("bad key", provider="fake")]})
        service, recorder, _ = make_service(adapter)

        with pytest.raises(AuthError):
            await service.generate(user_request(model_id="m1"))

        records = recorder.get_all_records()
        assert len(records) == 1
        assert records[0].error_code == "auth_error"
        assert records[0].error_message == "bad key"

    async def test_empty_response_is_terminal(self):
        adapter = two_model_adapter({"m1": [EmptyResponse("nothing")]})
        service, recorder, _ = make_service(adapter)

        with pytest.raises(EmptyResponse):
            await service.generate(user_request(model_id="m1"))
        assert len(recorder) == 1


class TestRetryStateMachine:
    async def test_cycle_visits_each_model_once(self):
        adapter = ScriptedAdapter(
            [descriptor("A", fallback="B"), descriptor("B", fallback="A")],
            {"A": [ProviderUnavailable("down")], "B": [ProviderUnavailable("down")]},
        )
        config = Config()
        config.retry.max_attempts = 5
        service, recorder, sleep = make_service(adapter, config)

        with pytest.raises(ProviderUnavailable) as exc_info:
            await service.generate(user_request(model_id="A"))

        assert adapter.called_models() == ["A", "B"]
        assert sleep.delays == [1.0]
        assert exc_info.value.models_tried == ["A", "B"]
        assert exc_info.value.attempts == 2
        assert len(recorder) == 2

    async def test_no_fallback_retries_same_model(self):
        adapter = ScriptedAdapter([descriptor("m1")], {"m1": [ProviderUnavailable("down")]})
        service, recorder, sleep = make_service(adapter)

        with pytest.raises(ProviderUnavailable) as exc_info:
            await service.generate(user_request(model_id="m1"))

        assert adapter.called_models() == ["m1", "m1", "m1"]
        assert sleep.delays == [1.0, 2.0]
        assert exc_info.value.attempts == 3
        assert [r.success for r in exc_info.value.history] == [False, False, False]

    async def test_dangling_fallback_retries_same_model(self):
        adapter = ScriptedAdapter(
            [descriptor("m1", fallback="ghost")],
            {"m1": [RateLimited("429"), ok("finally", "m1")]},
        )
        service, recorder, _ = make_service(adapter)

        result = await service.generate(user_request(model_id="m1"))

        assert result.content == "finally"
        assert adapter.called_models() == ["m1", "m1"]

    async def test_exponential_backoff_used_when_configured(self):
        adapter = ScriptedAdapter([descriptor("m1")], {"m1": [ProviderUnavailable("down")]})
        config = Config()
        config.retry.max_attempts = 4
        config.retry.strategy = "exponential"
        config.retry.base_delay_ms = 100
        service, _, sleep = make_service(adapter, config)

        with pytest.raises(ProviderUnavailable):
            await service.generate(user_request(model_id="m1"))
        assert sleep.delays == [0.1, 0.2, 0.4]

    async def test_local_rate_limit_rejection_is_recorded(self):
        adapter = ScriptedAdapter([descriptor("m1")])
        config = Config()
        config.rate_limits.model_limits = {"m1": 1}
        service, recorder, _ = make_service(adapter, config)

        await service.generate(user_request(model_id="m1"), subject_id="u1")
        with pytest.raises(LocalRateLimitRejected) as exc_info:
            await service.generate(user_request(model_id="m1"), subject_id="u1")

        assert len(adapter.calls) == 1
        assert exc_info.value.attempts == 3
        rejected = [r for r in recorder.get_records_by_subject("u1") if not r.success]
        assert [r.error_code for r in rejected] == ["local_rate_limited"] * 3

        # other subjects are unaffected
        await service.generate(user_request(model_id="m1"), subject_id="u2")

    async def test_disabled_rate_limits_never_reject(self):
        adapter = ScriptedAdapter([descriptor("m1")])
        config = Config()
        config.rate_limits.enabled = False
        config.rate_limits.model_limits = {"m1": 1}
        service, _, _ = make_service(adapter, config)

        for _ in range(3):
            await service.generate(user_request(model_id="m1"), subject_id="u1")
        assert len(adapter.calls) == 3


class TestDeadlines:
    async def test_overall_deadline_raises_deadline_exceeded(self):
        adapter = ScriptedAdapter([descriptor("m1")], {"m1": [slow]})
        service, recorder, _ = make_service(adapter)

        with pytest.raises(DeadlineExceeded) as exc_info:
            await service.generate(user_request(model_id="m1"), timeout=0.05)

        assert isinstance(exc_info.value, ProviderTimeout)
        assert exc_info.value.attempts == 1
        assert recorder.get_all_records()[0].error_code == "deadline_exceeded"

    async def test_per_call_timeout_is_retryable(self):
        adapter = two_model_adapter({"m1": [slow], "m2": [ok("quick", "m2")]})
        config = Config()
        config.retry.per_call_timeout_s = 0.05
        service, recorder, _ = make_service(adapter, config)

        result = await service.generate(user_request(model_id="m1"))

        assert result.model_id == "m2"
        assert recorder.get_all_records()[0].error_code == "timeout"

    async def test_cancellation_propagates(self):
        adapter = two_model_adapter({"m1": [slow]})
        service, recorder, _ = make_service(adapter)

        task = asyncio.create_task(service.generate(user_request(model_id="m1")))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert adapter.called_models() == ["m1"]


class FailingRecorder(UsageRecorder):
    async def record(self, record):
        raise OSError("disk full")


class FailingPreferences(PreferenceSource):
    async def preferred_model(self, subject_id):
        raise RuntimeError("store offline")


class TestCollaboratorFailures:
    async def test_recorder_failure_does_not_fail_request(self):
        adapter = ScriptedAdapter([descriptor("m1")])
        service, _, _ = make_service(adapter, recorder=FailingRecorder())

        result = await service.generate(user_request(model_id="m1"))
        assert result.content == "ok"

    async def test_preference_failure_means_no_preference(self):
        adapter = ScriptedAdapter([descriptor("a", priority=1), descriptor("b", priority=2)])
        service, _, _ = make_service(adapter, preferences=FailingPreferences())

        result = await service.generate(user_request(), capability="chat", subject_id="u1")
        assert result.model_id == "a"


class TestSelection:
    async def test_capability_routing_honours_preference(self):
        adapter = ScriptedAdapter([descriptor("a", priority=1), descriptor("b", priority=2)])
        service, _, _ = make_service(adapter, preferences=StaticPreferenceSource({"u1": "b"}))

        await service.generate(user_request(), capability="chat", subject_id="u1")
        await service.generate(user_request(), capability="chat", subject_id="u2")
        assert adapter.called_models() == ["b", "a"]

    async def test_default_model_used_without_capability(self):
        adapter = ScriptedAdapter([descriptor("a", priority=1), descriptor("b", priority=2)])
        config = Config()
        config.service.default_model = "b"
        service, _, _ = make_service(adapter, config)

        await service.generate(user_request())
        assert adapter.called_models() == ["b"]

    async def test_unknown_model_rejected(self):
        service, recorder, _ = make_service(ScriptedAdapter([descriptor("m1")]))
        with pytest.raises(UnsupportedModel):
            await service.generate(user_request(model_id="nope"))
        assert len(recorder) == 0

    async def test_invalid_request_rejected_before_any_attempt(self):
        adapter = ScriptedAdapter([descriptor("m1")])
        service, recorder, _ = make_service(adapter)
        with pytest.raises(InvalidRequest):
            await service.generate(user_request("   ", model_id="m1"))
        assert adapter.calls == []
        assert len(recorder) == 0

    async def test_defaults_filled_and_max_tokens_capped(self):
        adapter = ScriptedAdapter([
            descriptor("m1", max_tokens=100),
            descriptor("m2", max_tokens=4000, default_temperature=0.2),
        ])
        service, _, _ = make_service(adapter)

        await service.generate(user_request(model_id="m1"))
        await service.generate(user_request(model_id="m2", max_tokens=50))

        first, second = adapter.calls
        assert (first.temperature, first.max_tokens) == (0.7, 100)
        assert (second.temperature, second.max_tokens) == (0.2, 50)


class TestServiceConfiguration:
    def test_setters_validate(self):
        service, _, _ = make_service(ScriptedAdapter([descriptor("m1"), descriptor("m2")]))

        service.temperature = 0.3
        service.max_tokens = 10
        assert (service.temperature, service.max_tokens) == (0.3, 10)
        with pytest.raises(InvalidRequest):
            service.temperature = 1.5
        with pytest.raises(InvalidRequest):
            service.max_tokens = 0

        service.set_default_model("m2")
        assert service.default_model.id == "m2"
        with pytest.raises(UnsupportedModel):
            service.set_default_model("nope")

    def test_model_listing_and_rate_limit_status(self):
        adapter = ScriptedAdapter([descriptor("m1", priority=2), descriptor("m2", priority=1)])
        config = Config()
        config.rate_limits.model_limits = {"m1": 7}
        service, _, _ = make_service(adapter, config)

        assert [m.id for m in service.available_models()] == ["m2", "m1"]
        assert [m.id for m in service.provider_models("fake")] == ["m2", "m1"]
        assert service.provider_models("other") == []
        status = service.rate_limit_status("u1")
        assert status["m1"]["limit"] == 7
        assert status["m2"]["limit"] == 60

    def test_retry_policy_changes_apply_to_later_requests(self):
        adapter = ScriptedAdapter([descriptor("m1")], {"m1": [ProviderUnavailable("down")]})
        service, _, sleep = make_service(adapter)

        service.set_retry_attempts(1)
        with pytest.raises(ProviderUnavailable):
            asyncio.run(service.generate(user_request(model_id="m1")))
        assert adapter.called_models() == ["m1"]

        service.set_retry_attempts(2)
        service.set_retry_delay(250)
        with pytest.raises(ProviderUnavailable):
            asyncio.run(service.generate(user_request(model_id="m1")))
        assert adapter.called_models() == ["m1", "m1", "m1"]
        assert sleep.delays == [0.25]
        assert service.retry_policy.max_attempts == 2

        service.retry_policy = RetryPolicy(max_attempts=1)
        assert service.controller.policy.max_attempts == 1

        with pytest.raises(InvalidRequest):
            service.set_retry_attempts(0)
        with pytest.raises(InvalidRequest):
            service.set_retry_delay(-1)
        assert service.retry_policy.max_attempts == 1


class TestInjectedCollaborators:
    async def test_injected_recorder_and_limiter_are_used(self):
        adapter = ScriptedAdapter([descriptor("m1")])
        recorder = InMemoryUsageRecorder()
        limiter = RateLimiter(default_limit=1)
        assert not recorder and not limiter

        service, _, _ = make_service(adapter, recorder=recorder, rate_limiter=limiter)

        assert service.recorder is recorder
        assert service.rate_limiter is limiter
        await service.generate(user_request(model_id="m1"), subject_id="u1")
        assert len(recorder) == 1
        assert limiter.status("u1", "m1")["used"] == 1

    async def test_malformed_reply_is_typed_and_recorded(self):
        body = {"choices": [{"message": {"content": "hi"}}], "usage": "n/a"}
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))
        adapter = OpenAIAdapter(api_key="sk-test", client=client)
        service, recorder, _ = make_service(adapter)

        with pytest.raises(NormalizationError) as exc_info:
            await service.generate(user_request(model_id="gpt-4o"))
        await client.aclose()

        assert exc_info.value.attempts == 1
        assert [r.error_code for r in recorder.get_all_records()] == [NormalizationError.code]

    async def test_non_text_message_content_is_invalid_request(self):
        adapter = ScriptedAdapter([descriptor("m1")])
        service, recorder, _ = make_service(adapter)
        request = GenerationRequest(messages=[CanonicalMessage(role="user", content=["hi"])], model_id="m1")

        with pytest.raises(InvalidRequest, match="content must be text"):
            await service.generate(request)
        assert adapter.calls == []
        assert len(recorder) == 0
