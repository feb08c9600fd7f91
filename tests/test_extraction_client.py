"""
Tests for the extraction client and model callers.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeCaller, SleepRecorder
from job_etl.extraction import (
    ExtractionClient,
    InMemoryInvocationLog,
    LiveCaller,
    ReplayCaller,
    RetryPolicy,
    compact_error,
    describe_error,
)
from job_etl.models import InvocationRequest, InvocationStatus
from job_etl.utils.errors import (
    EnrichmentError,
    ExtractionError,
    ExtractionResponseError,
    ExtractionTimeoutError,
    MissingConfigurationError,
    ReplayMissError,
)


def make_client(caller, log=None, sleep=None, **policy):
    policy.setdefault("base_delay", 0.5)
    return ExtractionClient(
        caller,
        log=log,
        policy=RetryPolicy(**policy),
        model="gpt-4o-mini",
        sleep=sleep or SleepRecorder(),
    )


class TestExtract:
    """Tests for ExtractionClient.extract."""

    @pytest.mark.asyncio
    async def test_successful_extraction(self):
        caller = FakeCaller([{"capabilities": [], "summary": "ok"}])
        log = InMemoryInvocationLog()
        client = make_client(caller, log)

        result = await client.extract("Some listing text", "Extract capabilities", action="analysis")

        assert result == {"capabilities": [], "summary": "ok"}
        assert caller.calls == 1
        request = caller.requests[0]
        assert "Extract capabilities" in request.user_prompt
        assert "Some listing text" in request.user_prompt
        assert len(log) == 1
        record = log.records[0]
        assert record.status == InvocationStatus.SUCCESS
        assert record.action == "analysis"
        assert record.token_usage == {"total_tokens": 42}
        assert record.response_text

    @pytest.mark.asyncio
    async def test_retry_bound_with_permanent_failure(self):
        """Test max_attempts=3 makes exactly three attempts with growing delays."""
        caller = FakeCaller([RuntimeError("upstream 502")])
        log = InMemoryInvocationLog()
        sleep = SleepRecorder()
        client = make_client(caller, log, sleep=sleep, max_attempts=3)

        with pytest.raises(ExtractionError) as exc_info:
            await client.extract("text", "instructions")

        assert caller.calls == 3
        assert sleep.delays == [0.5, 1.0]
        assert sleep.delays == sorted(sleep.delays)
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert [r.status for r in log.records] == [InvocationStatus.ERROR] * 3
        assert [r.attempt for r in log.records] == [1, 2, 3]
        assert all("upstream 502" in r.error_message for r in log.records)

    @pytest.mark.asyncio
    async def test_invalid_json_is_a_failed_attempt(self):
        caller = FakeCaller(["not json at all", {"ok": True}])
        log = InMemoryInvocationLog()
        client = make_client(caller, log)

        result = await client.extract("text", "instructions")

        assert result == {"ok": True}
        assert caller.calls == 2
        assert log.records[0].status == InvocationStatus.ERROR
        assert log.records[0].response_text == "not json at all"
        assert log.records[1].status == InvocationStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_non_object_json_is_rejected(self):
        caller = FakeCaller(["[1, 2, 3]"])
        client = make_client(caller, max_attempts=2)

        with pytest.raises(ExtractionError) as exc_info:
            await client.extract("text", "instructions")

        assert isinstance(exc_info.value.last_error, ExtractionResponseError)

    @pytest.mark.asyncio
    async def test_empty_response_is_rejected(self):
        caller = FakeCaller(["   "])
        client = make_client(caller, max_attempts=1)

        with pytest.raises(ExtractionError) as exc_info:
            await client.extract("text", "instructions")

        assert isinstance(exc_info.value.last_error, ExtractionResponseError)

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self):
        class SlowCaller:
            calls = 0

            async def call(self, request):
                SlowCaller.calls += 1
                await asyncio.sleep(10)

        client = make_client(SlowCaller(), max_attempts=2, timeout=0.01)

        with pytest.raises(ExtractionError) as exc_info:
            await client.extract("text", "instructions")

        assert SlowCaller.calls == 2
        assert isinstance(exc_info.value.last_error, ExtractionTimeoutError)


class TestReplay:
    """Tests for replaying recorded invocations."""

    @pytest.mark.asyncio
    async def test_identical_request_is_replayed(self):
        """Test a second identical call is served from the log."""
        live = FakeCaller([{"answer": 1}, {"answer": 2}])
        log = InMemoryInvocationLog()
        client = make_client(ReplayCaller(log, fallback=live), log)

        first = await client.extract("same content", "same instructions")
        second = await client.extract("same content", "same instructions")

        assert first == second == {"answer": 1}
        assert live.calls == 1
        assert len(log) == 1
        assert log.records[0].replayed is False

    @pytest.mark.asyncio
    async def test_different_request_reaches_fallback(self):
        live = FakeCaller([{"answer": 1}, {"answer": 2}])
        log = InMemoryInvocationLog()
        client = make_client(ReplayCaller(log, fallback=live), log)

        await client.extract("content A", "instructions")
        result = await client.extract("content B", "instructions")

        assert result == {"answer": 2}
        assert live.calls == 2

    @pytest.mark.asyncio
    async def test_replay_miss_without_fallback_is_not_retried(self):
        sleep = SleepRecorder()
        client = make_client(ReplayCaller(InMemoryInvocationLog()), sleep=sleep, max_attempts=3)

        with pytest.raises(ExtractionError) as exc_info:
            await client.extract("text", "instructions")

        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.last_error, ReplayMissError)
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_failed_records_are_not_replayed(self):
        live = FakeCaller([RuntimeError("boom"), {"answer": 3}])
        log = InMemoryInvocationLog()
        client = make_client(ReplayCaller(log, fallback=live), log, max_attempts=2)

        result = await client.extract("text", "instructions")

        assert result == {"answer": 3}
        assert live.calls == 2


class TestLiveCaller:
    """Tests for the OpenAI-backed caller."""

    def test_requires_api_key(self):
        with pytest.raises(MissingConfigurationError, match="OPENAI_API_KEY"):
            LiveCaller()

    @pytest.mark.asyncio
    async def test_call_uses_json_mode(self):
        completion = MagicMock()
        completion.id = "chatcmpl-1"
        completion.model = "gpt-4o-mini"
        completion.choices = [MagicMock(finish_reason="stop")]
        completion.choices[0].message.content = '{"a": 1}'
        completion.usage.prompt_tokens = 10
        completion.usage.completion_tokens = 5
        completion.usage.total_tokens = 15

        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=completion)
        caller = LiveCaller(client=client)

        response = await caller.call(
            InvocationRequest(action="a", model="gpt-4o-mini", system_prompt="sys", user_prompt="user", max_tokens=100)
        )

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["max_tokens"] == 100
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}
        assert response.text == '{"a": 1}'
        assert response.token_usage["total_tokens"] == 15
        assert response.metadata["finish_reason"] == "stop"

    @pytest.mark.asyncio
    async def test_reopens_client_after_close(self, openai_clients):
        caller = LiveCaller(api_key="sk-test")
        request = InvocationRequest(action="a", model="gpt-4o-mini", system_prompt="sys", user_prompt="user")

        assert openai_clients == []
        await caller.call(request)
        await caller.close()
        response = await caller.call(request)
        await caller.close()

        assert response.text == '{"capabilities": [], "summary": "ok"}'
        assert len(openai_clients) == 2
        assert all(client.closed for client in openai_clients)
        assert openai_clients[0].kwargs == {"api_key": "sk-test"}

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        client = MagicMock()
        client.close = AsyncMock()
        caller = LiveCaller(client=client)

        await caller.close()

        client.close.assert_not_awaited()


class TestRetryPolicy:
    def test_exponential_delays(self):
        policy = RetryPolicy(max_attempts=4, base_delay=1.0)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_invalid_policy(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)


class TestCompactError:
    def test_known_causes_collapse(self):
        assert compact_error(TimeoutError("request timed out after 30s")) == "TimeoutError: Operation timed out"
        assert compact_error(RuntimeError("Rate limit exceeded")) == "RuntimeError: Rate limit hit, retry needed"

    def test_long_messages_are_truncated(self):
        message = compact_error(RuntimeError("x" * 500))

        assert message.startswith("RuntimeError: ")
        assert message.endswith("...")
        assert len(message) < 230

    def test_project_errors_use_message_without_details(self):
        error = EnrichmentError("model refused", item_id="job-1")

        assert compact_error(error) == "EnrichmentError: model refused"

    def test_patterns_match_whole_words_only(self):
        error = RuntimeError("Listing job-4031 is malformed: missing title")

        assert compact_error(error) == "RuntimeError: Listing job-4031 is malformed: missing title"
        assert compact_error(RuntimeError("HTTP 403 Forbidden")) == "RuntimeError: Authentication failed"


class TestDescribeError:
    def test_keeps_original_message(self):
        assert describe_error(RuntimeError("request timed out after 30s")) == (
            "RuntimeError: request timed out after 30s"
        )
        assert describe_error(EnrichmentError("model refused", item_id="job-1")) == "EnrichmentError: model refused"

    def test_collapses_whitespace_and_truncates(self):
        assert describe_error(ValueError("bad\n   row")) == "ValueError: bad row"
        assert describe_error(ValueError("x" * 600), max_length=10) == "ValueError: xxxxxxxxxx..."
        assert describe_error(ValueError()) == "ValueError"
