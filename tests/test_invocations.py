"""
Tests for the file-backed invocation log.
"""

import json

import pytest

from job_etl.extraction.invocations import JsonInvocationLog
from job_etl.models import InvocationRecord, InvocationRequest, InvocationStatus, ModelResponse


def make_request(user_prompt: str = "Analyse this listing") -> InvocationRequest:
    return InvocationRequest(
        action="capability_analysis",
        model="gpt-4o-mini",
        system_prompt="Respond with JSON",
        user_prompt=user_prompt,
    )


class TestRequestKey:
    def test_key_is_stable_and_short(self):
        assert make_request().key() == make_request().key()
        assert len(make_request().key()) == 16

    def test_key_depends_on_prompt(self):
        assert make_request("a").key() != make_request("b").key()

    def test_key_ignores_sampling_settings(self):
        hot = make_request().model_copy(update={"temperature": 0.9})
        assert hot.key() == make_request().key()


class TestJsonInvocationLog:
    """Tests for JsonInvocationLog."""

    @pytest.mark.asyncio
    async def test_record_and_find(self, tmp_path):
        log = JsonInvocationLog(tmp_path / "invocations")
        request = make_request()

        await log.record(
            InvocationRecord.from_attempt(request, attempt=1, latency_ms=12, error=RuntimeError("boom"))
        )
        await log.record(
            InvocationRecord.from_attempt(
                request, attempt=2, latency_ms=30, response=ModelResponse(text='{"ok": true}')
            )
        )

        found = await log.find(request.key())
        assert found is not None
        assert found.status == InvocationStatus.SUCCESS
        assert found.response_text == '{"ok": true}'
        assert found.attempt == 2

        lines = (tmp_path / "invocations" / f"{request.key()}.jsonl").read_text().splitlines()
        attempts = [json.loads(line) for line in lines]
        assert len(attempts) == 2
        assert attempts[0]["error_message"] == "boom"
        assert log.load_index()[request.key()]["attempts"] == 2

    @pytest.mark.asyncio
    async def test_index_summarises_requests(self, tmp_path):
        log = JsonInvocationLog(tmp_path)
        request = make_request("x" * 300)

        await log.record(
            InvocationRecord.from_attempt(request, attempt=1, latency_ms=5, response=ModelResponse(text="{}"))
        )

        index = log.load_index()
        entry = index[request.key()]
        assert entry["action"] == "capability_analysis"
        assert entry["model"] == "gpt-4o-mini"
        assert entry["status"] == "success"
        assert len(entry["prompt_preview"]) == 100

    @pytest.mark.asyncio
    async def test_failed_only_requests_are_not_found(self, tmp_path):
        log = JsonInvocationLog(tmp_path)
        request = make_request()

        await log.record(InvocationRecord.from_attempt(request, attempt=1, latency_ms=1, error=ValueError("bad")))

        assert await log.find(request.key()) is None
        assert await log.find("0000000000000000") is None

    @pytest.mark.asyncio
    async def test_records_survive_reopen(self, tmp_path):
        request = make_request()
        await JsonInvocationLog(tmp_path).record(
            InvocationRecord.from_attempt(request, attempt=1, latency_ms=1, response=ModelResponse(text="{}"))
        )

        reopened = JsonInvocationLog(tmp_path)

        assert (await reopened.find(request.key())).response_text == "{}"

    @pytest.mark.asyncio
    async def test_attempt_counts_continue_after_reopen(self, tmp_path):
        request = make_request()
        first = JsonInvocationLog(tmp_path)
        await first.record(InvocationRecord.from_attempt(request, attempt=1, latency_ms=1, error=ValueError("bad")))

        reopened = JsonInvocationLog(tmp_path)
        await reopened.record(
            InvocationRecord.from_attempt(request, attempt=1, latency_ms=1, response=ModelResponse(text="{}"))
        )

        entry = reopened.load_index()[request.key()]
        assert entry["attempts"] == 2
        assert entry["status"] == "success"
        assert len((tmp_path / "index.jsonl").read_text().splitlines()) == 2
