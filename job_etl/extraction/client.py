"""
Extraction client: structured JSON extraction with retry, timeout and audit.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from job_etl.extraction.callers import ModelCaller
from job_etl.extraction.invocations import InvocationLog
from job_etl.extraction.retry import RetryPolicy, compact_error
from job_etl.models import InvocationRecord, InvocationRequest, ModelResponse
from job_etl.utils.errors import (
    ExtractionError,
    ExtractionResponseError,
    ExtractionTimeoutError,
    ReplayMissError,
)
from job_etl.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a precise information extractor. Respond with valid JSON only."

# Failures that another attempt cannot fix
NON_RETRYABLE = (ReplayMissError,)


class ExtractionClient:
    """
    Sends extraction requests through a ``ModelCaller``.

    Each call is retried up to ``policy.max_attempts`` times with
    exponential backoff, each attempt bounded by ``policy.timeout``. Every
    attempt, successful or not, is written to the invocation log.
    """

    def __init__(
        self,
        caller: ModelCaller,
        log: Optional[InvocationLog] = None,
        policy: Optional[RetryPolicy] = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.0,
        max_tokens: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.caller = caller
        self.log = log
        self.policy = policy or RetryPolicy()
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._sleep = sleep

    def build_request(
        self,
        content: str,
        instructions: str,
        action: str = "extract",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> InvocationRequest:
        """Assemble the logical request for some content."""
        return InvocationRequest(
            action=action,
            model=self.model,
            system_prompt=system_prompt,
            user_prompt=f"{instructions}\n\nText to analyze:\n{content}",
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    async def extract(
        self,
        content: str,
        instructions: str,
        *,
        action: str = "extract",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> Dict[str, Any]:
        """
        Extract a JSON object from ``content`` following ``instructions``.

        Args:
            content: Document text
            instructions: Prompt describing what to extract and its schema
            action: Label stored with each invocation record
            system_prompt: System message sent with the request

        Returns:
            The parsed JSON object

        Raises:
            ExtractionError: Every permitted attempt failed
        """
        request = self.build_request(content, instructions, action, system_prompt)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            start = time.perf_counter()
            response: Optional[ModelResponse] = None
            try:
                response = await self._call_once(request)
                result = self._parse(response)
            except Exception as e:
                last_error = e
                await self._record(request, attempt, start, response=response, error=e)
                logger.warning(
                    f"Extraction '{action}' attempt {attempt}/{self.policy.max_attempts} failed: "
                    f"{compact_error(e)}"
                )
                if isinstance(e, NON_RETRYABLE):
                    break
                if attempt < self.policy.max_attempts:
                    await self._sleep(self.policy.delay_for(attempt))
                continue

            if response.replayed:
                logger.debug(f"Served '{action}' from recorded invocation {request.key()}")
            else:
                await self._record(request, attempt, start, response=response)
            return result

        raise ExtractionError(action, attempt, last_error) from last_error

    async def _call_once(self, request: InvocationRequest) -> ModelResponse:
        try:
            return await asyncio.wait_for(self.caller.call(request), timeout=self.policy.timeout)
        except asyncio.TimeoutError as e:
            raise ExtractionTimeoutError(request.action, self.policy.timeout) from e

    @staticmethod
    def _parse(response: ModelResponse) -> Dict[str, Any]:
        text = response.text.strip()
        if not text:
            raise ExtractionResponseError("Model returned an empty response")
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ExtractionResponseError(
                f"Invalid JSON response: {e.msg}", {"position": e.pos}
            ) from e
        if not isinstance(parsed, dict):
            raise ExtractionResponseError(
                f"Expected a JSON object, got {type(parsed).__name__}"
            )
        return parsed

    async def _record(
        self,
        request: InvocationRequest,
        attempt: int,
        start: float,
        response: Optional[ModelResponse] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if self.log is None:
            return
        record = InvocationRecord.from_attempt(
            request,
            attempt=attempt,
            latency_ms=int((time.perf_counter() - start) * 1000),
            response=response,
            error=error,
        )
        try:
            await self.log.record(record)
        except OSError as e:
            logger.error(f"Failed to record invocation {record.request_key}: {e}")

    async def close(self) -> None:
        close = getattr(self.caller, "close", None)
        if close is not None:
            await close()
