"""
Model callers: how an extraction request reaches a model.

``LiveCaller`` talks to OpenAI. ``ReplayCaller`` serves answers from the
invocation log and can fall back to another caller on a miss. The choice
is made once, when the extraction client is built.
"""

from typing import Optional, Protocol, runtime_checkable

from openai import AsyncOpenAI

from job_etl.extraction.invocations import InvocationLog
from job_etl.models import InvocationRequest, ModelResponse
from job_etl.utils.errors import MissingConfigurationError, ReplayMissError
from job_etl.utils.logging import get_logger

logger = get_logger(__name__)

# Models that accept response_format={"type": "json_object"}
JSON_MODE_MODELS = ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo-1106", "gpt-4-1106-preview")


@runtime_checkable
class ModelCaller(Protocol):
    """Sends one request to a model and returns its raw answer."""

    async def call(self, request: InvocationRequest) -> ModelResponse:
        ...


class LiveCaller:
    """Calls the OpenAI chat completions API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, api_key: Optional[str] = None) -> None:
        """
        Initialize the caller.

        Args:
            client: Preconfigured client, owned by whoever passed it in
            api_key: OpenAI API key used to open a client on demand
        """
        if client is None and not api_key:
            raise MissingConfigurationError("OPENAI_API_KEY")
        self.api_key = api_key
        self._client = client
        self._owns_client = client is None

    def _ensure_client(self) -> AsyncOpenAI:
        """Return the open client, building one after a close."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def call(self, request: InvocationRequest) -> ModelResponse:
        request_params = {
            "model": request.model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            "temperature": request.temperature,
        }
        if request.max_tokens:
            request_params["max_tokens"] = request.max_tokens
        if request.model.startswith(JSON_MODE_MODELS):
            request_params["response_format"] = {"type": "json_object"}

        response = await self._ensure_client().chat.completions.create(**request_params)

        choice = response.choices[0]
        usage = response.usage
        return ModelResponse(
            text=choice.message.content or "",
            metadata={
                "id": response.id,
                "model": response.model,
                "finish_reason": choice.finish_reason,
            },
            token_usage=(
                {
                    "prompt_tokens": usage.prompt_tokens,
                    "completion_tokens": usage.completion_tokens,
                    "total_tokens": usage.total_tokens,
                }
                if usage
                else None
            ),
        )

    async def close(self) -> None:
        """Release a client this caller opened; the next call opens a fresh one."""
        if not self._owns_client or self._client is None:
            return
        client, self._client = self._client, None
        await client.close()


class ReplayCaller:
    """Serves recorded answers from an invocation log."""

    def __init__(self, log: InvocationLog, fallback: Optional[ModelCaller] = None) -> None:
        self.log = log
        self.fallback = fallback

    async def call(self, request: InvocationRequest) -> ModelResponse:
        key = request.key()
        recorded = await self.log.find(key)
        if recorded is not None:
            logger.debug(f"Replaying invocation {key}", extra={"action": request.action})
            return recorded.to_response()

        if self.fallback is None:
            raise ReplayMissError(key)

        logger.info(f"No recorded invocation for {key}, calling model")
        return await self.fallback.call(request)

    async def close(self) -> None:
        close = getattr(self.fallback, "close", None)
        if close is not None:
            await close()
