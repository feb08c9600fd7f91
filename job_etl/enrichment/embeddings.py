"""
Embedding generation for enriched records.
"""

from typing import List, Optional, Protocol, runtime_checkable

from openai import AsyncOpenAI

from job_etl.utils.errors import MissingConfigurationError
from job_etl.utils.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Embedder(Protocol):
    """Turns texts into vectors, one per text, in order."""

    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class OpenAIEmbedder:
    """Generate embeddings with the OpenAI embeddings API."""

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        client: Optional[AsyncOpenAI] = None,
        api_key: Optional[str] = None,
        batch_size: int = 100,
    ) -> None:
        """
        Initialize embedding generator.

        Args:
            model_name: OpenAI embedding model
            client: Preconfigured client, owned by whoever passed it in
            api_key: OpenAI API key used to open a client on demand
            batch_size: Maximum texts per API request
        """
        if client is None and not api_key:
            raise MissingConfigurationError("OPENAI_API_KEY")
        self.api_key = api_key
        self._client = client
        self._owns_client = client is None
        self.model_name = model_name
        self.batch_size = batch_size

        logger.info(f"Initialized embedding generator with model: {self.model_name}")

    def _ensure_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        # The API rejects empty strings
        cleaned = [text.replace("\n", " ").strip() or " " for text in texts]

        embeddings: List[List[float]] = []
        for i in range(0, len(cleaned), self.batch_size):
            batch = cleaned[i : i + self.batch_size]
            response = await self._ensure_client().embeddings.create(model=self.model_name, input=batch)
            embeddings.extend(item.embedding for item in sorted(response.data, key=lambda d: d.index))

        logger.debug(f"Generated {len(embeddings)} embeddings")
        return embeddings

    async def close(self) -> None:
        """Release a client this embedder opened; it reopens on the next call."""
        if not self._owns_client or self._client is None:
            return
        client, self._client = self._client, None
        await client.close()
