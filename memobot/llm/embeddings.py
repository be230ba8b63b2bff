"""Text embeddings via the OpenAI embeddings endpoint."""

import time
from typing import List, Optional

import structlog
from openai import AsyncOpenAI

from ..exceptions import EmbeddingError
from .interface import Usage
from .usage import UsageRecorder, estimate_cost

logger = structlog.get_logger()

# Embedding input above this is truncated; patterns and queries are far shorter.
MAX_EMBEDDING_INPUT_CHARS = 8000


class EmbeddingProvider:
    """Produces one embedding vector per text."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        usage_recorder: Optional[UsageRecorder] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self._usage = usage_recorder
        if client is not None:
            self.client: Optional[AsyncOpenAI] = client
        elif api_key:
            self.client = AsyncOpenAI(api_key=api_key)
        else:
            self.client = None

    async def embed(self, text: str) -> List[float]:
        """Embed ``text``.

        Raises:
            EmbeddingError: No API key configured or an empty response.
        """
        if self.client is None:
            raise EmbeddingError("OpenAI API key is not configured", model=self.model)

        start = time.monotonic()
        response = await self.client.embeddings.create(
            model=self.model,
            input=text[:MAX_EMBEDDING_INPUT_CHARS],
            dimensions=self.dimensions,
        )
        latency_ms = int((time.monotonic() - start) * 1000)

        if not response.data:
            raise EmbeddingError("Empty embedding response", model=self.model)

        if self._usage:
            tokens = response.usage.prompt_tokens if response.usage else 0
            await self._usage.record(
                provider="openai",
                model=self.model,
                purpose="embedding",
                usage=Usage(
                    input_tokens=tokens,
                    cost_usd=estimate_cost(self.model, tokens, 0),
                ),
                latency_ms=latency_ms,
            )

        return list(response.data[0].embedding)
