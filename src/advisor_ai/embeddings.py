from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Sequence

from openai import AsyncOpenAI, OpenAIError

from advisor_ai.errors import EmbeddingFailure
from advisor_ai.types import EmbeddingFunction


class OpenAIEmbedder(EmbeddingFunction):
    """Embeddings from an OpenAI-compatible endpoint with a small LRU cache."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str | None = None,
        dimensions: int | None = None,
        timeout_sec: float = 10.0,
        cache_size: int = 256,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._dimensions = dimensions
        self._client = client or AsyncOpenAI(
            api_key=api_key or None,
            base_url=base_url or None,
            timeout=timeout_sec,
            max_retries=1,
        )
        self._cache_size = max(0, cache_size)
        self._cache: OrderedDict[str, tuple[float, ...]] = OrderedDict()
        self._cache_lock = asyncio.Lock()

    async def embed(self, text: str) -> Sequence[float]:
        normalized = text.strip()[:8000]
        if not normalized:
            raise EmbeddingFailure("Cannot embed empty text.")

        async with self._cache_lock:
            cached = self._cache.get(normalized)
            if cached is not None:
                self._cache.move_to_end(normalized)
                return cached

        started = time.perf_counter()
        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=normalized,
            )
        except OpenAIError as exc:
            raise EmbeddingFailure(f"Embedding request failed: {exc}") from exc

        if not response.data:
            raise EmbeddingFailure("Embedding response contained no vectors.")
        vector = tuple(float(x) for x in response.data[0].embedding)
        if self._dimensions is not None and len(vector) != self._dimensions:
            raise EmbeddingFailure(
                f"Embedding has {len(vector)} dimensions, index expects {self._dimensions}."
            )

        async with self._cache_lock:
            self._cache[normalized] = vector
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)

        elapsed_ms = (time.perf_counter() - started) * 1000
        print(f"[EMBED] model={self._model} cache=miss ms={elapsed_ms:.1f}")
        return vector

    async def close(self) -> None:
        await self._client.close()
