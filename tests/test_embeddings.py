from __future__ import annotations

import sys
import unittest
from pathlib import Path
from types import SimpleNamespace
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from openai import OpenAIError

from advisor_ai.embeddings import OpenAIEmbedder
from advisor_ai.errors import EmbeddingFailure


class _FakeEmbeddings:
    def __init__(self, vector: list[float] | None = None, error: Exception | None = None) -> None:
        self._vector = vector if vector is not None else [0.1, 0.2, 0.3]
        self._error = error
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        data = [SimpleNamespace(embedding=self._vector)] if self._vector else []
        return SimpleNamespace(data=data)


class _FakeOpenAI:
    def __init__(self, embeddings: _FakeEmbeddings) -> None:
        self.embeddings = embeddings
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _embedder(embeddings: _FakeEmbeddings, **kwargs: Any) -> tuple[OpenAIEmbedder, _FakeOpenAI]:
    client = _FakeOpenAI(embeddings)
    embedder = OpenAIEmbedder(model="text-embedding-3-small", api_key="k", client=client, **kwargs)  # type: ignore[arg-type]
    return embedder, client


class TestOpenAIEmbedder(unittest.IsolatedAsyncioTestCase):
    async def test_embeds_and_caches(self) -> None:
        fake = _FakeEmbeddings()
        embedder, client = _embedder(fake)

        first = await embedder.embed("Landing gear up. ")
        second = await embedder.embed("Landing gear up.")

        self.assertEqual(first, (0.1, 0.2, 0.3))
        self.assertEqual(second, first)
        self.assertEqual(len(fake.calls), 1)
        self.assertEqual(fake.calls[0]["model"], "text-embedding-3-small")

        await embedder.close()
        self.assertTrue(client.closed)

    async def test_cache_evicts_least_recent(self) -> None:
        fake = _FakeEmbeddings()
        embedder, _ = _embedder(fake, cache_size=2)

        for text in ("a", "b", "a", "c", "a", "b"):
            await embedder.embed(text)

        self.assertEqual([c["input"] for c in fake.calls], ["a", "b", "c", "b"])

    async def test_api_error_wrapped(self) -> None:
        embedder, _ = _embedder(_FakeEmbeddings(error=OpenAIError("rate limited")))
        with self.assertRaises(EmbeddingFailure):
            await embedder.embed("text")

    async def test_empty_text_and_empty_response(self) -> None:
        embedder, _ = _embedder(_FakeEmbeddings(vector=[]))
        with self.assertRaises(EmbeddingFailure):
            await embedder.embed("   ")
        with self.assertRaises(EmbeddingFailure):
            await embedder.embed("text")

    async def test_dimension_check(self) -> None:
        embedder, _ = _embedder(_FakeEmbeddings(vector=[1.0, 2.0]), dimensions=3)
        with self.assertRaises(EmbeddingFailure):
            await embedder.embed("text")


if __name__ == "__main__":
    unittest.main()
