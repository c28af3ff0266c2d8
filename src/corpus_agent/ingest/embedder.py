"""Embedding abstractions, the Ollama client and a deterministic baseline."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from hashlib import blake2b
from math import sqrt

import httpx
import ollama

from corpus_agent.errors import EmbeddingError

logger = logging.getLogger(__name__)


class Embedder(ABC):
    """Maps N texts to N fixed-dimension vectors, same order as the input."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts in one call."""

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed([text])
        return vectors[0]


class OllamaEmbedder(Embedder):
    """Embedder backed by an Ollama server (default model `nomic-embed-text`)."""

    def __init__(self, host: str, model: str = "nomic-embed-text") -> None:
        self.host = host
        self.model = model
        self.client = ollama.AsyncClient(host=host)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        logger.debug("Embedding %d texts with %s", len(texts), self.model)
        try:
            response = await self.client.embed(model=self.model, input=texts)
        except (ollama.ResponseError, httpx.HTTPError, ConnectionError) as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        vectors = [list(vector) for vector in response.embeddings]
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding service returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors


class HashingEmbedder(Embedder):
    """Deterministic sparse-like embedding without external model calls.

    Used by tests and offline runs. `calls` counts batch requests so callers
    can check that indexing issues one request per document.
    """

    def __init__(self, dimension: int = 768) -> None:
        self.dimension = dimension
        self.calls = 0

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        return [self._embed(text) for text in texts]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0 for _ in range(self.dimension)]
        tokens = text.lower().split()
        if not tokens:
            return vector

        for token in tokens:
            digest = blake2b(token.encode("utf-8"), digest_size=8).digest()
            idx = int.from_bytes(digest[:4], "little") % self.dimension
            sign = -1.0 if digest[4] % 2 else 1.0
            vector[idx] += sign

        norm = sqrt(sum(value * value for value in vector))
        if norm == 0:
            return vector
        return [value / norm for value in vector]
