from __future__ import annotations

from typing import List, Sequence

from langchain_core.embeddings import Embeddings

from rag_agent.exception.custom_exception import VectorizationError
from rag_agent.logger import GLOBAL_LOGGER as log


class Vectorizer:
    """
    Turns texts into embedding vectors through a LangChain Embeddings model.

    - batches requests at max_batch_size, concatenating outputs in input order
    - truncates every text to max_input_chars so the same input always embeds
      the same way
    - checks every vector against the configured dimensionality
    """

    def __init__(
        self,
        embeddings: Embeddings,
        dimensions: int = 768,
        max_batch_size: int = 100,
        max_input_chars: int = 2000,
    ):
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be greater than 0")
        self.embeddings = embeddings
        self.dimensions = dimensions
        self.max_batch_size = max_batch_size
        self.max_input_chars = max_input_chars

    @classmethod
    def from_config(cls, embeddings: Embeddings, config: dict) -> "Vectorizer":
        section = config.get("vectorizer", {})
        return cls(
            embeddings,
            dimensions=section.get("dimensions", 768),
            max_batch_size=section.get("max_batch_size", 100),
            max_input_chars=section.get("max_input_chars", 2000),
        )

    def _truncate(self, text: str) -> str:
        return text[: self.max_input_chars]

    def _check(self, vectors: Sequence[Sequence[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise VectorizationError(
                f"Embedding model returned {len(vectors)} vectors for {expected} texts"
            )
        for vec in vectors:
            if len(vec) != self.dimensions:
                raise VectorizationError(
                    f"Embedding dimension mismatch: expected {self.dimensions}, got {len(vec)}"
                )

    async def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        vectors: List[List[float]] = []
        total_batches = (len(texts) + self.max_batch_size - 1) // self.max_batch_size

        for batch_no, start in enumerate(range(0, len(texts), self.max_batch_size), start=1):
            batch = [self._truncate(t) for t in texts[start : start + self.max_batch_size]]
            out = await self.embeddings.aembed_documents(batch)
            self._check(out, len(batch))
            vectors.extend([[float(x) for x in v] for v in out])
            log.info(
                "Embedded batch | batch=%d/%d | size=%d", batch_no, total_batches, len(batch)
            )

        return vectors

    async def embed_query(self, text: str) -> List[float]:
        vector = await self.embeddings.aembed_query(self._truncate(text))
        self._check([vector], 1)
        return [float(x) for x in vector]
