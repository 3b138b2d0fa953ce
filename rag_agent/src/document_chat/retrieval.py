from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.document_repository import DocumentRepository
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.src.document_ingestion.vectorizer import Vectorizer
from rag_agent.src.document_store.vector_index import FaissVectorIndex

NO_RESULTS_TEXT = "No relevant information found in your documents."


class Citation(BaseModel):
    document_id: str
    filename: str
    ordinal: int
    page_number: Optional[int] = None

    def label(self) -> str:
        if self.page_number:
            return f"{self.filename}, p.{self.page_number}"
        return self.filename


class RetrievedSegment(BaseModel):
    segment_id: int
    text: str
    score: float
    citation: Citation


class SearchOutcome(BaseModel):
    """Ranked hits, best first. An empty outcome means nothing relevant was found."""

    query: str
    results: List[RetrievedSegment] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.results

    def citations(self) -> List[dict]:
        return [r.citation.model_dump() for r in self.results]

    def format_for_prompt(self) -> str:
        if self.is_empty:
            return NO_RESULTS_TEXT
        return "\n\n".join(f"[{r.citation.label()}]: {r.text}" for r in self.results)


class RetrievalEngine:
    """
    Semantic search inside one session.

    The vector index is queried only in the session namespace, and the hit ids
    are joined back to the row store with the same session predicate. Ids with
    no row behind them are dropped.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vectorizer: Vectorizer,
        vector_index: FaissVectorIndex,
        default_top_k: int = 5,
        max_top_k: int = 10,
    ):
        self.session_factory = session_factory
        self.vectorizer = vectorizer
        self.vector_index = vector_index
        self.default_top_k = default_top_k
        self.max_top_k = max_top_k
        self.documents = DocumentRepository()

    def _clamp(self, top_k: Optional[int]) -> int:
        if top_k is None:
            return self.default_top_k
        return max(1, min(int(top_k), self.max_top_k))

    async def search(self, session_id: str, query: str, top_k: Optional[int] = None) -> SearchOutcome:
        k = self._clamp(top_k)
        query_vector = await self.vectorizer.embed_query(query)
        hits = await self.vector_index.query(session_id, query_vector, k)

        if not hits:
            log.info("Search returned no matches | session_id=%s | top_k=%d", session_id, k)
            return SearchOutcome(query=query)

        ids = [int(segment_id) for segment_id, _ in hits]
        async with self.session_factory() as db:
            rows = await self.documents.segments_with_documents(db, session_id, ids)

        results = []
        for segment_id, score in hits:
            row = rows.get(int(segment_id))
            if row is None:
                log.warning(
                    "Dropping orphan vector hit | session_id=%s | segment_id=%s",
                    session_id,
                    segment_id,
                )
                continue
            seg, doc = row
            results.append(
                RetrievedSegment(
                    segment_id=seg.id,
                    text=seg.text,
                    score=score,
                    citation=Citation(
                        document_id=doc.id,
                        filename=doc.filename,
                        ordinal=seg.ordinal,
                        page_number=seg.page_number,
                    ),
                )
            )

        log.info(
            "Search complete | session_id=%s | top_k=%d | hits=%d | returned=%d",
            session_id,
            k,
            len(hits),
            len(results),
        )
        return SearchOutcome(query=query, results=results)
