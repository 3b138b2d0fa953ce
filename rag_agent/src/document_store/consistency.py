from __future__ import annotations

from typing import Any, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.chat_repository import ChatRepository
from db.document_repository import DocumentRepository
from db.models import Document, TextSegment
from rag_agent.exception.custom_exception import ConsistencyError
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.src.document_store.vector_index import FaissVectorIndex, VectorEntry
from rag_agent.storage.blob_store import LocalBlobStore

PREVIEW_CHARS = 200


class ConsistencyLayer:
    """
    Keeps the row store and the vector index in step without a shared
    transaction.

    Writes go rows first, then vectors (a crash in between leaves inert rows
    behind a document that never reaches ready). Deletes go vectors first,
    then rows, so the index never points at text that no longer exists.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vector_index: FaissVectorIndex,
        blob_store: Optional[LocalBlobStore] = None,
    ):
        self.session_factory = session_factory
        self.vector_index = vector_index
        self.blob_store = blob_store
        self.documents = DocumentRepository()
        self.chats = ChatRepository()

    @staticmethod
    def _matches(existing: Sequence[TextSegment], segments: Sequence[dict[str, Any]]) -> bool:
        if len(existing) != len(segments):
            return False
        return all(
            row.ordinal == seg["ordinal"] and row.text == seg["text"]
            for row, seg in zip(existing, segments)
        )

    async def persist(
        self,
        document_id: str,
        session_id: str,
        filename: str,
        segments: Sequence[dict[str, Any]],
        vectors: Sequence[Sequence[float]],
    ) -> List[int]:
        """
        Store segments and their vectors under shared ids; returns the segment ids
        in ordinal order. Calling it again with the same input reuses the rows.
        """
        if len(segments) != len(vectors):
            raise ConsistencyError(
                f"Segment/vector count mismatch: {len(segments)} segments, {len(vectors)} vectors"
            )

        async with self.session_factory() as db:
            existing = await self.documents.segments_for_document(db, session_id, document_id)

            if existing and self._matches(existing, segments):
                segment_ids = [row.id for row in existing]
                log.info(
                    "Reusing stored segments | document_id=%s | count=%d",
                    document_id,
                    len(segment_ids),
                )
            else:
                if existing:
                    stale = [row.id for row in existing]
                    await self.vector_index.delete_by_ids(session_id, [str(i) for i in stale])
                    await self.documents.delete_segments(db, session_id, stale)
                    log.warning(
                        "Replaced stale segments | document_id=%s | stale=%d",
                        document_id,
                        len(stale),
                    )
                segment_ids = await self.documents.insert_segments(
                    db, session_id, document_id, segments
                )

        entries = [
            VectorEntry(
                id=str(segment_id),
                values=list(vector),
                metadata={
                    "document_id": document_id,
                    "session_id": session_id,
                    "filename": filename,
                    "ordinal": seg["ordinal"],
                    "preview": seg["text"][:PREVIEW_CHARS],
                },
            )
            for segment_id, seg, vector in zip(segment_ids, segments, vectors)
        ]
        await self.vector_index.upsert(session_id, entries)

        log.info(
            "Segments persisted | session_id=%s | document_id=%s | count=%d",
            session_id,
            document_id,
            len(segment_ids),
        )
        return segment_ids

    async def delete_document(self, document_id: str, session_id: str) -> Optional[Document]:
        """Returns the removed document, or None when it does not exist in this session."""
        async with self.session_factory() as db:
            doc = await self.documents.get_document(db, session_id, document_id)
            if doc is None:
                return None

            segment_ids = await self.documents.segment_ids_for_document(db, session_id, document_id)
            await self.vector_index.delete_by_ids(session_id, [str(i) for i in segment_ids])
            await self.documents.delete_document_row(db, session_id, document_id)
            await self.chats.adjust_document_count(db, session_id, -1)

        if self.blob_store is not None:
            try:
                await self.blob_store.delete(doc.storage_key)
            except OSError as e:
                log.error("Blob delete failed | key=%s | error=%s", doc.storage_key, str(e))

        log.info(
            "Document deleted | session_id=%s | document_id=%s | segments=%d",
            session_id,
            document_id,
            len(segment_ids),
        )
        return doc

    async def delete_session(self, session_id: str) -> int:
        async with self.session_factory() as db:
            docs = await self.documents.list_documents(db, session_id)

        for doc in docs:
            await self.delete_document(doc.id, session_id)

        await self.vector_index.drop_namespace(session_id)
        return len(docs)
