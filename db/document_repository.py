from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from rag_agent.exception.custom_exception import RagAgentException
from rag_agent.logger import GLOBAL_LOGGER as log

from .models import Document, TextSegment, utcnow

# error is terminal; ready is only left by deletion
ALLOWED_TRANSITIONS = {
    "pending": {"pending", "processing", "error"},
    "processing": {"processing", "ready", "error"},
    "ready": {"ready"},
    "error": {"error"},
}


class DocumentRepository:
    """
    Repository for Document and TextSegment rows. Every read and write
    carries a session_id predicate.
    """

    async def create_document(self, db: AsyncSession, doc: Document) -> Document:
        db.add(doc)
        await db.commit()
        await db.refresh(doc)
        log.info(
            "Document registered | session_id=%s | document_id=%s | filename=%s",
            doc.session_id,
            doc.id,
            doc.filename,
        )
        return doc

    async def get_document(
        self, db: AsyncSession, session_id: str, document_id: str
    ) -> Optional[Document]:
        out = await db.execute(
            select(Document).where(
                Document.id == document_id, Document.session_id == session_id
            )
        )
        return out.scalar_one_or_none()

    async def list_documents(
        self, db: AsyncSession, session_id: str, limit: Optional[int] = None
    ) -> list[Document]:
        q = (
            select(Document)
            .where(Document.session_id == session_id)
            .order_by(Document.uploaded_at.desc(), Document.id.desc())
        )
        if limit is not None:
            q = q.limit(limit)
        out = await db.execute(q)
        return list(out.scalars().all())

    async def unfinished_documents(self, db: AsyncSession) -> list[Document]:
        out = await db.execute(
            select(Document).where(Document.status.in_(("pending", "processing")))
        )
        return list(out.scalars().all())

    async def update_progress(
        self,
        db: AsyncSession,
        session_id: str,
        document_id: str,
        details: dict[str, Any],
        status: Optional[str] = None,
        total_chunks: Optional[int] = None,
    ) -> Optional[Document]:
        doc = await self.get_document(db, session_id, document_id)
        if doc is None:
            log.warning(
                "Progress update for missing document | session_id=%s | document_id=%s",
                session_id,
                document_id,
            )
            return None

        if status is not None:
            if status not in ALLOWED_TRANSITIONS[doc.status]:
                raise RagAgentException(
                    f"Illegal status transition {doc.status} -> {status} for {document_id}"
                )
            doc.status = status
        if total_chunks is not None:
            doc.total_chunks = total_chunks
        doc.details = {**details, "updated_at": utcnow().isoformat()}

        await db.commit()
        return doc

    # ---------------------------------------------------------------
    # segments
    # ---------------------------------------------------------------
    async def insert_segments(
        self,
        db: AsyncSession,
        session_id: str,
        document_id: str,
        segments: Iterable[dict[str, Any]],
    ) -> list[int]:
        rows = [
            TextSegment(
                session_id=session_id,
                document_id=document_id,
                ordinal=s["ordinal"],
                text=s["text"],
                page_number=s.get("page_number"),
                created_at=utcnow(),
            )
            for s in segments
        ]
        db.add_all(rows)
        # flush assigns the autoincrement ids used as vector ids
        await db.flush()
        ids = [r.id for r in rows]
        await db.commit()
        return ids

    async def segments_for_document(
        self, db: AsyncSession, session_id: str, document_id: str
    ) -> list[TextSegment]:
        out = await db.execute(
            select(TextSegment)
            .where(
                TextSegment.session_id == session_id,
                TextSegment.document_id == document_id,
            )
            .order_by(TextSegment.ordinal)
        )
        return list(out.scalars().all())

    async def segment_ids_for_document(
        self, db: AsyncSession, session_id: str, document_id: str
    ) -> list[int]:
        out = await db.execute(
            select(TextSegment.id).where(
                TextSegment.session_id == session_id,
                TextSegment.document_id == document_id,
            )
        )
        return list(out.scalars().all())

    async def segments_with_documents(
        self, db: AsyncSession, session_id: str, segment_ids: Sequence[int]
    ) -> dict[int, tuple[TextSegment, Document]]:
        """Join segment ids to their text and parent document, restricted to the session.

        Only documents that finished ingestion are joined; segments of pending,
        processing or failed documents stay invisible to search.
        """
        if not segment_ids:
            return {}
        out = await db.execute(
            select(TextSegment, Document)
            .join(Document, TextSegment.document_id == Document.id)
            .where(
                TextSegment.id.in_(list(segment_ids)),
                TextSegment.session_id == session_id,
                Document.session_id == session_id,
                Document.status == "ready",
            )
        )
        return {seg.id: (seg, doc) for seg, doc in out.all()}

    async def delete_segments(
        self, db: AsyncSession, session_id: str, segment_ids: Sequence[int]
    ) -> None:
        if not segment_ids:
            return
        await db.execute(
            delete(TextSegment).where(
                TextSegment.session_id == session_id,
                TextSegment.id.in_(list(segment_ids)),
            )
        )
        await db.commit()

    async def delete_document_row(
        self, db: AsyncSession, session_id: str, document_id: str
    ) -> bool:
        """Delete the document; segments and ledger rows go with it via ON DELETE CASCADE."""
        result = await db.execute(
            delete(Document).where(
                Document.id == document_id, Document.session_id == session_id
            )
        )
        await db.commit()
        return result.rowcount > 0
