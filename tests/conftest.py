"""Pytest fixtures for the session RAG agent tests."""

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding

from db.chat_repository import ChatRepository
from db.database import build_engine, build_session_factory, init_db
from db.document_repository import DocumentRepository
from db.models import Document, utcnow
from rag_agent.src.document_chat.retrieval import RetrievalEngine
from rag_agent.src.document_ingestion.pipeline import RetryPolicy
from rag_agent.src.document_ingestion.segmenter import Segmenter
from rag_agent.src.document_ingestion.vectorizer import Vectorizer
from rag_agent.src.document_store.consistency import ConsistencyLayer
from rag_agent.src.document_store.vector_index import FaissVectorIndex
from rag_agent.storage.blob_store import LocalBlobStore
from rag_agent.utils.file_io import PDF_CONTENT_TYPE
from rag_agent.utils.identifiers import blob_key_for, generate_document_id

from fakes import DIMENSIONS


@pytest.fixture
async def engine(tmp_path):
    """Per-test SQLite database with every table created."""
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def embeddings():
    return DeterministicFakeEmbedding(size=DIMENSIONS)


@pytest.fixture
def vectorizer(embeddings):
    return Vectorizer(embeddings, dimensions=DIMENSIONS, max_batch_size=4)


@pytest.fixture
def vector_index(tmp_path, embeddings):
    return FaissVectorIndex(tmp_path / "faiss_index", embeddings, DIMENSIONS)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def segmenter():
    return Segmenter()


@pytest.fixture
def consistency(session_factory, vector_index, blob_store):
    return ConsistencyLayer(session_factory, vector_index, blob_store)


@pytest.fixture
def fast_retry():
    """Retry policy without sleeping between attempts."""
    return RetryPolicy(max_attempts=3, backoff_base=0.0, backoff_cap=0.0)


@pytest.fixture
def make_document(session_factory, blob_store):
    """Factory registering a pending document (session row, blob, document row)."""

    async def _make(session_id, filename="notes.pdf", data=b"hello world", content_type=PDF_CONTENT_TYPE):
        document_id = generate_document_id()
        key = blob_key_for(session_id, document_id, filename)
        await blob_store.put(key, data)
        async with session_factory() as db:
            await ChatRepository().get_or_create_session(db, session_id)
            doc = await DocumentRepository().create_document(
                db,
                Document(
                    id=document_id,
                    session_id=session_id,
                    filename=filename,
                    storage_key=key,
                    uploaded_at=utcnow(),
                    status="pending",
                    total_chunks=0,
                    file_size=len(data),
                    content_type=content_type,
                    details={},
                ),
            )
            await ChatRepository().adjust_document_count(db, session_id, 1)
        return doc

    return _make


@pytest.fixture
def retrieval(session_factory, vectorizer, vector_index):
    return RetrievalEngine(session_factory, vectorizer, vector_index, default_top_k=5, max_top_k=10)


@pytest.fixture
def ingest(consistency, vectorizer, make_document, session_factory):
    """Register a document, store the given texts as its segments and mark it ready."""

    async def _ingest(session_id, texts, filename="report.pdf", page_number=None, status="ready"):
        doc = await make_document(session_id, filename=filename)
        segments = [
            {"text": t, "ordinal": i, "page_number": page_number} for i, t in enumerate(texts)
        ]
        await consistency.persist(
            doc.id, session_id, filename, segments, await vectorizer.embed_texts(texts)
        )
        repo = DocumentRepository()
        async with session_factory() as db:
            if status in ("processing", "ready", "error"):
                await repo.update_progress(db, session_id, doc.id, {}, status="processing")
            if status in ("ready", "error"):
                await repo.update_progress(
                    db, session_id, doc.id, {}, status=status, total_chunks=len(texts)
                )
        return doc

    return _ingest
