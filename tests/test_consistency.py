"""Tests for the row store / vector index consistency layer."""

import pytest

from db.chat_repository import ChatRepository
from db.document_repository import DocumentRepository
from rag_agent.exception.custom_exception import ConsistencyError


def _segments(*texts):
    return [{"text": t, "ordinal": i, "page_number": None} for i, t in enumerate(texts)]


class TestPersist:
    """Tests for ConsistencyLayer.persist."""

    async def test_every_segment_gets_a_vector(
        self, consistency, vectorizer, vector_index, session_factory, make_document
    ):
        """Test that rows and vectors share ids one-to-one."""
        doc = await make_document("s1")
        segments = _segments("alpha text", "beta text", "gamma text")
        vectors = await vectorizer.embed_texts([s["text"] for s in segments])

        ids = await consistency.persist(doc.id, "s1", doc.filename, segments, vectors)

        async with session_factory() as db:
            rows = await DocumentRepository().segments_for_document(db, "s1", doc.id)
        assert [r.id for r in rows] == ids
        assert [r.text for r in rows] == ["alpha text", "beta text", "gamma text"]
        assert vector_index.ids("s1") == {str(i) for i in ids}

    async def test_count_mismatch_writes_nothing(
        self, consistency, vectorizer, vector_index, session_factory, make_document
    ):
        """Test that mismatched segments and vectors are refused up front."""
        doc = await make_document("s1")
        vectors = await vectorizer.embed_texts(["only one"])

        with pytest.raises(ConsistencyError):
            await consistency.persist(doc.id, "s1", doc.filename, _segments("one", "two"), vectors)

        async with session_factory() as db:
            assert await DocumentRepository().segments_for_document(db, "s1", doc.id) == []
        assert vector_index.count("s1") == 0

    async def test_persist_twice_is_idempotent(
        self, consistency, vectorizer, vector_index, make_document
    ):
        """Test that a retried persist reuses the stored rows and vectors."""
        doc = await make_document("s1")
        segments = _segments("first", "second")
        vectors = await vectorizer.embed_texts(["first", "second"])

        first_ids = await consistency.persist(doc.id, "s1", doc.filename, segments, vectors)
        second_ids = await consistency.persist(doc.id, "s1", doc.filename, segments, vectors)

        assert first_ids == second_ids
        assert vector_index.count("s1") == 2

    async def test_changed_segments_replace_stale_ones(
        self, consistency, vectorizer, vector_index, session_factory, make_document
    ):
        """Test that different content drops the old rows and their vectors."""
        doc = await make_document("s1")
        old = _segments("old one", "old two")
        await consistency.persist(
            doc.id, "s1", doc.filename, old, await vectorizer.embed_texts(["old one", "old two"])
        )

        new = _segments("new only")
        new_ids = await consistency.persist(
            doc.id, "s1", doc.filename, new, await vectorizer.embed_texts(["new only"])
        )

        assert vector_index.ids("s1") == {str(new_ids[0])}
        async with session_factory() as db:
            rows = await DocumentRepository().segments_for_document(db, "s1", doc.id)
        assert [r.text for r in rows] == ["new only"]


class TestDelete:
    """Tests for document and session deletion."""

    async def test_delete_document_removes_everything(
        self, consistency, vectorizer, vector_index, blob_store, session_factory, make_document
    ):
        """Test that vectors, segments, document row and blob all go."""
        doc = await make_document("s1")
        keep = await make_document("s1", filename="keep.pdf")
        for d, text in ((doc, "to be deleted"), (keep, "to be kept")):
            await consistency.persist(
                d.id, "s1", d.filename, _segments(text), await vectorizer.embed_texts([text])
            )

        deleted = await consistency.delete_document(doc.id, "s1")

        assert deleted.id == doc.id
        assert vector_index.count("s1") == 1
        async with session_factory() as db:
            repo = DocumentRepository()
            assert await repo.get_document(db, "s1", doc.id) is None
            assert await repo.segments_for_document(db, "s1", doc.id) == []
            assert len(await repo.segments_for_document(db, "s1", keep.id)) == 1
            session = await ChatRepository().get_session(db, "s1")
            assert session.document_count == 1
        with pytest.raises(FileNotFoundError):
            await blob_store.get(doc.storage_key)

    async def test_segment_ids_are_not_reused(self, consistency, vectorizer, make_document):
        """Test that ids freed by a delete are never issued again."""
        first = await make_document("s1", filename="a.pdf")
        first_ids = await consistency.persist(
            first.id, "s1", first.filename, _segments("doc a"), await vectorizer.embed_texts(["doc a"])
        )
        await consistency.delete_document(first.id, "s1")

        second = await make_document("s1", filename="b.pdf")
        second_ids = await consistency.persist(
            second.id, "s1", second.filename, _segments("doc b"), await vectorizer.embed_texts(["doc b"])
        )

        assert set(first_ids).isdisjoint(second_ids)

    async def test_delete_is_session_scoped(self, consistency, session_factory, make_document):
        """Test that a document cannot be deleted from another session."""
        doc = await make_document("s1")

        assert await consistency.delete_document(doc.id, "s2") is None

        async with session_factory() as db:
            assert await DocumentRepository().get_document(db, "s1", doc.id) is not None

    async def test_delete_session_cascades(
        self, consistency, vectorizer, vector_index, session_factory, make_document
    ):
        """Test that dropping a session removes its documents and namespace only."""
        for session_id in ("s1", "s2"):
            doc = await make_document(session_id)
            await consistency.persist(
                doc.id, session_id, doc.filename, _segments("text"), await vectorizer.embed_texts(["text"])
            )

        removed = await consistency.delete_session("s1")

        assert removed == 1
        assert vector_index.count("s1") == 0
        assert vector_index.count("s2") == 1
        async with session_factory() as db:
            assert await DocumentRepository().list_documents(db, "s1") == []
            assert len(await DocumentRepository().list_documents(db, "s2")) == 1
