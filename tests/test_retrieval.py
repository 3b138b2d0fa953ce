"""Tests for session-scoped semantic retrieval."""

from rag_agent.src.document_chat.retrieval import (
    NO_RESULTS_TEXT,
    Citation,
    SearchOutcome,
)
from rag_agent.src.document_store.vector_index import VectorEntry


class TestRetrievalEngine:
    """Tests for RetrievalEngine.search."""

    async def test_returns_exact_segment_text(self, retrieval, ingest):
        """Test that the stored text comes back byte for byte with its citation."""
        text = "Net revenue grew 12% to $4.2M in Q3, driven by EMEA renewals."
        doc = await ingest("s1", [text, "Unrelated appendix."], page_number=3)

        outcome = await retrieval.search("s1", text)

        top = outcome.results[0]
        assert top.text == text
        assert top.citation.document_id == doc.id
        assert top.citation.filename == "report.pdf"
        assert top.citation.ordinal == 0
        assert top.citation.page_number == 3

    async def test_other_sessions_are_invisible(self, retrieval, ingest):
        """Test that a search never returns another session's segments."""
        await ingest("s2", ["Secret roadmap for project Falcon."])

        outcome = await retrieval.search("s1", "Secret roadmap for project Falcon.")

        assert outcome.is_empty

    async def test_results_stay_in_session(self, retrieval, ingest):
        """Test that with both sessions populated only the caller's hits appear."""
        mine = await ingest("s1", ["Shared topic, session one."], filename="mine.pdf")
        await ingest("s2", ["Shared topic, session two."], filename="theirs.pdf")

        outcome = await retrieval.search("s1", "Shared topic", top_k=10)

        assert {r.citation.document_id for r in outcome.results} == {mine.id}

    async def test_no_documents(self, retrieval):
        """Test the empty outcome and its prompt text."""
        outcome = await retrieval.search("s1", "anything")

        assert outcome.is_empty
        assert outcome.format_for_prompt() == NO_RESULTS_TEXT
        assert outcome.citations() == []

    async def test_orphan_vectors_are_dropped(self, retrieval, ingest, vector_index, embeddings):
        """Test that a vector without a row behind it is filtered out."""
        await ingest("s1", ["Real segment."])
        await vector_index.upsert(
            "s1", [VectorEntry(id="999999", values=embeddings.embed_query("ghost"), metadata={})]
        )

        outcome = await retrieval.search("s1", "ghost", top_k=10)

        assert [r.text for r in outcome.results] == ["Real segment."]

    async def test_failed_document_is_not_searchable(self, retrieval, ingest):
        """Test that segments of a document that ended in error are never returned."""
        text = "Confidential figures from a failed ingestion."
        await ingest("s1", [text], status="error")

        assert (await retrieval.search("s1", text)).is_empty

    async def test_unfinished_document_is_not_searchable(self, retrieval, ingest):
        """Test that a document still processing after persist stays hidden until ready."""
        text = "Draft figures still being indexed."
        await ingest("s1", [text], status="processing")

        assert (await retrieval.search("s1", text)).is_empty

    async def test_top_k_is_clamped(self, retrieval, ingest):
        """Test that top_k is held to [1, max_top_k]."""
        await ingest("s1", [f"Paragraph number {i} about budgets." for i in range(12)])

        assert len((await retrieval.search("s1", "budgets", top_k=50)).results) == 10
        assert len((await retrieval.search("s1", "budgets", top_k=0)).results) == 1
        assert len((await retrieval.search("s1", "budgets")).results) == 5


class TestSearchOutcome:
    """Tests for SearchOutcome formatting."""

    def test_format_for_prompt_labels_sources(self):
        """Test that each hit is prefixed with its filename and page."""
        outcome = SearchOutcome.model_validate(
            {
                "query": "q",
                "results": [
                    {
                        "segment_id": 1,
                        "text": "First passage.",
                        "score": 0.9,
                        "citation": {"document_id": "d1", "filename": "a.pdf", "ordinal": 0, "page_number": 2},
                    },
                    {
                        "segment_id": 2,
                        "text": "Second passage.",
                        "score": 0.5,
                        "citation": {"document_id": "d2", "filename": "b.docx", "ordinal": 4},
                    },
                ],
            }
        )

        assert outcome.format_for_prompt() == "[a.pdf, p.2]: First passage.\n\n[b.docx]: Second passage."

    def test_citation_label(self):
        """Test labels with and without a page number."""
        assert Citation(document_id="d", filename="f.pdf", ordinal=0, page_number=7).label() == "f.pdf, p.7"
        assert Citation(document_id="d", filename="f.docx", ordinal=0).label() == "f.docx"
