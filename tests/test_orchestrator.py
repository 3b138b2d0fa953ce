"""Tests for the per-session conversation orchestrator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from db.chat_repository import ChatRepository
from db.document_repository import DocumentRepository
from rag_agent.exception.custom_exception import ToolExecutionError
from rag_agent.graph.orchestrator import (
    NO_DOCUMENTS_REPLY,
    STREAM_ERROR_TEXT,
    OrchestratorDeps,
    SessionOrchestrator,
)
from orchestrator.orchestrator_manager import OrchestratorManager

from fakes import BrokenStreamModel, answer_model, planner_for, tool_call


class FrameRecorder:
    """Collects outbound frames like a websocket would."""

    def __init__(self):
        self.frames = []

    async def __call__(self, frame):
        self.frames.append(frame)

    def of_type(self, kind):
        return [f for f in self.frames if f["type"] == kind]

    def text(self):
        return "".join(f["text"] for f in self.of_type("delta"))


@pytest.fixture
def make_orchestrator(session_factory, retrieval, consistency):
    async def _make(planner, answer=None, session_id="s1"):
        async with session_factory() as db:
            await ChatRepository().get_or_create_session(db, session_id)
        deps = OrchestratorDeps(
            session_factory=session_factory,
            retrieval=retrieval,
            consistency=consistency,
            planner=planner,
            answer_llm=answer or answer_model(),
        )
        return SessionOrchestrator(session_id, deps)

    return _make


async def _history(session_factory, session_id="s1"):
    async with session_factory() as db:
        return await ChatRepository().get_history(db, session_id, limit=100)


class TestListDocuments:
    """Tests for the list_documents capability."""

    async def test_zero_documents(self, make_orchestrator, retrieval, session_factory):
        """Test the list reply for an empty session; search is never touched."""
        retrieval.search = AsyncMock()
        orchestrator = await make_orchestrator(planner_for(tool_call("list_documents")))
        send = FrameRecorder()

        steps = await orchestrator.handle_turn("What documents do I have?", send)

        assert steps == ["planner", "list"]
        retrieval.search.assert_not_called()
        assert [f["text"] for f in send.of_type("delta")] == [
            "Let me check your documents…",
            NO_DOCUMENTS_REPLY,
        ]
        assert len(send.of_type("done")) == 2

        rows = await _history(session_factory)
        assert [r.role for r in rows] == ["user", "assistant", "tool", "assistant"]
        assert rows[-1].content == NO_DOCUMENTS_REPLY
        assert rows[2].payload == {"type": "tool_result", "tool": "list_documents", "result": []}

    async def test_lists_documents(self, make_orchestrator, make_document):
        """Test the numbered summary of the session's documents."""
        await make_document("s1", filename="contract.pdf")
        orchestrator = await make_orchestrator(planner_for(tool_call("list_documents")))
        send = FrameRecorder()

        await orchestrator.handle_turn("list my files", send)

        assert send.of_type("delta")[-1]["text"] == (
            "You have 1 document(s):\n\n1. **contract.pdf** (pending)"
        )


class TestSearchDocuments:
    """Tests for the search_documents capability."""

    async def test_search_streams_grounded_answer(self, make_orchestrator, ingest, session_factory):
        """Test pre-message, tool events, streamed answer and stored citations."""
        await ingest("s1", ["The warranty period is 24 months from delivery."], filename="terms.pdf")
        answer = "The warranty lasts 24 months [Source: terms.pdf]"
        orchestrator = await make_orchestrator(
            planner_for(tool_call("search_documents", query="warranty period")),
            answer=answer_model(answer),
        )
        send = FrameRecorder()

        steps = await orchestrator.handle_turn("How long is the warranty?", send)

        assert steps == ["planner", "search"]
        assert send.frames[0] == {"type": "delta", "text": "Let me search through your documents…"}
        assert [(f["status"], f["tool"]) for f in send.of_type("tool")] == [
            ("started", "search_documents"),
            ("done", "search_documents"),
        ]
        assert send.text() == "Let me search through your documents…" + answer
        assert send.frames[-1] == {"type": "done"}

        rows = await _history(session_factory)
        assert [r.role for r in rows] == ["user", "assistant", "tool", "assistant"]
        assert "[terms.pdf]: The warranty period is 24 months from delivery." in rows[2].payload["result"]
        assert rows[-1].content == answer
        assert rows[-1].citations[0]["filename"] == "terms.pdf"

    async def test_search_failure_apologises(self, make_orchestrator, retrieval, session_factory):
        """Test that a failing search reports a tool error and an apology."""
        retrieval.search = AsyncMock(side_effect=RuntimeError("index offline"))
        orchestrator = await make_orchestrator(
            planner_for(tool_call("search_documents", query="anything"))
        )
        send = FrameRecorder()

        await orchestrator.handle_turn("find anything", send)

        assert send.of_type("tool")[-1]["status"] == "error"
        assert send.of_type("tool")[-1]["message"] == "index offline"
        rows = await _history(session_factory)
        assert rows[-1].content == "I couldn't search the documents. Please try again."


class TestDeleteDocument:
    """Tests for the delete_document capability."""

    async def test_delete_by_id(self, make_orchestrator, make_document, session_factory):
        """Test deleting a document referenced by id."""
        doc = await make_document("s1", filename="old.pdf")
        orchestrator = await make_orchestrator(
            planner_for(tool_call("delete_document", document_id=doc.id))
        )
        send = FrameRecorder()

        steps = await orchestrator.handle_turn("delete old.pdf", send)

        assert steps == ["planner", "delete"]
        assert send.of_type("delta")[-1]["text"] == 'Document "old.pdf" has been successfully deleted.'
        async with session_factory() as db:
            assert await DocumentRepository().get_document(db, "s1", doc.id) is None

    async def test_delete_by_filename(self, make_orchestrator, make_document, session_factory):
        """Test that an exact filename resolves to the document."""
        doc = await make_document("s1", filename="draft.docx")
        orchestrator = await make_orchestrator(
            planner_for(tool_call("delete_document", document_id="draft.docx"))
        )

        await orchestrator.handle_turn("remove draft.docx", FrameRecorder())

        async with session_factory() as db:
            assert await DocumentRepository().get_document(db, "s1", doc.id) is None

    async def test_delete_unknown(self, make_orchestrator, make_document, session_factory):
        """Test the reply for a reference that matches nothing in this session."""
        other = await make_document("s2", filename="theirs.pdf")
        orchestrator = await make_orchestrator(
            planner_for(tool_call("delete_document", document_id=other.id))
        )
        send = FrameRecorder()

        await orchestrator.handle_turn("delete theirs.pdf", send)

        assert send.of_type("delta")[-1]["text"] == "Document not found."
        async with session_factory() as db:
            assert await DocumentRepository().get_document(db, "s2", other.id) is not None

    async def test_delete_failure_apologises(self, make_orchestrator, make_document, consistency):
        """Test that a failing delete ends in the apology without a tool result."""
        doc = await make_document("s1", filename="locked.pdf")
        consistency.delete_document = AsyncMock(side_effect=OSError("disk gone"))
        orchestrator = await make_orchestrator(
            planner_for(tool_call("delete_document", document_id=doc.id))
        )
        send = FrameRecorder()

        await orchestrator.handle_turn("delete locked.pdf", send)

        assert send.of_type("delta")[-1]["text"] == "I couldn't delete the document. Please try again."

    async def test_tool_failures_are_wrapped(self, make_orchestrator):
        """Test that any tool failure surfaces as ToolExecutionError with its cause."""
        orchestrator = await make_orchestrator(planner_for())
        cause = RuntimeError("index offline")

        with pytest.raises(ToolExecutionError) as info:
            await orchestrator._call_tool("search_documents", AsyncMock(side_effect=cause)())

        assert info.value.error_message == "index offline"
        assert info.value.__cause__ is cause


class TestConversation:
    """Tests for plain chat turns and turn mechanics."""

    async def test_no_tool_streams_reply(self, make_orchestrator, session_factory):
        """Test that a plain reply is streamed and persisted."""
        orchestrator = await make_orchestrator(planner_for(), answer=answer_model("Hello there!"))
        send = FrameRecorder()

        steps = await orchestrator.handle_turn("hi", send)

        assert steps == ["planner", "chat"]
        assert send.text() == "Hello there!"
        assert send.frames[-1] == {"type": "done"}
        rows = await _history(session_factory)
        assert [(r.role, r.content) for r in rows] == [("user", "hi"), ("assistant", "Hello there!")]

    async def test_unknown_tool_falls_back_to_chat(self, make_orchestrator):
        """Test that an unrecognised tool name is answered conversationally."""
        orchestrator = await make_orchestrator(planner_for(tool_call("launch_rockets")))

        steps = await orchestrator.handle_turn("do something odd", FrameRecorder())

        assert steps == ["planner", "chat"]

    async def test_planner_failure_falls_back_to_chat(self, make_orchestrator):
        """Test that a planner error does not break the turn."""
        planner = MagicMock()
        planner.ainvoke = AsyncMock(side_effect=RuntimeError("rate limited"))
        orchestrator = await make_orchestrator(planner)

        steps = await orchestrator.handle_turn("hello?", FrameRecorder())

        assert steps == ["planner", "chat"]

    async def test_stream_error_keeps_partial_text(self, make_orchestrator, session_factory):
        """Test that text streamed before a failure is what gets stored."""
        orchestrator = await make_orchestrator(
            planner_for(), answer=BrokenStreamModel(messages=iter([]), partial="Partial answer")
        )
        send = FrameRecorder()

        await orchestrator.handle_turn("tell me a story", send)

        assert send.frames[-1] == {"type": "done"}
        rows = await _history(session_factory)
        assert rows[-1].role == "assistant"
        assert rows[-1].content == "Partial answer"

    async def test_stream_error_without_output(self, make_orchestrator, session_factory):
        """Test the placeholder stored when nothing was streamed."""
        orchestrator = await make_orchestrator(planner_for(), answer=BrokenStreamModel(messages=iter([])))
        send = FrameRecorder()

        await orchestrator.handle_turn("tell me a story", send)

        assert send.text() == STREAM_ERROR_TEXT
        rows = await _history(session_factory)
        assert rows[-1].content == STREAM_ERROR_TEXT

    async def test_disconnect_mid_turn_still_persists(self, make_orchestrator, session_factory):
        """Test that a closed client does not stop the turn from completing."""
        orchestrator = await make_orchestrator(planner_for(), answer=answer_model("Still saved."))
        send = AsyncMock(side_effect=RuntimeError("websocket closed"))

        await orchestrator.handle_turn("are you there?", send)

        assert send.await_count == 1
        rows = await _history(session_factory)
        assert [(r.role, r.content) for r in rows] == [
            ("user", "are you there?"),
            ("assistant", "Still saved."),
        ]

    async def test_turns_are_serialised(self, make_orchestrator, session_factory):
        """Test that concurrent turns of one session do not interleave."""
        orchestrator = await make_orchestrator(planner_for(), answer=answer_model("ok"))

        await asyncio.gather(
            orchestrator.handle_turn("first", FrameRecorder()),
            orchestrator.handle_turn("second", FrameRecorder()),
        )

        rows = await _history(session_factory)
        assert [r.role for r in rows] == ["user", "assistant", "user", "assistant"]
        assert orchestrator.state == "idle"

    async def test_reset_clears_history(self, make_orchestrator, session_factory):
        """Test that reset wipes messages and confirms with a cleared frame."""
        orchestrator = await make_orchestrator(planner_for())
        await orchestrator.handle_turn("remember this", FrameRecorder())
        send = FrameRecorder()

        await orchestrator.reset(send)

        assert send.frames == [{"type": "cleared"}]
        assert await _history(session_factory) == []

    async def test_ready_state(self, make_orchestrator, make_document):
        """Test the snapshot sent when a client connects."""
        await make_document("s1")
        orchestrator = await make_orchestrator(planner_for(), answer=answer_model("Hi."))
        await orchestrator.handle_turn("hello", FrameRecorder())

        state = await orchestrator.ready_state()

        assert state["sessionId"] == "s1"
        assert state["documentCount"] == 1
        assert [m["role"] for m in state["messages"]] == ["user", "assistant"]


class TestOrchestratorManager:
    """Tests for the per-session orchestrator cache."""

    @pytest.fixture
    def make_manager(self, session_factory, retrieval, consistency):
        def _make(maxsize=10, ttl=3600):
            deps = OrchestratorDeps(
                session_factory=session_factory,
                retrieval=retrieval,
                consistency=consistency,
                planner=MagicMock(),
                answer_llm=answer_model(),
            )
            return OrchestratorManager(deps, maxsize=maxsize, ttl=ttl)

        return _make

    async def test_connected_session_outlives_ttl(self, make_manager):
        """Test that a held orchestrator is handed out again after its TTL lapses."""
        manager = make_manager(ttl=0.05)
        held = manager.acquire("s1")
        await asyncio.sleep(0.1)

        again = manager.acquire("s1")

        assert again is held
        assert again.lock is held.lock

    async def test_connected_session_survives_cache_pressure(self, make_manager):
        """Test that pushing other sessions through a full cache keeps the held actor."""
        manager = make_manager(maxsize=1)
        held = manager.acquire("s1")
        manager.get_orchestrator("s2")
        manager.get_orchestrator("s3")

        assert manager.get_orchestrator("s1") is held

    async def test_released_session_can_expire(self, make_manager):
        """Test that once every connection is gone the TTL applies again."""
        manager = make_manager(ttl=0.05)
        first = manager.acquire("s1")
        manager.acquire("s1")
        manager.release("s1")
        await asyncio.sleep(0.1)
        assert manager.get_orchestrator("s1") is first

        manager.release("s1")
        await asyncio.sleep(0.1)

        assert manager.get_orchestrator("s1") is not first
