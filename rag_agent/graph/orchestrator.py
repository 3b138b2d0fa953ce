from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import List, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage
from langchain_core.output_parsers import StrOutputParser
from langchain_core.runnables import Runnable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.chat_repository import ChatRepository
from db.document_repository import DocumentRepository
from db.models import Document, Message
from rag_agent.graph.builder import build_graph
from rag_agent.exception.custom_exception import ToolExecutionError
from rag_agent.graph.state import Sender
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.prompts.prompt_library import PROMPT_REGISTRY
from rag_agent.src.document_chat.retrieval import RetrievalEngine
from rag_agent.src.document_store.consistency import ConsistencyLayer
from rag_agent.tools.document_tools import (
    DeleteDocument,
    SearchDocuments,
    ToolPlan,
    decode_tool_call,
)

STREAM_ERROR_TEXT = "_(stream error)_"
NO_DOCUMENTS_CONTEXT = "No documents uploaded yet."
NO_DOCUMENTS_REPLY = "You don't have any documents uploaded yet."

SEARCH_APOLOGY = "I couldn't search the documents. Please try again."
LIST_APOLOGY = "I couldn't list the documents. Please try again."
DELETE_APOLOGY = "I couldn't delete the document. Please try again."


@dataclass
class OrchestratorDeps:
    """Shared service bindings handed to every session orchestrator."""

    session_factory: async_sessionmaker[AsyncSession]
    retrieval: RetrievalEngine
    consistency: ConsistencyLayer
    planner: Runnable
    answer_llm: BaseChatModel
    history_window: int = 40
    answer_history_window: int = 4
    documents_context_limit: int = 10


class TurnChannel:
    """
    Outbound side of a turn. Once the client goes away sends become no-ops so
    the turn still runs to completion and gets persisted.
    """

    def __init__(self, send: Sender, session_id: str):
        self._send = send
        self.session_id = session_id
        self.connected = True

    async def emit(self, payload: dict) -> None:
        if not self.connected:
            return
        try:
            await self._send(payload)
        except Exception as e:
            self.connected = False
            log.info(
                "Client went away mid-turn, continuing server-side | session_id=%s | error=%s",
                self.session_id,
                str(e),
            )

    async def delta(self, text: str) -> None:
        await self.emit({"type": "delta", "text": text})

    async def done(self) -> None:
        await self.emit({"type": "done"})

    async def tool(self, tool: str, status: str, message: str) -> None:
        await self.emit({"type": "tool", "tool": tool, "status": status, "message": message})


def to_chat_history(rows: List[Message]) -> List[BaseMessage]:
    history: List[BaseMessage] = []
    for row in rows:
        if row.role == "user":
            history.append(HumanMessage(content=row.content))
        elif row.role == "assistant":
            history.append(AIMessage(content=row.content))
    return history


class SessionOrchestrator:
    """
    Actor for one session: every turn runs under the session lock, so turns
    of the same session never interleave.

    idle -> planning -> executing_tool -> responding -> idle
    idle -> planning -> responding -> idle  (no tool)
    """

    def __init__(self, session_id: str, deps: OrchestratorDeps):
        self.session_id = session_id
        self.deps = deps
        self.chats = ChatRepository()
        self.documents = DocumentRepository()
        self.lock = asyncio.Lock()
        self.state = "idle"
        self.graph = build_graph()

    # ---------------------------------------------------------------
    # persistence helpers
    # ---------------------------------------------------------------
    async def _persist(self, role: str, content: str, citations=None, payload=None) -> Message:
        async with self.deps.session_factory() as db:
            return await self.chats.add_message(
                db, self.session_id, role, content, citations=citations, payload=payload
            )

    async def _persist_tool_result(self, tool: str, result, citations=None) -> None:
        body = {"type": "tool_result", "tool": tool, "result": result}
        await self._persist("tool", json.dumps(body), citations=citations, payload=body)

    async def _say(self, channel: TurnChannel, text: str) -> None:
        await channel.delta(text)
        await channel.done()
        await self._persist("assistant", text)

    async def _list_documents(self, limit: Optional[int] = None) -> List[Document]:
        async with self.deps.session_factory() as db:
            return await self.documents.list_documents(db, self.session_id, limit=limit)

    async def documents_context(self) -> str:
        docs = await self._list_documents(limit=self.deps.documents_context_limit)
        if not docs:
            return NO_DOCUMENTS_CONTEXT
        lines = "\n".join(f"{i}. {d.filename} ({d.status})" for i, d in enumerate(docs, start=1))
        return f"Available documents ({len(docs)}):\n{lines}"

    async def ready_state(self, message_limit: int = 100) -> dict:
        async with self.deps.session_factory() as db:
            rows = await self.chats.get_history(db, self.session_id, limit=message_limit)
            docs = await self.documents.list_documents(db, self.session_id)
        return {
            "sessionId": self.session_id,
            "documentCount": len(docs),
            "messages": [
                {"role": m.role, "content": m.content, "createdAt": m.created_at.isoformat()}
                for m in rows
            ],
        }

    # ---------------------------------------------------------------
    # turn entry points
    # ---------------------------------------------------------------
    async def handle_turn(self, text: str, send: Sender) -> List[str]:
        """Run one user turn; returns the graph steps taken."""
        channel = TurnChannel(send, self.session_id)
        async with self.lock:
            try:
                user_msg = await self._persist("user", text)

                async with self.deps.session_factory() as db:
                    rows = await self.chats.get_history(
                        db, self.session_id, limit=self.deps.history_window
                    )
                history = to_chat_history([r for r in rows if r.id != user_msg.id])
                documents_context = await self.documents_context()

                self.state = "planning"
                result = await self.graph.ainvoke(
                    {
                        "orchestrator": self,
                        "channel": channel,
                        "input": text,
                        "chat_history": history,
                        "documents_context": documents_context,
                        "plan": None,
                        "route": "chat",
                        "steps": [],
                    }
                )
                return result.get("steps", [])
            finally:
                self.state = "idle"

    async def reset(self, send: Sender) -> None:
        async with self.lock:
            async with self.deps.session_factory() as db:
                await self.chats.clear_messages(db, self.session_id)
            await TurnChannel(send, self.session_id).emit({"type": "cleared"})

    # ---------------------------------------------------------------
    # planner
    # ---------------------------------------------------------------
    async def plan(
        self, history: List[BaseMessage], text: str, documents_context: str
    ) -> Optional[ToolPlan]:
        try:
            messages = await PROMPT_REGISTRY["planner"].ainvoke(
                {"documents_context": documents_context, "chat_history": history, "input": text}
            )
            ai_msg = await self.deps.planner.ainvoke(messages)
        except Exception as e:
            log.error("Planner failed, answering without tools | session_id=%s | error=%s", self.session_id, str(e))
            return None

        plan = decode_tool_call(getattr(ai_msg, "tool_calls", None))
        log.info(
            "Planner decided | session_id=%s | tool=%s",
            self.session_id,
            plan.tool_name if plan is not None else None,
        )
        return plan

    # ---------------------------------------------------------------
    # capabilities
    # ---------------------------------------------------------------
    async def _call_tool(self, tool_name: str, operation):
        """Await a tool operation, surfacing any failure as ToolExecutionError."""
        try:
            return await operation
        except Exception as e:
            log.error("%s failed | session_id=%s | error=%s", tool_name, self.session_id, str(e))
            raise ToolExecutionError(str(e) or f"{tool_name} failed", e) from e

    async def run_search(
        self, channel: TurnChannel, plan: SearchDocuments, history: List[BaseMessage], text: str
    ) -> None:
        self.state = "executing_tool"
        await self._say(channel, "Let me search through your documents…")
        await channel.tool(SearchDocuments.tool_name, "started", "Searching documents...")

        try:
            outcome = await self._call_tool(
                SearchDocuments.tool_name,
                self.deps.retrieval.search(self.session_id, plan.query, plan.top_k),
            )
        except ToolExecutionError as e:
            await channel.tool(SearchDocuments.tool_name, "error", e.error_message)
            self.state = "responding"
            await self._say(channel, SEARCH_APOLOGY)
            return

        await channel.tool(SearchDocuments.tool_name, "done", "Search complete")
        results_text = outcome.format_for_prompt()
        await self._persist_tool_result(
            SearchDocuments.tool_name, results_text, citations=outcome.citations()
        )

        self.state = "responding"
        recent = history[-self.deps.answer_history_window :] if self.deps.answer_history_window else []
        await self._stream_answer(
            channel,
            PROMPT_REGISTRY["search_answer"],
            {"chat_history": recent, "results": results_text, "input": text},
            citations=outcome.citations(),
        )

    async def run_list(self, channel: TurnChannel) -> None:
        self.state = "executing_tool"
        await self._say(channel, "Let me check your documents…")

        try:
            docs = await self._call_tool("list_documents", self._list_documents())
        except ToolExecutionError:
            self.state = "responding"
            await self._say(channel, LIST_APOLOGY)
            return

        listing = [
            {"id": d.id, "filename": d.filename, "status": d.status, "totalChunks": d.total_chunks}
            for d in docs
        ]
        await self._persist_tool_result("list_documents", listing)

        if docs:
            lines = []
            for i, d in enumerate(docs, start=1):
                chunks = f", {d.total_chunks} chunks" if d.total_chunks else ""
                lines.append(f"{i}. **{d.filename}** ({d.status}{chunks})")
            summary = f"You have {len(docs)} document(s):\n\n" + "\n".join(lines)
        else:
            summary = NO_DOCUMENTS_REPLY

        self.state = "responding"
        await self._say(channel, summary)

    async def _resolve_document(self, reference: str) -> Optional[Document]:
        async with self.deps.session_factory() as db:
            doc = await self.documents.get_document(db, self.session_id, reference)
            if doc is not None:
                return doc
            for candidate in await self.documents.list_documents(db, self.session_id):
                if candidate.filename == reference:
                    return candidate
        return None

    async def _delete_by_reference(self, reference: str) -> Optional[Document]:
        doc = await self._resolve_document(reference)
        if doc is None:
            return None
        return await self.deps.consistency.delete_document(doc.id, self.session_id)

    async def run_delete(self, channel: TurnChannel, plan: DeleteDocument) -> None:
        self.state = "executing_tool"
        await self._say(channel, "Let me delete that document…")

        try:
            deleted = await self._call_tool(
                DeleteDocument.tool_name, self._delete_by_reference(plan.document_id)
            )
        except ToolExecutionError:
            self.state = "responding"
            await self._say(channel, DELETE_APOLOGY)
            return

        if deleted is not None:
            result = f'Document "{deleted.filename}" has been successfully deleted.'
        else:
            result = "Document not found."
        await self._persist_tool_result(DeleteDocument.tool_name, result)

        self.state = "responding"
        await self._say(channel, result)

    async def run_chat(
        self, channel: TurnChannel, history: List[BaseMessage], text: str, documents_context: str
    ) -> None:
        self.state = "responding"
        await self._stream_answer(
            channel,
            PROMPT_REGISTRY["chat"],
            {"chat_history": history, "documents_context": documents_context, "input": text},
        )

    # ---------------------------------------------------------------
    # streaming
    # ---------------------------------------------------------------
    async def _stream_answer(self, channel: TurnChannel, prompt, inputs: dict, citations=None) -> str:
        """
        Stream the answer as delta frames. Whatever was produced is persisted,
        even when the model stream breaks or the client disconnects.
        """
        chain = prompt | self.deps.answer_llm | StrOutputParser()
        full = ""
        try:
            async for piece in chain.astream(inputs):
                if not piece:
                    continue
                full += piece
                await channel.delta(piece)
        except Exception as e:
            log.error(
                "Answer stream failed | session_id=%s | partial_chars=%d | error=%s",
                self.session_id,
                len(full),
                str(e),
            )
            if not full:
                full = STREAM_ERROR_TEXT
                await channel.delta(full)
        finally:
            await channel.done()

        await self._persist("assistant", full, citations=citations or None)
        return full
