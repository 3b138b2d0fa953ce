# orchestrator/orchestrator_manager.py
from __future__ import annotations

from cachetools import TTLCache

from rag_agent.graph.orchestrator import OrchestratorDeps, SessionOrchestrator
from rag_agent.logger import GLOBAL_LOGGER as log


class OrchestratorManager:
    """
    Keeps a per-session cache of SessionOrchestrator actors.

    Each SessionOrchestrator:
      - owns the lock that serializes turns of its session
      - shares the row store, vector index and LLM bindings through deps

    Orchestrators held by a live connection are pinned outside the TTL cache,
    so one session never has two actors at the same time.
    """

    def __init__(self, deps: OrchestratorDeps, maxsize: int = 500, ttl: int = 3600):
        self.deps = deps
        self.cache = TTLCache(maxsize=maxsize, ttl=ttl)
        self.pinned: dict[str, SessionOrchestrator] = {}
        self.refs: dict[str, int] = {}

    def get_orchestrator(self, session_id: str) -> SessionOrchestrator:
        """
        Get or lazily create the orchestrator for a given session.
        """
        orchestrator = self.pinned.get(session_id) or self.cache.get(session_id)
        if orchestrator is None:
            log.info("Creating new SessionOrchestrator | session_id=%s", session_id)
            orchestrator = SessionOrchestrator(session_id, self.deps)
        else:
            log.debug("Reusing cached SessionOrchestrator | session_id=%s", session_id)

        # re-inserting refreshes the TTL for active sessions
        self.cache[session_id] = orchestrator
        return orchestrator

    def acquire(self, session_id: str) -> SessionOrchestrator:
        """Pin the session's orchestrator for the lifetime of a connection."""
        orchestrator = self.get_orchestrator(session_id)
        self.pinned[session_id] = orchestrator
        self.refs[session_id] = self.refs.get(session_id, 0) + 1
        return orchestrator

    def release(self, session_id: str) -> None:
        remaining = self.refs.get(session_id, 0) - 1
        if remaining > 0:
            self.refs[session_id] = remaining
            return

        self.refs.pop(session_id, None)
        orchestrator = self.pinned.pop(session_id, None)
        if orchestrator is not None:
            self.cache[session_id] = orchestrator

    def evict(self, session_id: str) -> None:
        if self.cache.pop(session_id, None) is not None:
            log.info("SessionOrchestrator evicted | session_id=%s", session_id)
