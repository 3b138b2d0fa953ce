from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.chat_repository import ChatRepository
from db.models import Session, as_utc, utcnow
from rag_agent.logger import GLOBAL_LOGGER as log
from rag_agent.src.document_store.consistency import ConsistencyLayer


class SessionLifecycle:
    """
    Lazy session creation, activity tracking and the 24h expiry cascade
    (blobs, vectors, segments, documents, messages, session row).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        consistency: ConsistencyLayer,
        expiry: timedelta = timedelta(hours=24),
    ):
        self.session_factory = session_factory
        self.consistency = consistency
        self.expiry = expiry
        self.chats = ChatRepository()
        self._expire_hooks: List[Callable[[str], None]] = []

    def on_expire(self, hook: Callable[[str], None]) -> None:
        self._expire_hooks.append(hook)

    def is_expired(self, session: Session) -> bool:
        return utcnow() - as_utc(session.last_activity) > self.expiry

    async def open(self, session_id: str) -> Session:
        """Get or create the session, wiping it first when it has expired."""
        async with self.session_factory() as db:
            existing = await self.chats.get_session(db, session_id)

        if existing is not None and self.is_expired(existing):
            log.info("Session expired, cleaning up before reuse | session_id=%s", session_id)
            await self.cleanup_session(session_id)

        async with self.session_factory() as db:
            return await self.chats.get_or_create_session(db, session_id)

    async def touch(self, session_id: str) -> None:
        async with self.session_factory() as db:
            await self.chats.touch_session(db, session_id)

    async def cleanup_session(self, session_id: str) -> int:
        removed = await self.consistency.delete_session(session_id)
        async with self.session_factory() as db:
            await self.chats.delete_session(db, session_id)

        for hook in self._expire_hooks:
            hook(session_id)

        log.info("Session cleaned up | session_id=%s | documents=%d", session_id, removed)
        return removed

    async def sweep(self) -> int:
        cutoff = utcnow() - self.expiry
        async with self.session_factory() as db:
            expired = await self.chats.expired_session_ids(db, cutoff)

        for session_id in expired:
            await self.cleanup_session(session_id)

        if expired:
            log.info("Expired sessions swept | count=%d", len(expired))
        return len(expired)

    async def run_sweeper(self, interval_seconds: float, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception:
                log.exception("Session sweep failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
