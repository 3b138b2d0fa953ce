from datetime import datetime
from typing import Optional

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rag_agent.logger import GLOBAL_LOGGER as log

from .models import Message, Session, utcnow


class ChatRepository:
    """
    Repository providing CRUD operations for Session + Message models.
    Every query is scoped by session id.
    """

    async def get_session(self, db: AsyncSession, session_id: str) -> Optional[Session]:
        return await db.get(Session, session_id)

    async def if_session_exists(self, db: AsyncSession, session_id: str) -> bool:
        out = await db.execute(select(Session.id).where(Session.id == session_id))
        exists = out.scalar() is not None
        log.debug("Session existence check | session_id=%s | exists=%s", session_id, exists)
        return exists

    async def get_or_create_session(self, db: AsyncSession, session_id: str) -> Session:
        """Sessions are created lazily on first contact; later calls touch last_activity."""
        s = await db.get(Session, session_id)
        now = utcnow()
        if s is None:
            s = Session(id=session_id, created_at=now, last_activity=now)
            db.add(s)
            await db.commit()
            await db.refresh(s)
            log.info("New session created | session_id=%s", session_id)
            return s

        s.last_activity = now
        await db.commit()
        return s

    async def touch_session(self, db: AsyncSession, session_id: str) -> None:
        await db.execute(
            update(Session).where(Session.id == session_id).values(last_activity=utcnow())
        )
        await db.commit()

    async def adjust_document_count(self, db: AsyncSession, session_id: str, delta: int) -> None:
        await db.execute(
            update(Session)
            .where(Session.id == session_id)
            .values(
                document_count=case(
                    (Session.document_count + delta < 0, 0),
                    else_=Session.document_count + delta,
                ),
                last_activity=utcnow(),
            )
        )
        await db.commit()

    async def add_message(
        self,
        db: AsyncSession,
        session_id: str,
        role: str,
        content: str,
        citations: Optional[list] = None,
        payload: Optional[dict] = None,
    ) -> Message:
        msg = Message(
            session_id=session_id,
            role=role,
            content=content,
            citations=citations,
            payload=payload,
            created_at=utcnow(),
        )
        db.add(msg)
        await db.execute(
            update(Session)
            .where(Session.id == session_id)
            .values(message_count=Session.message_count + 1, last_activity=utcnow())
        )
        await db.commit()
        await db.refresh(msg)

        log.info(
            "Message persisted | session_id=%s | role=%s | chars=%d",
            session_id,
            role,
            len(content),
        )
        return msg

    async def get_history(self, db: AsyncSession, session_id: str, limit: int) -> list[Message]:
        """
        Latest `limit` messages of a session in chronological order.
        """
        out = await db.execute(
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.id.desc())
            .limit(limit)
        )
        # restore chronological order
        rows = list(reversed(out.scalars().all()))
        log.debug("Loaded recent history | session_id=%s | count=%d", session_id, len(rows))
        return rows

    async def clear_messages(self, db: AsyncSession, session_id: str) -> int:
        result = await db.execute(delete(Message).where(Message.session_id == session_id))
        await db.execute(
            update(Session)
            .where(Session.id == session_id)
            .values(message_count=0, last_activity=utcnow())
        )
        await db.commit()
        log.info("Conversation cleared | session_id=%s | removed=%d", session_id, result.rowcount)
        return result.rowcount

    async def expired_session_ids(self, db: AsyncSession, cutoff: datetime) -> list[str]:
        q = await db.execute(select(Session.id).where(Session.last_activity < cutoff))
        return list(q.scalars().all())

    async def delete_session(self, db: AsyncSession, session_id: str) -> None:
        """Drop messages and the session row. Documents are removed by the caller first."""
        await db.execute(delete(Message).where(Message.session_id == session_id))
        await db.execute(delete(Session).where(Session.id == session_id))
        await db.commit()
        log.info("Session deleted | session_id=%s", session_id)
