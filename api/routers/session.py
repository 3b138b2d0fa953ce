from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.dependencies import get_db, get_services, get_session_id
from db.chat_repository import ChatRepository
from rag_agent.logger import GLOBAL_LOGGER as log

router = APIRouter()


class SessionInfo(BaseModel):
    id: str
    created_at: str
    last_activity: str
    document_count: int
    message_count: int


@router.get("/sessions", response_model=List[SessionInfo])
async def list_sessions(session_id: str = Depends(get_session_id), db=Depends(get_db)):
    """
    The caller's own session, if it exists. Other sessions are never listed.
    """
    session = await ChatRepository().get_session(db, session_id)
    if session is None:
        return []

    return [
        SessionInfo(
            id=session.id,
            created_at=str(session.created_at),
            last_activity=str(session.last_activity),
            document_count=session.document_count,
            message_count=session.message_count,
        )
    ]


@router.delete("/sessions/{target_id}")
async def delete_session(
    target_id: str,
    session_id: str = Depends(get_session_id),
    services=Depends(get_services),
    db=Depends(get_db),
):
    # a caller may only delete its own session; anything else looks absent
    if target_id != session_id or not await ChatRepository().if_session_exists(db, session_id):
        raise HTTPException(404, "Session not found")

    removed = await services.lifecycle.cleanup_session(session_id)
    log.info("Session deleted on request | session_id=%s", session_id)
    return {"deleted": True, "documents": removed}
