from fastapi import APIRouter, Depends

from api.dependencies import get_db, get_session_id
from db.chat_repository import ChatRepository

router = APIRouter()


@router.get("/messages")
async def get_messages(
    limit: int = 1000, session_id: str = Depends(get_session_id), db=Depends(get_db)
):
    messages = await ChatRepository().get_history(db, session_id, limit=limit)

    return {
        "success": True,
        "sessionId": session_id,
        "messages": [
            {
                "role": m.role,
                "content": m.content,
                "citations": m.citations,
                "createdAt": m.created_at.isoformat(),
            }
            for m in messages
        ],
    }
