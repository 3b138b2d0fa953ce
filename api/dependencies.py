from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rag_agent.src.services import AppServices

DEFAULT_SESSION_ID = "default"


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_session_id(x_session_id: str | None = Header(None)) -> str:
    """Session id from the x-session-id header; clients without one share 'default'."""
    return (x_session_id or "").strip() or DEFAULT_SESSION_ID


async def get_db(
    services: AppServices = Depends(get_services),
) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that yields an AsyncSession per request,
    and ensures proper cleanup.
    """
    db = services.session_factory()
    try:
        yield db
    finally:
        await db.close()
