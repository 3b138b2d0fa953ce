import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.dependencies import DEFAULT_SESSION_ID
from rag_agent.logger import GLOBAL_LOGGER as log

router = APIRouter()


def _session_id_for(websocket: WebSocket) -> str:
    raw = websocket.headers.get("x-session-id") or websocket.query_params.get("session_id") or ""
    return raw.strip() or DEFAULT_SESSION_ID


@router.websocket("/agent")
async def agent_socket(websocket: WebSocket):
    """
    Conversational channel, one connection per session.

    Inbound frames:  {type: "chat", text} | {type: "reset"}
    Outbound frames: ready, delta, done, tool, cleared, error
    """
    services = websocket.app.state.services
    session_id = _session_id_for(websocket)

    await websocket.accept()
    await services.lifecycle.open(session_id)
    orchestrator = services.orchestrators.acquire(session_id)

    try:
        await websocket.send_json({"type": "ready", "state": await orchestrator.ready_state()})
        log.info("Agent socket connected | session_id=%s", session_id)

        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "error": "Invalid JSON"})
                continue

            kind = frame.get("type") if isinstance(frame, dict) else None
            if kind == "chat":
                text = str(frame.get("text") or "").strip()
                if not text:
                    await websocket.send_json({"type": "error", "error": "Message text is required"})
                    continue
                await services.lifecycle.touch(session_id)
                await orchestrator.handle_turn(text, websocket.send_json)
            elif kind == "reset":
                await orchestrator.reset(websocket.send_json)
            else:
                await websocket.send_json({"type": "error", "error": f"Unknown message type: {kind}"})

    except WebSocketDisconnect:
        log.info("Agent socket disconnected | session_id=%s", session_id)
    finally:
        services.orchestrators.release(session_id)
