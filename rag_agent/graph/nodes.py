"""
Each node is a small async function returning a partial state update.
The work itself lives on the SessionOrchestrator carried in the state.
"""

from rag_agent.logger import GLOBAL_LOGGER as log


# Appends the current step into existing steps in the state
def _append_step(state, step):
    steps = state.get("steps", [])
    return steps + [step]


async def planner_node(state):
    """
    Planner decides which capability handles the turn:
    - search_documents / list_documents / delete_document
    - or none, in which case the turn is answered conversationally
    """
    orchestrator = state["orchestrator"]

    plan = await orchestrator.plan(
        state.get("chat_history", []), state["input"], state["documents_context"]
    )
    route = plan.route if plan is not None else "chat"

    log.info("Planner node decision | session_id=%s | route=%s", orchestrator.session_id, route)
    return {"plan": plan, "route": route, "steps": _append_step(state, "planner")}


async def search_node(state):
    orchestrator = state["orchestrator"]
    await orchestrator.run_search(
        state["channel"], state["plan"], state.get("chat_history", []), state["input"]
    )
    return {"steps": _append_step(state, "search")}


async def list_node(state):
    orchestrator = state["orchestrator"]
    await orchestrator.run_list(state["channel"])
    return {"steps": _append_step(state, "list")}


async def delete_node(state):
    orchestrator = state["orchestrator"]
    await orchestrator.run_delete(state["channel"], state["plan"])
    return {"steps": _append_step(state, "delete")}


async def chat_node(state):
    orchestrator = state["orchestrator"]
    await orchestrator.run_chat(
        state["channel"],
        state.get("chat_history", []),
        state["input"],
        state["documents_context"],
    )
    return {"steps": _append_step(state, "chat")}
