from langgraph.graph import END, StateGraph

from rag_agent.graph.nodes import (
    chat_node,
    delete_node,
    list_node,
    planner_node,
    search_node,
)
from rag_agent.graph.state import TurnState


def build_graph():
    graph = StateGraph(TurnState)

    graph.add_node("planner", planner_node)
    graph.add_node("search", search_node)
    graph.add_node("list", list_node)
    graph.add_node("delete", delete_node)
    graph.add_node("chat", chat_node)

    # every turn starts at the planner
    graph.set_entry_point("planner")

    # conditional routing, one capability per turn
    graph.add_conditional_edges(
        "planner",
        lambda state: state["route"],
        {
            "search": "search",
            "list": "list",
            "delete": "delete",
            "chat": "chat",
        },
    )

    graph.add_edge("search", END)
    graph.add_edge("list", END)
    graph.add_edge("delete", END)
    graph.add_edge("chat", END)

    return graph.compile()
