from typing import Any, Awaitable, Callable, List, Literal, Optional, TypedDict


class TurnState(TypedDict):
    orchestrator: Any
    channel: Any
    input: str
    chat_history: List[Any]
    documents_context: str
    plan: Optional[Any]
    route: Literal["search", "list", "delete", "chat"]
    steps: List[str]


Sender = Callable[[dict], Awaitable[None]]
