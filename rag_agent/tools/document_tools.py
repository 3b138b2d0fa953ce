from __future__ import annotations

import json
from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from rag_agent.logger import GLOBAL_LOGGER as log

MAX_TOP_K = 10


class SearchDocuments(BaseModel):
    """Search the user's uploaded documents for passages relevant to a query."""

    tool_name: ClassVar[str] = "search_documents"
    route: ClassVar[str] = "search"

    query: str = Field(..., min_length=1, description="What to look for in the documents")
    top_k: int = Field(5, description="Number of passages to return (1-10)")

    @field_validator("top_k", mode="before")
    @classmethod
    def _clamp_top_k(cls, value: Any) -> int:
        if value is None or value == "":
            return 5
        return max(1, min(int(value), MAX_TOP_K))


class ListDocuments(BaseModel):
    """List every document uploaded in this session with its processing status."""

    tool_name: ClassVar[str] = "list_documents"
    route: ClassVar[str] = "list"


class DeleteDocument(BaseModel):
    """Delete one uploaded document and everything indexed from it."""

    tool_name: ClassVar[str] = "delete_document"
    route: ClassVar[str] = "delete"

    document_id: str = Field(..., min_length=1, description="Id (or exact filename) of the document to delete")


ToolPlan = Union[SearchDocuments, ListDocuments, DeleteDocument]

TOOL_MODELS: dict[str, type[BaseModel]] = {
    m.tool_name: m for m in (SearchDocuments, ListDocuments, DeleteDocument)
}


def _schema(model: type[BaseModel]) -> dict:
    params = model.model_json_schema()
    params.pop("title", None)
    params.pop("description", None)
    params.setdefault("properties", {})
    return {
        "type": "function",
        "function": {
            "name": model.tool_name,
            "description": (model.__doc__ or "").strip(),
            "parameters": params,
        },
    }


# OpenAI-style tool definitions for chat_model.bind_tools(...)
TOOL_SCHEMAS = [_schema(m) for m in TOOL_MODELS.values()]


def decode_tool_call(tool_calls: Optional[list]) -> Optional[ToolPlan]:
    """
    Turn the planner's first tool call into a ToolPlan. Unknown tool names and
    arguments that fail validation yield None (plain reply).
    """
    if not tool_calls:
        return None

    call = tool_calls[0]
    name = call.get("name")
    args = call.get("args") or {}

    if name not in TOOL_MODELS:
        log.warning("Planner returned unknown tool | tool=%s", name)
        return None

    if isinstance(args, str):
        try:
            args = json.loads(args) if args.strip() else {}
        except json.JSONDecodeError as e:
            log.warning("Planner arguments are not JSON | tool=%s | error=%s", name, str(e))
            args = {}

    try:
        return TOOL_MODELS[name].model_validate(args)
    except ValidationError as e:
        log.warning("Planner arguments invalid | tool=%s | errors=%s", name, e.errors())
        return None
