from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from hotfixer.gitops.repository import CodeRepository
from hotfixer.telemetry.source import TelemetrySource


@dataclass(frozen=True)
class ToolRequest:
    """A single tool call requested by the reasoning engine."""

    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    call_id: str = ""

    @classmethod
    def from_call(cls, call: Dict[str, Any]) -> "ToolRequest":
        """Build from an OpenAI-compatible `tool_calls[]` entry (arguments arrive as a JSON string)."""
        fn = call.get("function") or {}
        raw = fn.get("arguments") or "{}"
        try:
            args = json.loads(raw) if isinstance(raw, str) else dict(raw)
        except (ValueError, TypeError):
            args = {}
        if not isinstance(args, dict):
            args = {}
        return cls(name=str(fn.get("name") or ""), args=args, call_id=str(call.get("id") or ""))


@dataclass(frozen=True)
class ToolContext:
    repository: Optional[CodeRepository] = None
    telemetry: Optional[TelemetrySource] = None
    max_file_chars: int = 15_000


async def _get_file_content(ctx: ToolContext, args: Dict[str, Any]) -> Any:
    if ctx.repository is None:
        return {"error": "repository not configured"}
    path = str(args.get("path") or "")
    if not path:
        return {"error": "missing argument: path"}
    content = await ctx.repository.read_file(path)
    if content is None:
        return {"error": f"file not found: {path}"}
    if len(content) > ctx.max_file_chars:
        content = content[: ctx.max_file_chars] + "\n... (truncated)"
    return {"path": path, "content": content}


async def _search_code(ctx: ToolContext, args: Dict[str, Any]) -> Any:
    if ctx.repository is None:
        return {"error": "repository not configured"}
    query = str(args.get("query") or "")
    if not query:
        return {"error": "missing argument: query"}
    max_results = int(args.get("max_results") or 10)
    return {"query": query, "results": await ctx.repository.search_code(query, max_results=max_results)}


async def _get_exception_details(ctx: ToolContext, args: Dict[str, Any]) -> Any:
    if ctx.telemetry is None:
        return {"error": "telemetry not configured"}
    exception_type = str(args.get("exception_type") or "")
    hours = int(args.get("hours") or 24)
    records = await ctx.telemetry.query(hours, 1, 50)
    samples = [r for r in records if not exception_type or r.exception_type == exception_type][:5]
    return {
        "exception_type": exception_type,
        "samples": [
            {
                "message": r.message,
                "operation_name": r.operation_name,
                "occurrence_count": r.occurrence_count,
                "problem_id": r.problem_id,
                "stack_trace": r.stack_trace[:2000],
            }
            for r in samples
        ],
    }


_Handler = Callable[[ToolContext, Dict[str, Any]], Awaitable[Any]]

_HANDLERS: Dict[str, _Handler] = {
    "get_file_content": _get_file_content,
    "search_code": _search_code,
    "get_exception_details": _get_exception_details,
}


def _fn_spec(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOL_SPECS: List[Dict[str, Any]] = [
    _fn_spec(
        "get_file_content",
        "Read a source file from the repository by its repo-relative path.",
        {"path": {"type": "string", "description": "Repo-relative file path"}},
        ["path"],
    ),
    _fn_spec(
        "search_code",
        "Search the repository for code matching a query (class names, method names, identifiers).",
        {
            "query": {"type": "string"},
            "max_results": {"type": "integer", "default": 10},
        },
        ["query"],
    ),
    _fn_spec(
        "get_exception_details",
        "Fetch recent telemetry samples for an exception type.",
        {
            "exception_type": {"type": "string"},
            "hours": {"type": "integer", "default": 24},
        },
        ["exception_type"],
    ),
]


@dataclass(frozen=True)
class ToolRegistry:
    """Static name -> handler table. Results are always JSON strings, errors included."""

    context: ToolContext

    @property
    def names(self) -> List[str]:
        return sorted(_HANDLERS)

    async def dispatch(self, request: ToolRequest) -> str:
        handler = _HANDLERS.get(request.name)
        if handler is None:
            return json.dumps({"error": f"unknown tool: {request.name}"})
        try:
            result = await handler(self.context, request.args)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Tool {request.name} failed: {e}")
            return json.dumps({"error": f"{type(e).__name__}: {e}"})
        return json.dumps(result, default=str)
