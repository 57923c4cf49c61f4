from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from hotfixer.llm.engine import ChatReasoningEngine, DisabledReasoningEngine, build_reasoning_engine
from hotfixer.llm.groq_client import GroqClient
from hotfixer.llm.openrouter_client import OpenRouterClient
from hotfixer.llm.tools import TOOL_SPECS, ToolContext, ToolRegistry, ToolRequest
from hotfixer.models import ExceptionRecord
from hotfixer.settings import Settings
from hotfixer.testing.fakes import InMemoryRepository, StaticTelemetrySource


class _FakeChat:
    """Returns scripted assistant messages and records what it was sent."""

    def __init__(self, messages: List[Dict[str, Any]], delay_s: float = 0.0) -> None:
        self._messages = list(messages)
        self.calls: List[Dict[str, Any]] = []
        self.delay_s = delay_s

    async def chat_message(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: int = 2048,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        self.calls.append({"messages": list(messages), "tools": tools})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        return self._messages.pop(0)


def _tool_call(name: str, args: Dict[str, Any], call_id: str = "call_1") -> Dict[str, Any]:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(args)}}


def _registry() -> ToolRegistry:
    repo = InMemoryRepository(files={"Api/Services/OrderService.cs": "class OrderService { }"})
    telemetry = StaticTelemetrySource(
        records=[
            ExceptionRecord(exception_type="System.NullReferenceException", message="boom", occurrence_count=9),
            ExceptionRecord(exception_type="System.FormatException", message="bad", occurrence_count=3),
        ]
    )
    return ToolRegistry(ToolContext(repository=repo, telemetry=telemetry, max_file_chars=10))


# ---- tools ----


def test_tool_request_from_call_parses_json_arguments() -> None:
    req = ToolRequest.from_call(_tool_call("get_file_content", {"path": "a.cs"}, "c9"))
    assert req == ToolRequest(name="get_file_content", args={"path": "a.cs"}, call_id="c9")

    broken = ToolRequest.from_call({"id": "x", "function": {"name": "search_code", "arguments": "{not json"}})
    assert broken.args == {}


def test_tool_specs_cover_registry() -> None:
    names = [s["function"]["name"] for s in TOOL_SPECS]
    assert sorted(names) == _registry().names


@pytest.mark.asyncio
async def test_get_file_content_truncates() -> None:
    out = json.loads(await _registry().dispatch(ToolRequest("get_file_content", {"path": "Api/Services/OrderService.cs"})))
    assert out["content"] == "class Orde\n... (truncated)"

    missing = json.loads(await _registry().dispatch(ToolRequest("get_file_content", {"path": "nope.cs"})))
    assert missing == {"error": "file not found: nope.cs"}


@pytest.mark.asyncio
async def test_search_code_and_exception_details() -> None:
    reg = _registry()
    hits = json.loads(await reg.dispatch(ToolRequest("search_code", {"query": "OrderService"})))
    assert hits["results"][0]["path"] == "Api/Services/OrderService.cs"

    details = json.loads(
        await reg.dispatch(ToolRequest("get_exception_details", {"exception_type": "System.FormatException"}))
    )
    assert [s["message"] for s in details["samples"]] == ["bad"]


@pytest.mark.asyncio
async def test_unknown_tool_and_missing_context() -> None:
    out = json.loads(await _registry().dispatch(ToolRequest("rm_rf", {})))
    assert out == {"error": "unknown tool: rm_rf"}

    empty = ToolRegistry(ToolContext())
    assert "error" in json.loads(await empty.dispatch(ToolRequest("search_code", {"query": "x"})))


@pytest.mark.asyncio
async def test_handler_exception_becomes_error_result() -> None:
    reg = ToolRegistry(ToolContext(repository=InMemoryRepository()))
    out = json.loads(await reg.dispatch(ToolRequest("search_code", {"query": "x", "max_results": "many"})))
    assert out["error"].startswith("ValueError")


# ---- engine ----


@pytest.mark.asyncio
async def test_engine_without_tools_returns_content() -> None:
    chat = _FakeChat([{"content": "final answer"}])
    engine = ChatReasoningEngine(client=chat, model="m", tools=_registry())
    assert await engine.complete("prompt") == "final answer"
    assert chat.calls[0]["tools"] is None
    assert chat.calls[0]["messages"] == [{"role": "user", "content": "prompt"}]


@pytest.mark.asyncio
async def test_engine_tool_loop_feeds_results_back() -> None:
    chat = _FakeChat(
        [
            {"content": "", "tool_calls": [_tool_call("search_code", {"query": "OrderService"})]},
            {"content": '{"action": "no_fix_needed"}'},
        ]
    )
    engine = ChatReasoningEngine(client=chat, model="m", tools=_registry())
    out = await engine.complete("prompt", allow_tools=True)
    assert out == '{"action": "no_fix_needed"}'

    assert chat.calls[0]["tools"] == TOOL_SPECS
    second = chat.calls[1]["messages"]
    assert second[1]["role"] == "assistant"
    assert second[2]["role"] == "tool"
    assert second[2]["tool_call_id"] == "call_1"
    assert json.loads(second[2]["content"])["results"][0]["name"] == "OrderService.cs"


@pytest.mark.asyncio
async def test_engine_final_round_is_offered_no_tools() -> None:
    loop_call = {"content": "", "tool_calls": [_tool_call("search_code", {"query": "x"})]}
    chat = _FakeChat([loop_call, loop_call, {"content": "done"}])
    engine = ChatReasoningEngine(client=chat, model="m", tools=_registry(), max_rounds=2)
    assert await engine.complete("p", allow_tools=True) == "done"
    assert [c["tools"] is None for c in chat.calls] == [False, False, True]


@pytest.mark.asyncio
async def test_engine_timeout() -> None:
    chat = _FakeChat([{"content": "late"}], delay_s=0.5)
    engine = ChatReasoningEngine(client=chat, model="m", timeout_s=0.01)
    with pytest.raises(asyncio.TimeoutError):
        await engine.complete("p")


@pytest.mark.asyncio
async def test_disabled_engine_raises() -> None:
    with pytest.raises(RuntimeError, match="agent_mode_off"):
        await DisabledReasoningEngine().complete("p")


def test_build_reasoning_engine_modes() -> None:
    engine = build_reasoning_engine(Settings(agent_mode="openrouter", openrouter_api_key="k"))
    assert isinstance(engine, ChatReasoningEngine)
    assert isinstance(engine.client, OpenRouterClient)

    groq = build_reasoning_engine(Settings(agent_mode="GROQ", groq_api_key="g"))
    assert isinstance(groq.client, GroqClient)

    assert isinstance(build_reasoning_engine(Settings(agent_mode="off")), DisabledReasoningEngine)


def test_build_reasoning_engine_requires_key_and_known_mode() -> None:
    with pytest.raises(ValueError, match="OPENROUTER_API_KEY"):
        build_reasoning_engine(Settings(agent_mode="openrouter", openrouter_api_key=None))
    with pytest.raises(ValueError, match="unknown agent_mode"):
        build_reasoning_engine(Settings(agent_mode="claude"))
