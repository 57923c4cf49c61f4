from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from loguru import logger

from hotfixer.llm.groq_client import GroqClient
from hotfixer.llm.openrouter_client import OpenRouterClient
from hotfixer.llm.tools import TOOL_SPECS, ToolRegistry, ToolRequest
from hotfixer.settings import Settings


class ReasoningEngine(Protocol):
    async def complete(self, prompt: str, allow_tools: bool = False) -> str: ...


class ChatClient(Protocol):
    async def chat_message(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: int = 2048,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]: ...


@dataclass(frozen=True)
class ChatReasoningEngine:
    """
    ReasoningEngine over an OpenAI-compatible chat client.

    With `allow_tools=True` and a registry, the model may request tool calls; each is
    dispatched through the registry and its JSON result fed back as a `tool` message.
    After `max_rounds` tool rounds one final call is made without tools so the model
    has to answer with what it has.
    """

    client: ChatClient
    model: str
    max_tokens: int = 4096
    tools: Optional[ToolRegistry] = None
    max_rounds: int = 6
    timeout_s: Optional[float] = None

    async def complete(self, prompt: str, allow_tools: bool = False) -> str:
        coro = self._complete(prompt, allow_tools=allow_tools)
        if self.timeout_s:
            return await asyncio.wait_for(coro, timeout=self.timeout_s)
        return await coro

    async def _complete(self, prompt: str, *, allow_tools: bool) -> str:
        messages: List[Dict[str, Any]] = [{"role": "user", "content": prompt}]
        use_tools = bool(allow_tools and self.tools is not None)

        for round_no in range(max(0, int(self.max_rounds)) + 1):
            offer = TOOL_SPECS if use_tools and round_no < self.max_rounds else None
            msg = await self.client.chat_message(
                model=self.model, messages=messages, max_tokens=self.max_tokens, tools=offer
            )
            calls = msg.get("tool_calls") or []
            if not calls or offer is None or self.tools is None:
                return str(msg.get("content") or "")

            messages.append(
                {"role": "assistant", "content": msg.get("content") or "", "tool_calls": calls}
            )
            for call in calls:
                req = ToolRequest.from_call(call)
                logger.debug(f"Reasoning engine requested tool {req.name} args={req.args}")
                result = await self.tools.dispatch(req)
                messages.append({"role": "tool", "tool_call_id": req.call_id, "content": result})

        return ""


@dataclass(frozen=True)
class DisabledReasoningEngine:
    """Used with agent_mode=off: every call fails, callers degrade as they would on an outage."""

    async def complete(self, prompt: str, allow_tools: bool = False) -> str:
        raise RuntimeError("agent_mode_off: reasoning engine disabled")


def build_reasoning_engine(settings: Settings, tools: Optional[ToolRegistry] = None) -> ReasoningEngine:
    mode = (settings.agent_mode or "off").lower()
    if mode == "openrouter":
        if not settings.openrouter_api_key:
            raise ValueError("HOTFIXER_OPENROUTER_API_KEY is required for agent_mode=openrouter")
        return ChatReasoningEngine(
            client=OpenRouterClient(
                api_key=settings.openrouter_api_key,
                base_url=settings.openrouter_base_url,
                timeout_s=settings.agent_timeout_s,
                site_url=settings.openrouter_site_url,
                site_name=settings.openrouter_site_name,
            ),
            model=settings.openrouter_model,
            max_tokens=settings.openrouter_max_tokens,
            tools=tools,
            max_rounds=settings.agent_max_tool_rounds,
        )
    if mode == "groq":
        if not settings.groq_api_key:
            raise ValueError("HOTFIXER_GROQ_API_KEY is required for agent_mode=groq")
        return ChatReasoningEngine(
            client=GroqClient(
                api_key=settings.groq_api_key,
                base_url=settings.groq_base_url,
                timeout_s=settings.agent_timeout_s,
            ),
            model=settings.groq_model,
            max_tokens=settings.groq_max_tokens,
            tools=tools,
            max_rounds=settings.agent_max_tool_rounds,
        )
    if mode == "off":
        return DisabledReasoningEngine()
    raise ValueError(f"unknown agent_mode: {settings.agent_mode}")
