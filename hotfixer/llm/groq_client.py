from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx


@dataclass(frozen=True)
class GroqClient:
    """
    Calls Groq via OpenAI-compatible API.

    Endpoint: POST {base_url}/chat/completions
    """

    api_key: str
    base_url: str = "https://api.groq.com/openai/v1"
    timeout_s: float = 60.0
    transport: httpx.AsyncBaseTransport | None = None

    async def chat(self, *, model: str, messages: List[Dict[str, Any]], max_tokens: int = 2048) -> str:
        msg = await self.chat_message(model=model, messages=messages, max_tokens=max_tokens)
        return str(msg.get("content") or "")

    async def chat_message(
        self,
        *,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: int = 2048,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": int(max(1, min(int(max_tokens), 8192))),
            "temperature": 0.1,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
            r = await client.post(url, headers=headers, json=payload)
            if r.status_code != 200:
                raise RuntimeError(f"groq_http_{r.status_code}: {r.text[:1500]}")
            data = r.json()

        # OpenAI-compatible response
        try:
            return dict(data["choices"][0]["message"])
        except Exception as e:  # noqa: BLE001
            raise RuntimeError(f"groq_response_parse_error: {data}") from e
