from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx


@dataclass(frozen=True)
class OpenRouterClient:
    """
    Calls OpenRouter via OpenAI-compatible API.

    Endpoint: POST {base_url}/chat/completions
    Docs: https://openrouter.ai/docs
    """

    api_key: str
    base_url: str = "https://openrouter.ai/api/v1"
    timeout_s: float = 60.0
    site_url: str | None = None
    site_name: str | None = None
    max_retries: int = 3
    retry_backoff_s: float = 0.8
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
        """Return the raw assistant message (content and, when tools were offered, tool_calls)."""
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        headers: Dict[str, str] = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        # Optional ranking headers
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.site_name:
            headers["X-Title"] = self.site_name

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            # OpenRouter may otherwise assume an extremely high max_tokens and fail with 402.
            "max_tokens": int(max(1, min(int(max_tokens), 8192))),
            "temperature": 0.1,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        last_err: Exception | None = None
        for attempt in range(1, max(1, int(self.max_retries)) + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                    r = await client.post(url, headers=headers, json=payload)
                    if r.status_code != 200:
                        raise RuntimeError(f"openrouter_http_{r.status_code}: {r.text[:1500]}")
                    data = r.json()
                try:
                    return dict(data["choices"][0]["message"])
                except Exception as e:  # noqa: BLE001
                    raise RuntimeError(f"openrouter_response_parse_error: {data}") from e
            except (
                httpx.ReadError,
                httpx.RemoteProtocolError,
                httpx.ProtocolError,
                httpx.ConnectError,
                httpx.TimeoutException,
            ) as e:
                last_err = e
                # Transient network/proxy issues are common (ex: "incomplete chunked read").
                if attempt < int(self.max_retries):
                    await asyncio.sleep(self.retry_backoff_s * (2 ** (attempt - 1)))
                    continue
                raise RuntimeError(f"openrouter_transient_error after {attempt} attempts: {e}") from e

        raise RuntimeError(f"openrouter_failed: {last_err}")
