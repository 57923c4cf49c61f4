from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from hotfixer.code_engine.context import build_context
from hotfixer.code_engine.prompts import build_direct_prompt, build_hybrid_prompt
from hotfixer.code_engine.response import parse_fix_response
from hotfixer.llm.engine import ReasoningEngine
from hotfixer.models import ExceptionRecord, FixProposal


@dataclass(frozen=True)
class FixProposer:
    """
    One reasoning-engine round trip per exception. Never raises: engine and parse
    failures come back as FixProposal(action=error).
    """

    engine: ReasoningEngine

    async def propose(
        self,
        record: ExceptionRecord,
        pre_fetched_source: Optional[str] = None,
        allow_tool_use: bool = False,
    ) -> FixProposal:
        context = build_context(record, pre_fetched_source, hybrid=allow_tool_use)
        prompt = build_hybrid_prompt(context) if allow_tool_use else build_direct_prompt(context)

        try:
            text = await self.engine.complete(prompt, allow_tools=allow_tool_use)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Reasoning engine failed for {record.exception_type}: {e}")
            return FixProposal.failed(str(e) or type(e).__name__)

        preview = text if len(text) <= 200 else text[:200] + "..."
        logger.debug(f"Analysis response for {record.exception_type}: {preview}")

        result = parse_fix_response(text)
        if not result.ok:
            logger.warning(f"Could not parse fix proposal for {record.exception_type}: {result.error}")
        return result.to_proposal()
