from __future__ import annotations

import re
from dataclasses import dataclass, field

from loguru import logger

from hotfixer.llm.engine import ReasoningEngine
from hotfixer.models import ExceptionRecord, FilterDecision
from hotfixer.settings import FilterSettings

_VERDICT_RE = re.compile(r"\b(YES|NO)\b")


@dataclass(frozen=True)
class ExceptionFilter:
    """
    Deterministic first pass over telemetry: drop infrastructure noise, flag
    exceptions that smell like an external-system problem as ambiguous.
    """

    config: FilterSettings = field(default_factory=FilterSettings)

    def classify(self, record: ExceptionRecord) -> FilterDecision:
        et = (record.exception_type or "").lower()
        msg = (record.message or "").lower()

        if any(et == t.lower() for t in self.config.excluded_types):
            return FilterDecision(is_filtered=True, reason="Excluded exception type")

        for p in self.config.excluded_patterns:
            pl = p.lower()
            if pl and (pl in et or pl in msg):
                return FilterDecision(is_filtered=True, reason=f"Matched pattern: {p}")

        for tok in self.config.ambiguous_tokens:
            tl = tok.lower()
            if tl and (tl in et or tl in msg):
                return FilterDecision(is_ambiguous=True)

        return FilterDecision()


def build_fixability_prompt(record: ExceptionRecord) -> str:
    stack = record.stack_trace or "N/A"
    if len(stack) > 500:
        stack = stack[:500]
    return (
        "You are evaluating if a production exception can be fixed by changing the application code.\n\n"
        f"Exception Type: {record.exception_type}\n"
        f"Message: {record.message}\n"
        f"Stack Trace (first 500 chars): {stack}\n"
        f"Operation: {record.operation_name}\n\n"
        "Question: Can this exception be prevented or handled better by modifying the application code?\n\n"
        "Consider:\n"
        "- If this is a transient infrastructure error (network timeout, service unavailable), the answer is usually NO\n"
        "- If the code is missing proper error handling, retry logic, or input validation, the answer is YES\n"
        "- If the exception reveals a bug in the business logic, the answer is YES\n"
        "- If the exception is caused by external systems being down, the answer is usually NO\n\n"
        "Respond with ONLY one word: YES or NO"
    )


@dataclass(frozen=True)
class FixabilityEvaluator:
    """
    Escape hatch for ambiguous exceptions: a strict YES/NO question to the reasoning engine.

    Fail-open: when the engine errors we answer True, so a real bug is never
    silently dropped because the evaluator was unavailable.
    """

    engine: ReasoningEngine

    async def evaluate(self, record: ExceptionRecord) -> bool:
        try:
            answer = await self.engine.complete(build_fixability_prompt(record), allow_tools=False)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to evaluate fixability of {record.exception_type}, defaulting to fixable: {e}")
            return True
        verdict = (answer or "").strip().upper()
        logger.debug(f"Fixability evaluation for {record.exception_type}: {verdict[:40]!r}")
        m = _VERDICT_RE.search(verdict)
        if not m:
            logger.warning(f"Unclear fixability answer for {record.exception_type}, defaulting to fixable: {verdict[:80]!r}")
            return True
        return m.group(1) == "YES"
