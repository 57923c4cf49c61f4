from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from hotfixer.models import Fix, FixAction, FixProposal


@dataclass(frozen=True)
class ParseResult:
    """Either a proposal or the reason the response could not be turned into one."""

    proposal: Optional[FixProposal] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.proposal is not None

    @classmethod
    def success(cls, proposal: FixProposal) -> "ParseResult":
        return cls(proposal=proposal)

    @classmethod
    def failure(cls, error: str) -> "ParseResult":
        return cls(error=error)

    def to_proposal(self) -> FixProposal:
        return self.proposal if self.proposal is not None else FixProposal.failed(self.error or "Failed to parse response")


def extract_json(text: str) -> Optional[str]:
    """
    First ```json fenced block, else the span from the first '{' to the last '}'.
    None when the text has neither.
    """
    content = text or ""
    start = content.lower().find("```json")
    if start >= 0:
        nl = content.find("\n", start)
        if nl >= 0:
            end = content.find("```", nl + 1)
            if end > nl + 1:
                return content[nl + 1 : end].strip()

    first = content.find("{")
    last = content.rfind("}")
    if first >= 0 and last > first:
        return content[first : last + 1]
    return None


def _pick(d: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return None


def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    return v if isinstance(v, str) else str(v)


def _str_list(v: Any) -> List[str]:
    if isinstance(v, list):
        return [str(x) for x in v if x is not None and str(x).strip()]
    if isinstance(v, str) and v.strip():
        return [v]
    return []


def _parse_fix(raw: Dict[str, Any]) -> Fix:
    return Fix(
        file_path=_opt_str(_pick(raw, "filePath", "file_path", "path")) or "",
        original_code=_opt_str(_pick(raw, "originalCode", "original_code")) or "",
        fixed_code=_opt_str(_pick(raw, "fixedCode", "fixed_code")) or "",
        explanation=_opt_str(_pick(raw, "explanation")) or "",
        confidence=_opt_str(_pick(raw, "confidence")) or "Medium",
    )


def parse_fix_response(text: str) -> ParseResult:
    """
    Turn free-form reasoning-engine output into a FixProposal.

    Tolerates missing fields and either camelCase or snake_case keys. A missing
    `action` means "fix"; a fix without fixedCode is a failure, never a proposal.
    """
    if not (text or "").strip():
        return ParseResult.failure("Empty response")

    raw_json = extract_json(text)
    if raw_json is None:
        return ParseResult.failure("No JSON object found in response")
    try:
        root = json.loads(raw_json)
    except ValueError as e:
        return ParseResult.failure(f"Failed to parse response: {e}")
    if not isinstance(root, dict):
        return ParseResult.failure("Response JSON is not an object")

    action = (_opt_str(root.get("action")) or "fix").strip().lower()
    root_cause = _opt_str(_pick(root, "rootCause", "root_cause"))
    severity = _opt_str(root.get("severity")) or "Medium"
    tools_used = _str_list(_pick(root, "toolsUsed", "tools_used"))

    if action == FixAction.no_fix_needed.value:
        return ParseResult.success(
            FixProposal(
                action=FixAction.no_fix_needed,
                root_cause=root_cause,
                severity=severity,
                tools_used=tools_used,
            )
        )
    if action == FixAction.error.value:
        return ParseResult.failure(root_cause or "Reasoning engine reported an error")

    raw_fix = root.get("fix")
    if not isinstance(raw_fix, dict):
        return ParseResult.failure("No fix provided")
    fix = _parse_fix(raw_fix)
    if not fix.fixed_code.strip():
        return ParseResult.failure("Fix is missing fixedCode")

    return ParseResult.success(
        FixProposal(
            action=FixAction.fix,
            root_cause=root_cause,
            severity=severity,
            fix=fix,
            tools_used=tools_used,
        )
    )
