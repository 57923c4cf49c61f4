from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ExceptionRecord(BaseModel):
    """
    One observed exception group, as returned by the telemetry source.
    Constructed once per query row and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    exception_type: str = Field(..., alias="type", description="Dotted classifier, e.g. System.NullReferenceException.")
    message: str = ""
    stack_trace: str = ""
    operation_name: str = ""
    occurrence_count: int = Field(default=0, ge=0)

    problem_id: Optional[str] = Field(default=None, description="Stable fingerprint used as the primary dedup key.")
    source_file: Optional[str] = Field(default=None, description="Normalized repo-relative path.")
    line_number: Optional[int] = None
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    # Only used to build a deep link back to the telemetry record.
    item_id: Optional[str] = None
    item_timestamp: Optional[str] = None

    @field_validator("exception_type")
    @classmethod
    def _type_not_empty(cls, v: str) -> str:
        if not (v or "").strip():
            raise ValueError("exception_type must be non-empty")
        return v

    @property
    def severity(self) -> str:
        if self.occurrence_count > 100:
            return "Critical"
        if self.occurrence_count > 50:
            return "High"
        if self.occurrence_count > 10:
            return "Medium"
        return "Low"

    @property
    def short_type(self) -> str:
        return self.exception_type.split(".")[-1]

    @property
    def dedup_key(self) -> str:
        return self.problem_id or self.exception_type


class FilterDecision(BaseModel):
    is_filtered: bool = False
    is_ambiguous: bool = False
    reason: Optional[str] = None


class FixAction(str, Enum):
    fix = "fix"
    no_fix_needed = "no_fix_needed"
    error = "error"


class Fix(BaseModel):
    file_path: str = ""
    original_code: str = ""
    fixed_code: str = ""
    explanation: str = ""
    confidence: str = "Medium"


class FixProposal(BaseModel):
    """
    Reasoning-engine verdict for a single exception.

    `action == fix` always carries a Fix with non-empty fixed_code; the parser
    downgrades anything else to `error`.
    """

    action: FixAction
    root_cause: Optional[str] = None
    severity: str = "Medium"
    fix: Optional[Fix] = None
    tools_used: List[str] = Field(default_factory=list)

    @classmethod
    def failed(cls, reason: str) -> "FixProposal":
        return cls(action=FixAction.error, root_cause=reason)


class ApplyMethod(str, Enum):
    exact = "exact"
    line_fallback = "line-fallback"
    none = "none"


class ApplyResult(BaseModel):
    new_content: str
    applied: bool
    method: ApplyMethod = ApplyMethod.none


class OpenChange(BaseModel):
    """An open pull request as seen by the existing-change check."""

    number: int
    title: str = ""
    body: str = ""
    url: str
    branch_name: str = ""


class PullRequestResult(BaseModel):
    mode: Literal["mock", "real"]
    pr_number: int
    pr_title: str
    pr_url: str
    branch_name: str


class OutcomeKind(str, Enum):
    fixed = "fixed"
    proposed = "proposed"
    skipped_filtered = "skipped_filtered"
    skipped_cooldown = "skipped_cooldown"
    skipped_existing_change = "skipped_existing_change"
    no_fix_needed = "no_fix_needed"
    error = "error"


class RemediationOutcome(BaseModel):
    kind: OutcomeKind
    exception_type: str
    problem_id: Optional[str] = None
    change_url: Optional[str] = None
    reason: Optional[str] = None
    fix: Optional[Fix] = None

    @classmethod
    def fixed(cls, record: ExceptionRecord, change_url: str, fix: Fix) -> "RemediationOutcome":
        return cls(kind=OutcomeKind.fixed, change_url=change_url, fix=fix, **_ids(record))

    @classmethod
    def proposed(cls, record: ExceptionRecord, fix: Fix) -> "RemediationOutcome":
        return cls(kind=OutcomeKind.proposed, fix=fix, **_ids(record))

    @classmethod
    def skipped_filtered(cls, record: ExceptionRecord, reason: str) -> "RemediationOutcome":
        return cls(kind=OutcomeKind.skipped_filtered, reason=reason, **_ids(record))

    @classmethod
    def skipped_cooldown(cls, record: ExceptionRecord) -> "RemediationOutcome":
        return cls(kind=OutcomeKind.skipped_cooldown, **_ids(record))

    @classmethod
    def skipped_existing_change(cls, record: ExceptionRecord, change_url: str) -> "RemediationOutcome":
        return cls(kind=OutcomeKind.skipped_existing_change, change_url=change_url, **_ids(record))

    @classmethod
    def no_fix_needed(cls, record: ExceptionRecord, root_cause: str | None) -> "RemediationOutcome":
        return cls(kind=OutcomeKind.no_fix_needed, reason=root_cause, **_ids(record))

    @classmethod
    def error(cls, record: ExceptionRecord, reason: str) -> "RemediationOutcome":
        return cls(kind=OutcomeKind.error, reason=reason, **_ids(record))


def _ids(record: ExceptionRecord) -> Dict[str, Optional[str]]:
    return {"exception_type": record.exception_type, "problem_id": record.problem_id}


class RemediationReport(BaseModel):
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    lookback_hours: int = 24
    exceptions: List[ExceptionRecord] = Field(default_factory=list)
    outcomes: List[RemediationOutcome] = Field(default_factory=list)
    summary: str = ""
    # Set when the run-scoped cancel signal stopped processing early.
    cancelled: bool = False

    @property
    def counts(self) -> Dict[OutcomeKind, int]:
        out = {k: 0 for k in OutcomeKind}
        for o in self.outcomes:
            out[o.kind] += 1
        return out

    @property
    def change_urls(self) -> List[str]:
        return [o.change_url for o in self.outcomes if o.kind == OutcomeKind.fixed and o.change_url]

    @property
    def proposed_fixes(self) -> List[Fix]:
        return [o.fix for o in self.outcomes if o.fix is not None]

    @property
    def critical_exceptions(self) -> int:
        return sum(1 for e in self.exceptions if e.severity == "Critical")


class AnalysisRequest(BaseModel):
    hours_to_analyze: int = Field(default=24, ge=1, le=168)
    min_occurrences: int = Field(default=5, ge=1)
    max_exceptions: int = Field(default=10, ge=1, le=100)
    create_pull_request: bool = False
    # Only analyze the most recent exception (ignores max_exceptions).
    latest_only: bool = False
    # Let the reasoning engine call tools when the pre-fetched context is insufficient.
    hybrid: bool = False

    @classmethod
    def quick_scan(cls) -> "AnalysisRequest":
        return cls(hours_to_analyze=6, min_occurrences=10, max_exceptions=5)

    @classmethod
    def full_analysis(cls) -> "AnalysisRequest":
        return cls(hours_to_analyze=24, min_occurrences=5, max_exceptions=20)

    @classmethod
    def latest(cls) -> "AnalysisRequest":
        return cls(hours_to_analyze=1, min_occurrences=1, max_exceptions=1, latest_only=True, create_pull_request=True)
