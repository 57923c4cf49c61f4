from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from loguru import logger

from hotfixer.classifier.rules import ExceptionFilter, FixabilityEvaluator
from hotfixer.code_engine.applier import PatchApplier
from hotfixer.code_engine.context import truncate_source
from hotfixer.code_engine.proposer import FixProposer
from hotfixer.gitops.publisher import RemediationPublisher
from hotfixer.gitops.repository import CodeRepository
from hotfixer.memory.store import CooldownStore
from hotfixer.models import (
    AnalysisRequest,
    ExceptionRecord,
    FixAction,
    OutcomeKind,
    RemediationOutcome,
    RemediationReport,
)
from hotfixer.parsers.stacktrace import normalize_source_path
from hotfixer.telemetry.audit import AuditLogger
from hotfixer.telemetry.source import TelemetrySource

T = TypeVar("T")


class RunCancelled(Exception):
    """Raised internally when the run-scoped cancel event fires mid-await."""


async def _race(aw: Awaitable[T], cancel_event: Optional[asyncio.Event]) -> T:
    if cancel_event is None:
        return await aw
    if cancel_event.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise RunCancelled()
    task = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if task in done:
        return task.result()
    try:
        await task
    except asyncio.CancelledError:
        pass
    raise RunCancelled()


def build_summary(report: RemediationReport) -> str:
    c = report.counts
    parts = [f"Analyzed {len(report.exceptions)} exceptions"]
    if c[OutcomeKind.fixed]:
        parts.append(f"{c[OutcomeKind.fixed]} changes published")
    if c[OutcomeKind.proposed]:
        parts.append(f"{c[OutcomeKind.proposed]} fixes proposed (not published)")
    if c[OutcomeKind.no_fix_needed]:
        parts.append(f"{c[OutcomeKind.no_fix_needed]} input validation errors (no fix needed)")
    if c[OutcomeKind.skipped_existing_change]:
        parts.append(f"{c[OutcomeKind.skipped_existing_change]} already have open changes")
    if c[OutcomeKind.skipped_cooldown]:
        parts.append(f"{c[OutcomeKind.skipped_cooldown]} recently analyzed")
    if c[OutcomeKind.skipped_filtered]:
        parts.append(f"{c[OutcomeKind.skipped_filtered]} filtered as infrastructure noise")
    if c[OutcomeKind.error]:
        parts.append(f"{c[OutcomeKind.error]} errors")
    summary = ", ".join(parts)
    if report.cancelled:
        summary += " (cancelled)"
    return summary


@dataclass(frozen=True)
class RemediationOrchestrator:
    """
    Per-exception pipeline:
      filter -> ambiguous evaluation -> cooldown -> existing change -> propose -> patch -> publish.

    Records are processed sequentially in query order; one record's failure becomes an
    `error` outcome and never aborts its siblings.
    """

    telemetry: TelemetrySource
    repository: CodeRepository
    proposer: FixProposer
    publisher: RemediationPublisher
    cooldown: CooldownStore
    exception_filter: ExceptionFilter = field(default_factory=ExceptionFilter)
    applier: PatchApplier = field(default_factory=PatchApplier)
    evaluator: Optional[FixabilityEvaluator] = None
    audit: Optional[AuditLogger] = None
    cooldown_ttl: timedelta = timedelta(hours=24)
    max_source_chars: int = 15_000
    prefetch_concurrency: int = 10

    def _audit(self, correlation_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        if self.audit is None:
            return
        try:
            self.audit.write(correlation_id, event_type, payload)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to write audit event {event_type}: {e}")

    async def _fetch(self, path: str) -> Optional[str]:
        try:
            return await self.repository.read_file(path)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to fetch source file {path}: {e}")
            return None

    async def prefetch_sources(self, records: List[ExceptionRecord]) -> Dict[str, Optional[str]]:
        """Fetch each distinct source file once, with bounded concurrency. Cache lives for one run."""
        paths = sorted({normalize_source_path(r.source_file) for r in records if r.source_file})
        if not paths:
            return {}
        sem = asyncio.Semaphore(max(1, int(self.prefetch_concurrency)))

        async def _one(path: str) -> Optional[str]:
            async with sem:
                return await self._fetch(path)

        results = await asyncio.gather(*(_one(p) for p in paths))
        logger.info(f"Pre-fetched {sum(1 for r in results if r is not None)}/{len(paths)} source files")
        return dict(zip(paths, results))

    async def run(self, request: AnalysisRequest, cancel_event: Optional[asyncio.Event] = None) -> RemediationReport:
        correlation_id = self.audit.new_correlation_id() if self.audit else ""
        logger.info(
            f"Starting analysis: {request.hours_to_analyze}h lookback, "
            f"create_pull_request={request.create_pull_request}, max_exceptions={request.max_exceptions}"
        )
        self._audit(correlation_id, "run.started", request.model_dump())

        report = RemediationReport(lookback_hours=request.hours_to_analyze)
        try:
            if request.latest_only:
                records = await _race(self.telemetry.query_latest(request.hours_to_analyze), cancel_event)
            else:
                records = await _race(
                    self.telemetry.query(request.hours_to_analyze, request.min_occurrences, request.max_exceptions),
                    cancel_event,
                )
            report.exceptions = list(records)
            logger.info(f"Found {len(records)} exceptions to analyze")

            sources = await _race(self.prefetch_sources(records), cancel_event)

            for record in records:
                path = normalize_source_path(record.source_file) if record.source_file else None
                outcome = await _race(
                    self.process(
                        record,
                        create_change=request.create_pull_request,
                        hybrid=request.hybrid,
                        source=sources.get(path) if path else None,
                    ),
                    cancel_event,
                )
                report.outcomes.append(outcome)
                self._audit(correlation_id, "exception.outcome", outcome.model_dump(mode="json"))
        except RunCancelled:
            logger.warning(f"Run cancelled after {len(report.outcomes)} of {len(report.exceptions)} exceptions")
            report.cancelled = True

        report.summary = build_summary(report)
        logger.info(f"Analysis complete: {report.summary}")
        self._audit(
            correlation_id,
            "run.completed",
            {
                "summary": report.summary,
                "counts": {k.value: v for k, v in report.counts.items()},
                "change_urls": report.change_urls,
                "cancelled": report.cancelled,
            },
        )
        return report

    async def process(
        self,
        record: ExceptionRecord,
        *,
        create_change: bool = False,
        hybrid: bool = False,
        source: Optional[str] = None,
    ) -> RemediationOutcome:
        """Run one record through the pipeline. Never raises (except on task cancellation)."""
        logger.info(f"Processing exception: {record.exception_type} ({record.occurrence_count} occurrences)")
        try:
            return await self._process(record, create_change=create_change, hybrid=hybrid, source=source)
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Unexpected error while processing {record.exception_type}")
            return RemediationOutcome.error(record, f"{type(e).__name__}: {e}")

    async def _process(
        self,
        record: ExceptionRecord,
        *,
        create_change: bool,
        hybrid: bool,
        source: Optional[str],
    ) -> RemediationOutcome:
        decision = self.exception_filter.classify(record)
        if decision.is_filtered:
            logger.info(f"Filtered {record.exception_type}: {decision.reason}")
            return RemediationOutcome.skipped_filtered(record, decision.reason or "filtered")

        if (
            decision.is_ambiguous
            and self.evaluator is not None
            and self.exception_filter.config.enable_ambiguous_evaluation
        ):
            if not await self.evaluator.evaluate(record):
                logger.info(f"Ambiguous {record.exception_type} evaluated as not fixable")
                return RemediationOutcome.skipped_filtered(record, "Evaluated as not fixable by code change")

        key = record.dedup_key
        if not await self.cooldown.should_process(key):
            return RemediationOutcome.skipped_cooldown(record)

        existing = await self.publisher.find_existing(record)
        if existing:
            logger.info(f"Change already exists for {record.exception_type}: {existing}")
            return RemediationOutcome.skipped_existing_change(record, existing)

        source_path = normalize_source_path(record.source_file) if record.source_file else None
        if source is None and source_path:
            source = await self._fetch(source_path)

        proposal = await self.proposer.propose(
            record,
            truncate_source(source, self.max_source_chars) if source else None,
            allow_tool_use=hybrid,
        )
        if proposal.action == FixAction.no_fix_needed:
            logger.info(f"Exception {record.exception_type} marked as no_fix_needed: {proposal.root_cause}")
            return RemediationOutcome.no_fix_needed(record, proposal.root_cause)
        if proposal.action == FixAction.error or proposal.fix is None:
            return RemediationOutcome.error(record, proposal.root_cause or "No fix provided")

        fix = proposal.fix
        target = normalize_source_path(fix.file_path or record.source_file or "")
        if not target:
            return RemediationOutcome.error(record, "Fix does not name a file")

        current = source if target == source_path and source is not None else await self._fetch(target)
        if current is None:
            return RemediationOutcome.error(record, f"Source file not found: {target}")

        line = record.line_number if target == source_path else None
        applied = self.applier.apply(current, fix, line)
        if not applied.applied or applied.new_content == current:
            logger.warning(f"Fix application resulted in no changes for {target}")
            return RemediationOutcome.error(record, f"Fix could not be applied to {target}")
        logger.info(f"Applied fix to {target} ({applied.method.value})")

        if not create_change:
            return RemediationOutcome.proposed(record, fix)

        url = await self.publisher.publish(record, fix.model_copy(update={"file_path": target}), applied.new_content)
        if not url:
            return RemediationOutcome.error(record, "Failed to publish change")

        await self.cooldown.mark_processed(key, self.cooldown_ttl)
        await self.cooldown.index_by_type(record.exception_type, key)
        logger.info(f"Created change for {record.exception_type}: {url}")
        return RemediationOutcome.fixed(record, url, fix)
