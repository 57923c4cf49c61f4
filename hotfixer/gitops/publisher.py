from __future__ import annotations

import json
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional
from urllib.parse import quote

from loguru import logger

from hotfixer.gitops.repository import CodeRepository
from hotfixer.models import ExceptionRecord, Fix, OpenChange
from hotfixer.parsers.stacktrace import normalize_source_path

_UNIT_SUFFIXES = ("Controller", "Service", "Handler", "Repository")
_BRANCH_UNSAFE_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class AppInsightsResource:
    name: str
    resource_group: str
    subscription_id: str


def build_deep_link(record: ExceptionRecord, resource: Optional[AppInsightsResource]) -> Optional[str]:
    """Azure portal link to the exact telemetry item; None unless every piece is known."""
    if not record.item_id or not record.item_timestamp or resource is None:
        return None
    if not (resource.name and resource.resource_group and resource.subscription_id):
        return None
    data_model = quote(
        json.dumps({"eventId": record.item_id, "timestamp": record.item_timestamp}, separators=(",", ":")),
        safe="",
    )
    component_id = quote(
        json.dumps(
            {
                "Name": resource.name,
                "ResourceGroup": resource.resource_group,
                "SubscriptionId": resource.subscription_id,
            },
            separators=(",", ":"),
        ),
        safe="",
    )
    return (
        "https://portal.azure.com/#blade/AppInsightsExtension/DetailsV2Blade/"
        f"DataModel/{data_model}/ComponentId/{component_id}"
    )


def _stem(path: Optional[str]) -> str:
    base = os.path.basename((path or "").replace("\\", "/"))
    return os.path.splitext(base)[0]


def build_branch_name(prefix: str, now: datetime, record: ExceptionRecord) -> str:
    """Reserved prefix, a timestamp, then the problem id (or a random tag) so two publishes never share a branch."""
    tag = _BRANCH_UNSAFE_RE.sub("", (record.problem_id or "").lower())[:8] or uuid.uuid4().hex[:6]
    return f"{prefix}{now:%Y%m%d-%H%M%S}-{tag}"


def build_title(record: ExceptionRecord, fix: Optional[Fix] = None) -> str:
    stem = _stem(record.source_file or (fix.file_path if fix else None))
    for suffix in _UNIT_SUFFIXES:
        if len(stem) > len(suffix) and stem.lower().endswith(suffix.lower()):
            return f"fix({stem[: -len(suffix)]}): Handle {record.short_type}"
    return f"fix: Handle {record.short_type}"


def build_description(record: ExceptionRecord, fix: Fix, deep_link: Optional[str] = None) -> str:
    details = [
        f"- **Type**: `{record.exception_type}`",
        f"- **Occurrences**: {record.occurrence_count}",
        f"- **Source**: `{record.source_file or fix.file_path}:{record.line_number if record.line_number is not None else ''}`",
        f"- **Operation**: {record.operation_name}",
    ]
    if record.problem_id:
        details.append(f"- **ProblemId**: `{record.problem_id}`")
    if deep_link:
        details.append(f"- **App Insights**: [View Exception]({deep_link})")

    root_cause = (fix.explanation or "").split(".")[0].strip()
    return "\n".join(
        [
            "## Summary",
            fix.explanation,
            "",
            "## Exception Details",
            *details,
            "",
            "## Root Cause",
            root_cause,
            "",
            "---",
            "*Generated by hotfixer*",
            "",
        ]
    )


def _mentions_problem_id(body: str, problem_id: str) -> bool:
    pattern = r"ProblemId(?:\*\*)?:\s*`" + re.escape(problem_id) + "`"
    return re.search(pattern, body or "", flags=re.IGNORECASE) is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RemediationPublisher:
    """
    Idempotent publish: an open change for the same problem is reused, otherwise a
    branch + commit + change request is created. Never raises.
    """

    repository: CodeRepository
    branch_prefix: str = "fix/ai-agent-"
    appinsights: Optional[AppInsightsResource] = None
    clock: Callable[[], datetime] = _utcnow

    async def find_existing(self, record: ExceptionRecord) -> Optional[str]:
        try:
            changes: List[OpenChange] = await self.repository.search_open_changes(
                lambda c: c.branch_name.startswith(self.branch_prefix)
            )
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Error checking for existing change, allowing creation: {e}")
            return None

        if not changes:
            return None

        if record.problem_id:
            for c in changes:
                if _mentions_problem_id(c.body, record.problem_id):
                    logger.info(f"Found existing change #{c.number} by ProblemId: {c.url}")
                    return c.url

        if record.source_file:
            file_name = os.path.basename(record.source_file.replace("\\", "/")).lower()
            short_type = record.short_type.lower()
            full_type = record.exception_type.lower()
            for c in changes:
                body = (c.body or "").lower()
                if file_name and file_name in body and (short_type in (c.title or "").lower() or full_type in body):
                    logger.info(f"Found existing change #{c.number} by file+type ({file_name} + {record.short_type}): {c.url}")
                    return c.url

        return None

    async def publish(self, record: ExceptionRecord, fix: Fix, new_content: str) -> Optional[str]:
        try:
            existing = await self.find_existing(record)
            if existing:
                return existing

            path = normalize_source_path(fix.file_path or record.source_file or "")
            if not path:
                logger.warning(f"No target file for {record.exception_type}; nothing to publish")
                return None

            branch = build_branch_name(self.branch_prefix, self.clock(), record)
            await self.repository.create_branch(branch)
            await self.repository.write(
                branch=branch,
                path=path,
                content=new_content,
                message=f"fix: {os.path.basename(path)} - automated exception fix",
            )
            result = await self.repository.open_change(
                title=build_title(record, fix),
                body=build_description(record, fix, build_deep_link(record, self.appinsights)),
                branch=branch,
            )
            logger.info(f"Opened change #{result.pr_number} for {record.exception_type}: {result.pr_url}")
            return result.pr_url
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to publish fix for {record.exception_type}: {e}")
            return None
