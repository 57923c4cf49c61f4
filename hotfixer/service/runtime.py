from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from hotfixer.classifier.rules import ExceptionFilter, FixabilityEvaluator
from hotfixer.code_engine.applier import PatchApplier
from hotfixer.code_engine.proposer import FixProposer
from hotfixer.gitops.github_rest import GitHubRepository
from hotfixer.gitops.mock_github import MockRepository
from hotfixer.gitops.publisher import AppInsightsResource, RemediationPublisher
from hotfixer.gitops.repository import CodeRepository
from hotfixer.llm.engine import ReasoningEngine, build_reasoning_engine
from hotfixer.llm.tools import ToolContext, ToolRegistry
from hotfixer.memory.store import CooldownStore, InMemoryCooldownStore, SqliteCooldownStore
from hotfixer.service.orchestrator import RemediationOrchestrator
from hotfixer.settings import Settings
from hotfixer.telemetry.audit import AuditLogger
from hotfixer.telemetry.source import JsonFileTelemetrySource, TelemetrySource


@dataclass(frozen=True)
class Runtime:
    """Every long-lived collaborator, constructed once at process start."""

    settings: Settings
    telemetry: TelemetrySource
    repository: CodeRepository
    engine: ReasoningEngine
    cooldown: CooldownStore
    audit: AuditLogger
    orchestrator: RemediationOrchestrator


def build_repository(settings: Settings) -> CodeRepository:
    if settings.github_mode == "mock":
        return MockRepository(
            root_dir=settings.mock_github_dir,
            repo_root=settings.repo_root,
            repo=settings.github_repo or "local/mock",
            public_base_url=settings.public_base_url,
        )
    if settings.github_mode == "real":
        if not settings.github_token or not settings.github_repo:
            raise ValueError("HOTFIXER_GITHUB_TOKEN and HOTFIXER_GITHUB_REPO are required for github_mode=real")
        return GitHubRepository(
            token=settings.github_token,
            repo=settings.github_repo,
            default_branch=settings.github_base_branch,
            api_base=settings.github_api_base,
        )
    raise ValueError(f"unknown github_mode: {settings.github_mode}")


def build_cooldown_store(settings: Settings) -> CooldownStore:
    index_ttl = timedelta(hours=settings.type_index_ttl_hours)
    if settings.cooldown_backend == "sqlite":
        return SqliteCooldownStore(db_path=settings.cooldown_db_path, index_ttl=index_ttl)
    if settings.cooldown_backend == "memory":
        return InMemoryCooldownStore(index_ttl=index_ttl)
    raise ValueError(f"unknown cooldown_backend: {settings.cooldown_backend}")


def _appinsights(settings: Settings) -> Optional[AppInsightsResource]:
    if not (
        settings.appinsights_resource_name
        and settings.appinsights_resource_group
        and settings.appinsights_subscription_id
    ):
        return None
    return AppInsightsResource(
        name=settings.appinsights_resource_name,
        resource_group=settings.appinsights_resource_group,
        subscription_id=settings.appinsights_subscription_id,
    )


def build_runtime(
    settings: Settings,
    *,
    telemetry: Optional[TelemetrySource] = None,
    repository: Optional[CodeRepository] = None,
    engine: Optional[ReasoningEngine] = None,
    cooldown: Optional[CooldownStore] = None,
) -> Runtime:
    """
    Wire the pipeline from settings. Any collaborator can be passed in explicitly
    (tests, embedding); the rest are built from configuration.
    """
    telemetry = telemetry or JsonFileTelemetrySource(path=settings.telemetry_export_path)
    repository = repository or build_repository(settings)
    if engine is None:
        tools = ToolRegistry(
            ToolContext(repository=repository, telemetry=telemetry, max_file_chars=settings.max_source_chars)
        )
        engine = build_reasoning_engine(settings, tools)
    cooldown = cooldown or build_cooldown_store(settings)
    audit = AuditLogger(settings.audit_log_path)

    exception_filter = ExceptionFilter(settings.filter)
    orchestrator = RemediationOrchestrator(
        telemetry=telemetry,
        repository=repository,
        proposer=FixProposer(engine),
        publisher=RemediationPublisher(
            repository=repository,
            branch_prefix=settings.change_branch_prefix,
            appinsights=_appinsights(settings),
        ),
        cooldown=cooldown,
        exception_filter=exception_filter,
        applier=PatchApplier(guard_template=settings.guard_template),
        evaluator=FixabilityEvaluator(engine) if settings.filter.enable_ambiguous_evaluation else None,
        audit=audit,
        cooldown_ttl=timedelta(hours=settings.cooldown_hours),
        max_source_chars=settings.max_source_chars,
        prefetch_concurrency=settings.prefetch_concurrency,
    )
    return Runtime(
        settings=settings,
        telemetry=telemetry,
        repository=repository,
        engine=engine,
        cooldown=cooldown,
        audit=audit,
        orchestrator=orchestrator,
    )
