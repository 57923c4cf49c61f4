from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FilterSettings(BaseModel):
    """
    Exception filter data. These lists are configuration, not algorithm:
    override with HOTFIXER_FILTER='{"excluded_types": [...], ...}'.
    """

    # Canonical "infrastructure noise" types, compared case-insensitively.
    excluded_types: List[str] = Field(
        default_factory=lambda: [
            "System.TimeoutException",
            "System.Threading.Tasks.TaskCanceledException",
            "System.OperationCanceledException",
            "System.Net.Http.HttpRequestException",
            "System.Net.Sockets.SocketException",
            "Microsoft.Data.SqlClient.SqlException",
        ]
    )
    # Substrings matched against type and message.
    excluded_patterns: List[str] = Field(
        default_factory=lambda: [
            "timeout",
            "timed out",
            "connection refused",
            "connection reset",
            "transport",
            "rate limit",
            "too many requests",
            "deadlock",
        ]
    )
    # Hints of an external-system cause that is not conclusively noise.
    ambiguous_tokens: List[str] = Field(
        default_factory=lambda: [
            "external",
            "api",
            "service",
            "endpoint",
            "remote",
            "connection",
            "authentication",
            "authorization",
            "401",
            "403",
            "500",
            "502",
            "503",
            "504",
        ]
    )
    # Ask the reasoning engine about ambiguous exceptions (fail-open on errors).
    enable_ambiguous_evaluation: bool = True


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HOTFIXER_", env_nested_delimiter="__", extra="ignore")

    github_mode: str = "mock"  # mock|real
    github_token: str | None = None
    github_repo: str | None = None  # owner/name
    github_base_branch: str = "main"
    github_api_base: str = "https://api.github.com"
    # Changes opened by this service live on branches with this prefix; the existing-change check relies on it.
    change_branch_prefix: str = "fix/ai-agent-"

    mock_github_dir: str = ".mock_github"
    # Repo root used by mock mode to read source files.
    repo_root: str = "repo"
    public_base_url: str = "http://localhost:8088"

    audit_log_path: str = "var/audit/hotfixer_audit.jsonl"
    log_level: str = "INFO"

    # Reasoning engine
    agent_mode: str = "openrouter"  # openrouter|groq|off
    agent_timeout_s: float = 90.0
    agent_max_tool_rounds: int = 6

    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "anthropic/claude-opus-4.5"
    openrouter_site_url: str | None = None
    openrouter_site_name: str | None = None
    openrouter_max_tokens: int = 4096

    groq_api_key: str | None = None
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_model: str = "openai/gpt-oss-120b"
    groq_max_tokens: int = 4096

    # Telemetry
    telemetry_export_path: str = "var/telemetry/exceptions.json"

    # Deep link to the telemetry record (Azure portal). All three are required to build the link.
    appinsights_resource_name: str | None = None
    appinsights_resource_group: str | None = None
    appinsights_subscription_id: str | None = None

    # Dedup / cooldown
    cooldown_backend: str = "memory"  # memory|sqlite
    cooldown_db_path: str = "var/memory/cooldown.sqlite3"
    cooldown_hours: float = 24.0
    type_index_ttl_hours: float = 48.0

    # Filtering
    filter: FilterSettings = Field(default_factory=FilterSettings)

    # Fix proposal / patching
    max_source_chars: int = 15_000
    prefetch_concurrency: int = 10
    guard_template: str = "{indent}if ({name} == null || {name}.Count == 0) return;"

    # Worker / webhooks
    worker_queue_size: int = 100
    webhook_debounce_s: float = 300.0
