from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from hotfixer.gitops.repository import ChangePredicate
from hotfixer.models import ExceptionRecord, OpenChange, PullRequestResult


class ScriptedReasoningEngine:
    """
    Replays canned responses in order (an Exception entry is raised instead).
    The last response repeats once the script is exhausted.
    """

    def __init__(self, responses: Sequence[Union[str, Exception]]) -> None:
        self._responses = list(responses)
        self.prompts: List[Tuple[str, bool]] = []

    async def complete(self, prompt: str, allow_tools: bool = False) -> str:
        self.prompts.append((prompt, allow_tools))
        if not self._responses:
            raise RuntimeError("scripted engine has no responses")
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        return item


@dataclass
class StaticTelemetrySource:
    records: List[ExceptionRecord] = field(default_factory=list)
    fail: bool = False

    async def query(self, lookback_hours: int, min_occurrences: int, max_results: int) -> List[ExceptionRecord]:
        if self.fail:
            return []
        hits = [r for r in self.records if r.occurrence_count >= min_occurrences]
        hits.sort(key=lambda r: r.occurrence_count, reverse=True)
        return hits[:max_results]

    async def query_latest(self, lookback_hours: int) -> List[ExceptionRecord]:
        return [] if self.fail or not self.records else [self.records[0]]


@dataclass
class InMemoryRepository:
    """CodeRepository over dicts; records every mutating call for assertions."""

    files: Dict[str, str] = field(default_factory=dict)
    changes: List[OpenChange] = field(default_factory=list)
    base_url: str = "https://example.test/pr"
    fail_search: bool = False
    fail_open: bool = False

    branches: Dict[str, Dict[str, str]] = field(default_factory=dict)
    writes: List[Dict[str, str]] = field(default_factory=list)
    opened: List[PullRequestResult] = field(default_factory=list)
    reads: List[str] = field(default_factory=list)

    async def read_file(self, path: str, *, ref: Optional[str] = None) -> Optional[str]:
        self.reads.append(path)
        if ref and path in self.branches.get(ref, {}):
            return self.branches[ref][path]
        return self.files.get(path)

    async def create_branch(self, name: str) -> None:
        self.branches.setdefault(name, {})

    async def write(self, *, branch: str, path: str, content: str, message: str) -> None:
        if branch not in self.branches:
            raise RuntimeError(f"github_http_404: branch {branch} does not exist")
        self.branches[branch][path] = content
        self.writes.append({"branch": branch, "path": path, "content": content, "message": message})

    async def open_change(self, *, title: str, body: str, branch: str) -> PullRequestResult:
        if self.fail_open:
            raise RuntimeError("github_http_502: bad gateway")
        number = len(self.changes) + 1
        url = f"{self.base_url}/{number}"
        self.changes.append(OpenChange(number=number, title=title, body=body, url=url, branch_name=branch))
        result = PullRequestResult(mode="mock", pr_number=number, pr_title=title, pr_url=url, branch_name=branch)
        self.opened.append(result)
        return result

    async def search_open_changes(self, predicate: ChangePredicate) -> List[OpenChange]:
        if self.fail_search:
            raise RuntimeError("github_http_503: unavailable")
        return [c for c in self.changes if predicate(c)]

    async def search_code(self, query: str, *, max_results: int = 10) -> List[Dict[str, str]]:
        hits = [{"path": p, "name": p.rsplit("/", 1)[-1], "url": ""} for p, c in self.files.items() if query in c]
        return hits[:max_results]
