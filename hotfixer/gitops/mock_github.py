from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from hotfixer.gitops.repository import ChangePredicate
from hotfixer.models import OpenChange, PullRequestResult

_SEARCH_EXTENSIONS = (".cs", ".py", ".ts", ".js", ".java", ".go", ".json", ".md")


@dataclass(frozen=True)
class MockRepository:
    """
    Mock-mode CodeRepository (no network, no real git required).

    Reads source from `repo_root`. Branch writes and PRs land under `root_dir`:
      - file content: <root_dir>/branches/<branch>/<path>
      - PR metadata:  <root_dir>/prs/<n>.json
    """

    root_dir: str
    repo_root: str = "repo"
    repo: str = "local/mock"
    public_base_url: str = "http://localhost:8088"

    def _safe_join(self, base: str, rel: str) -> Optional[str]:
        base_abs = os.path.abspath(base)
        full = os.path.abspath(os.path.join(base_abs, rel.lstrip("/")))
        if full != base_abs and not full.startswith(base_abs + os.sep):
            return None
        return full

    def _branch_dir(self, branch: str) -> str:
        return os.path.join(self.root_dir, "branches", branch.replace("/", "__"))

    def _pr_dir(self) -> str:
        return os.path.join(self.root_dir, "prs")

    async def read_file(self, path: str, *, ref: Optional[str] = None) -> Optional[str]:
        candidates = []
        if ref:
            candidates.append(self._safe_join(self._branch_dir(ref), path))
        candidates.append(self._safe_join(self.repo_root, path))
        for full in candidates:
            if full and os.path.isfile(full):
                with open(full, "r", encoding="utf-8", errors="replace", newline="") as f:
                    return f.read()
        return None

    async def create_branch(self, name: str) -> None:
        os.makedirs(self._branch_dir(name), exist_ok=True)

    async def write(self, *, branch: str, path: str, content: str, message: str) -> None:
        full = self._safe_join(self._branch_dir(branch), path)
        if full is None:
            raise ValueError(f"path escapes repository: {path}")
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        commits_path = os.path.join(self._branch_dir(branch), ".commits.jsonl")
        with open(commits_path, "a", encoding="utf-8") as f:
            f.write(json.dumps({"path": path, "message": message}) + "\n")

    def _load_prs(self) -> List[Dict[str, Any]]:
        pr_dir = self._pr_dir()
        if not os.path.isdir(pr_dir):
            return []
        out: List[Dict[str, Any]] = []
        for name in sorted(os.listdir(pr_dir)):
            if not name.endswith(".json"):
                continue
            with open(os.path.join(pr_dir, name), "r", encoding="utf-8") as f:
                out.append(json.load(f))
        return out

    def _pr_url(self, number: int) -> str:
        return f"{self.public_base_url.rstrip('/')}/mock/pr/{number}"

    async def open_change(self, *, title: str, body: str, branch: str) -> PullRequestResult:
        os.makedirs(self._pr_dir(), exist_ok=True)
        pr_number = max([int(p.get("pr_number") or 0) for p in self._load_prs()] + [0]) + 1
        meta = {
            "pr_number": pr_number,
            "repo": self.repo,
            "title": title,
            "body": body,
            "branch": branch,
            "state": "open",
        }
        with open(os.path.join(self._pr_dir(), f"{pr_number}.json"), "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2)
        return PullRequestResult(
            mode="mock",
            pr_number=pr_number,
            pr_title=title,
            pr_url=self._pr_url(pr_number),
            branch_name=branch,
        )

    async def search_open_changes(self, predicate: ChangePredicate) -> List[OpenChange]:
        out: List[OpenChange] = []
        for meta in self._load_prs():
            if meta.get("state", "open") != "open":
                continue
            number = int(meta.get("pr_number") or 0)
            change = OpenChange(
                number=number,
                title=str(meta.get("title") or ""),
                body=str(meta.get("body") or ""),
                url=self._pr_url(number),
                branch_name=str(meta.get("branch") or ""),
            )
            if predicate(change):
                out.append(change)
        return out

    async def search_code(self, query: str, *, max_results: int = 10) -> List[Dict[str, str]]:
        needle = (query or "").lower()
        if not needle or not os.path.isdir(self.repo_root):
            return []
        hits: List[Dict[str, str]] = []
        for dirpath, dirnames, filenames in os.walk(self.repo_root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for fn in sorted(filenames):
                if not fn.endswith(_SEARCH_EXTENSIONS):
                    continue
                full = os.path.join(dirpath, fn)
                with open(full, "r", encoding="utf-8", errors="replace") as f:
                    if needle not in f.read().lower():
                        continue
                rel = os.path.relpath(full, self.repo_root).replace(os.sep, "/")
                hits.append({"path": rel, "name": fn, "url": f"file://{os.path.abspath(full)}"})
                if len(hits) >= max_results:
                    return hits
        return hits
