from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from hotfixer.gitops.repository import ChangePredicate
from hotfixer.models import OpenChange, PullRequestResult


@dataclass(frozen=True)
class GitHubRepository:
    """
    Minimal async GitHub REST wrapper implementing CodeRepository.

    Supports:
    - read files (Contents API, base64 decoded)
    - create branch from the default branch head
    - upsert files via the Contents API (commits are created server-side)
    - open PRs and list open PRs for the existing-change check
    - code search (used as a reasoning-engine tool)

    No git pushes: this works with only HTTPS + token. Mockable in tests via
    an httpx transport override.
    """

    token: str
    repo: str  # owner/name
    default_branch: str = "main"
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: httpx.AsyncBaseTransport | None = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport)

    def _url(self, suffix: str) -> str:
        return f"{self.api_base.rstrip('/')}/repos/{self.repo}{suffix}"

    async def get_branch_head_sha(self, *, branch: str) -> str:
        # GET /repos/{owner}/{repo}/git/ref/heads/{branch}
        async with self._client() as c:
            r = await c.get(self._url(f"/git/ref/heads/{branch}"), headers=self._headers())
            r.raise_for_status()
            data = r.json()
        return str((data.get("object") or {}).get("sha"))

    async def create_branch(self, name: str) -> None:
        base_sha = await self.get_branch_head_sha(branch=self.default_branch)
        payload = {"ref": f"refs/heads/{name}", "sha": base_sha}
        async with self._client() as c:
            r = await c.post(self._url("/git/refs"), headers=self._headers(), json=payload)
            # 422 if branch exists; treat as idempotent.
            if r.status_code == 422:
                return
            r.raise_for_status()

    async def _get_contents(self, *, path: str, ref: str) -> Optional[Dict[str, Any]]:
        async with self._client() as c:
            r = await c.get(self._url(f"/contents/{path.lstrip('/')}"), headers=self._headers(), params={"ref": ref})
            if r.status_code == 404:
                return None
            r.raise_for_status()
            data = r.json()
        return data if isinstance(data, dict) else None

    async def read_file(self, path: str, *, ref: Optional[str] = None) -> Optional[str]:
        data = await self._get_contents(path=path, ref=ref or self.default_branch)
        if not data:
            return None
        raw = data.get("content")
        if not isinstance(raw, str):
            return None
        if data.get("encoding", "base64") != "base64":
            return raw
        return base64.b64decode(raw).decode("utf-8", errors="replace")

    async def get_file_sha(self, *, path: str, ref: str) -> Optional[str]:
        data = await self._get_contents(path=path, ref=ref)
        return str(data.get("sha")) if data and data.get("sha") else None

    async def write(self, *, branch: str, path: str, content: str, message: str) -> None:
        # Include the blob sha when the file exists on the branch, otherwise this creates it.
        known_sha = await self.get_file_sha(path=path, ref=branch)
        b64 = base64.b64encode(content.encode("utf-8")).decode("ascii")
        payload: Dict[str, Any] = {"message": message, "content": b64, "branch": branch}
        if known_sha:
            payload["sha"] = known_sha
        async with self._client() as c:
            r = await c.put(self._url(f"/contents/{path.lstrip('/')}"), headers=self._headers(), json=payload)
            r.raise_for_status()

    async def open_change(self, *, title: str, body: str, branch: str) -> PullRequestResult:
        payload = {"title": title, "body": body, "head": branch, "base": self.default_branch}
        async with self._client() as c:
            r = await c.post(self._url("/pulls"), headers=self._headers(), json=payload)
            r.raise_for_status()
            data = r.json()
        return PullRequestResult(
            mode="real",
            pr_number=int(data["number"]),
            pr_title=str(data["title"]),
            pr_url=str(data["html_url"]),
            branch_name=branch,
        )

    async def search_open_changes(self, predicate: ChangePredicate) -> List[OpenChange]:
        async with self._client() as c:
            r = await c.get(
                self._url("/pulls"),
                headers=self._headers(),
                params={"state": "open", "per_page": 100},
            )
            r.raise_for_status()
            data = r.json()
        out: List[OpenChange] = []
        for pr in data if isinstance(data, list) else []:
            change = OpenChange(
                number=int(pr.get("number") or 0),
                title=str(pr.get("title") or ""),
                body=str(pr.get("body") or ""),
                url=str(pr.get("html_url") or ""),
                branch_name=str((pr.get("head") or {}).get("ref") or ""),
            )
            if predicate(change):
                out.append(change)
        return out

    async def search_code(self, query: str, *, max_results: int = 10) -> List[Dict[str, str]]:
        async with self._client() as c:
            r = await c.get(
                f"{self.api_base.rstrip('/')}/search/code",
                headers=self._headers(),
                params={"q": f"{query} repo:{self.repo}", "per_page": int(max_results)},
            )
            r.raise_for_status()
            data = r.json()
        items = data.get("items") if isinstance(data, dict) else None
        return [
            {"path": str(it.get("path") or ""), "name": str(it.get("name") or ""), "url": str(it.get("html_url") or "")}
            for it in (items or [])
            if isinstance(it, dict)
        ]
