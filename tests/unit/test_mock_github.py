from __future__ import annotations

import json

import pytest

from hotfixer.gitops.mock_github import MockRepository


def _repo(tmp_path) -> MockRepository:
    src = tmp_path / "repo" / "Api" / "Controllers"
    src.mkdir(parents=True)
    (src / "OrdersController.cs").write_text("line1\r\nvar x = items[0];\r\n", encoding="utf-8", newline="")
    return MockRepository(root_dir=str(tmp_path / "mock_github"), repo_root=str(tmp_path / "repo"))


@pytest.mark.asyncio
async def test_reads_source_verbatim(tmp_path) -> None:
    repo = _repo(tmp_path)
    assert await repo.read_file("Api/Controllers/OrdersController.cs") == "line1\r\nvar x = items[0];\r\n"
    assert await repo.read_file("Api/Missing.cs") is None
    assert await repo.read_file("../../etc/passwd") is None


@pytest.mark.asyncio
async def test_branch_write_and_open_change(tmp_path) -> None:
    repo = _repo(tmp_path)
    await repo.create_branch("fix/ai-agent-1")
    await repo.write(branch="fix/ai-agent-1", path="Api/Controllers/OrdersController.cs", content="patched", message="m")

    assert await repo.read_file("Api/Controllers/OrdersController.cs", ref="fix/ai-agent-1") == "patched"
    assert await repo.read_file("Api/Controllers/OrdersController.cs") != "patched"

    first = await repo.open_change(title="fix: a", body="ProblemId: `p`", branch="fix/ai-agent-1")
    second = await repo.open_change(title="fix: b", body="", branch="fix/ai-agent-2")
    assert (first.pr_number, second.pr_number) == (1, 2)
    assert first.mode == "mock"
    assert first.pr_url == "http://localhost:8088/mock/pr/1"

    meta = json.loads((tmp_path / "mock_github" / "prs" / "1.json").read_text(encoding="utf-8"))
    assert meta["branch"] == "fix/ai-agent-1"
    assert meta["state"] == "open"


@pytest.mark.asyncio
async def test_write_rejects_escaping_paths(tmp_path) -> None:
    repo = _repo(tmp_path)
    await repo.create_branch("b")
    with pytest.raises(ValueError):
        await repo.write(branch="b", path="../../outside.cs", content="x", message="m")


@pytest.mark.asyncio
async def test_search_open_changes_skips_closed(tmp_path) -> None:
    repo = _repo(tmp_path)
    await repo.open_change(title="one", body="", branch="fix/ai-agent-1")
    await repo.open_change(title="two", body="", branch="fix/ai-agent-2")
    meta_path = tmp_path / "mock_github" / "prs" / "1.json"
    meta = json.loads(meta_path.read_text(encoding="utf-8"))
    meta["state"] = "closed"
    meta_path.write_text(json.dumps(meta), encoding="utf-8")

    out = await repo.search_open_changes(lambda c: True)
    assert [c.title for c in out] == ["two"]


@pytest.mark.asyncio
async def test_search_code_walks_repo_root(tmp_path) -> None:
    repo = _repo(tmp_path)
    hits = await repo.search_code("items[0]")
    assert [h["path"] for h in hits] == ["Api/Controllers/OrdersController.cs"]
    assert await repo.search_code("nothing-like-this") == []
