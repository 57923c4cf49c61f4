from __future__ import annotations

import json
import time

from fastapi.testclient import TestClient

from hotfixer.models import ExceptionRecord
from hotfixer.service.app import create_app
from hotfixer.service.runtime import build_runtime
from hotfixer.settings import Settings
from hotfixer.testing.fakes import ScriptedReasoningEngine, StaticTelemetrySource

_PATH = "Api/Controllers/SearchController.cs"
_SOURCE = "public IActionResult Get(string q)\n{\n    var firstResult = results[0];\n    return Ok(firstResult);\n}\n"

_FIX = json.dumps(
    {
        "action": "fix",
        "rootCause": "Search can return no results",
        "fix": {
            "filePath": _PATH,
            "originalCode": "    var firstResult = results[0];",
            "fixedCode": "    if (results.Count == 0) return NotFound();\n    var firstResult = results[0];",
            "explanation": "Empty results were indexed. Return 404 instead.",
            "confidence": "High",
        },
    }
)
_NO_FIX = '{"action": "no_fix_needed", "rootCause": "bad input"}'


def _record() -> ExceptionRecord:
    return ExceptionRecord(
        exception_type="System.ArgumentOutOfRangeException",
        message="Index was out of range.",
        operation_name="GET /search",
        occurrence_count=57,
        problem_id="9f8e7d",
        source_file=_PATH,
        line_number=3,
    )


def _settings(tmp_path) -> Settings:
    repo = tmp_path / "repo" / "Api" / "Controllers"
    repo.mkdir(parents=True)
    (repo / "SearchController.cs").write_text(_SOURCE, encoding="utf-8")
    return Settings(
        github_mode="mock",
        mock_github_dir=str(tmp_path / "mock_github"),
        repo_root=str(tmp_path / "repo"),
        audit_log_path=str(tmp_path / "audit.jsonl"),
        agent_mode="off",
        webhook_debounce_s=300,
    )


def _client(tmp_path, responses) -> TestClient:
    settings = _settings(tmp_path)
    runtime = build_runtime(
        settings,
        telemetry=StaticTelemetrySource(records=[_record()]),
        engine=ScriptedReasoningEngine(responses),
    )
    return TestClient(create_app(runtime=runtime))


def test_analyze_publishes_mock_pr_and_respects_cooldown(tmp_path) -> None:
    with _client(tmp_path, [_FIX]) as client:
        assert client.get("/health").json()["ok"] is True

        r = client.post("/analyze", json={"min_occurrences": 1, "create_pull_request": True})
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["counts"]["fixed"] == 1
        assert body["change_urls"] == ["http://localhost:8088/mock/pr/1"]
        assert body["summary"] == "Analyzed 1 exceptions, 1 changes published"

        pr = client.get("/mock/pr/1").json()
        assert pr["title"] == "fix(Search): Handle ArgumentOutOfRangeException"
        assert "ProblemId**: `9f8e7d`" in pr["body"]
        branch_file = tmp_path / "mock_github" / "branches" / pr["branch_name"].replace("/", "__") / _PATH
        assert "return NotFound();" in branch_file.read_text(encoding="utf-8")
        assert client.get("/mock/pr/2").status_code == 404

        again = client.post("/analyze", json={"min_occurrences": 1, "create_pull_request": True}).json()
        assert again["counts"]["skipped_cooldown"] == 1

        closed = client.post("/webhook/change-closed", json={"problem_id": "9f8e7d"})
        assert closed.json() == {"ok": True, "cleared": "problem_id", "key": "9f8e7d"}

        third = client.post("/analyze", json={"min_occurrences": 1, "create_pull_request": True}).json()
        assert third["counts"]["skipped_existing_change"] == 1

        assert client.post("/webhook/change-closed", json={}).status_code == 400

        events = client.get("/api/audit/recent").json()["records"]
        assert {"run.started", "exception.outcome", "run.completed"} <= {e["event_type"] for e in events}


def test_analyze_defaults_and_presets(tmp_path) -> None:
    with _client(tmp_path, [_NO_FIX]) as client:
        r = client.post("/analyze")
        assert r.status_code == 200
        assert r.json()["lookback_hours"] == 24

        quick = client.post("/analyze/quick-scan").json()
        assert quick["lookback_hours"] == 6
        assert quick["counts"]["no_fix_needed"] == 1

        latest = client.post("/analyze/latest").json()
        assert latest["lookback_hours"] == 1


def test_analyze_single_record(tmp_path) -> None:
    with _client(tmp_path, [_FIX]) as client:
        record = _record().model_dump(mode="json", by_alias=True)
        r = client.post("/analyze/single", json={"record": record, "hybrid": False})
        assert r.status_code == 200, r.text
        out = r.json()
        assert out["kind"] == "proposed"
        assert out["fix"]["file_path"] == _PATH


def test_alert_webhook_queues_then_debounces(tmp_path) -> None:
    alert = {"schemaId": "azureMonitorCommonAlertSchema", "data": {"essentials": {"alertRule": "HighErrorRate", "severity": "Sev2"}}}
    with _client(tmp_path, [_NO_FIX]) as client:
        first = client.post("/webhook/alert", json=alert)
        assert first.status_code == 202
        assert first.json()["status"] == "accepted"

        second = client.post("/webhook/alert", json=alert)
        assert second.status_code == 429
        assert second.json()["status"] == "debounced"

        other = client.post("/webhook/alert", json={"data": {"essentials": {"alertRule": "Other"}}})
        assert other.status_code == 202

        deadline = time.time() + 5
        reports = []
        while time.time() < deadline:
            reports = client.get("/api/reports/recent").json()["reports"]
            if len(reports) == 2:
                break
            time.sleep(0.05)
        assert len(reports) == 2
        assert reports[0]["lookback_hours"] == 1
        assert reports[0]["counts"]["no_fix_needed"] == 1
