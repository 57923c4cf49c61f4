from __future__ import annotations

import argparse
import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone
from typing import List, Optional

from hotfixer.models import AnalysisRequest, OutcomeKind, RemediationReport
from hotfixer.service.runtime import build_runtime
from hotfixer.settings import Settings
from hotfixer.telemetry.logs import configure_logging
from hotfixer.testing.fakes import ScriptedReasoningEngine

_CONTROLLER = "Api/Controllers/SearchController.cs"

_CONTROLLER_SOURCE = """\
public IActionResult Get(string q)
{
    var results = _search.Find(q);
    var firstResult = results[0];
    return Ok(firstResult);
}
"""

_FIX_RESPONSE = {
    "action": "fix",
    "rootCause": "Find returns an empty list when nothing matches",
    "severity": "High",
    "fix": {
        "filePath": _CONTROLLER,
        "originalCode": "    var firstResult = results[0];",
        "fixedCode": "    if (results.Count == 0) return NotFound();\n    var firstResult = results[0];",
        "explanation": "Empty search results were indexed. Return 404 instead.",
        "confidence": "High",
    },
}

_NO_FIX_RESPONSE = {"action": "no_fix_needed", "rootCause": "Client sent a malformed date"}


def _rows(now: str) -> List[dict]:
    return [
        {
            "ExceptionType": "System.TimeoutException",
            "Message": "The operation has timed out.",
            "OccurrenceCount": 300,
            "LastSeen": now,
        },
        {
            "ExceptionType": "System.ArgumentOutOfRangeException",
            "Message": "Index was out of range.",
            "StackTrace": f"   at Api.Controllers.SearchController.Get(String q) in /_/src/{_CONTROLLER}:line 4",
            "OperationName": "GET /search",
            "OccurrenceCount": 57,
            "ProblemId": "selfcheck-1",
            "LastSeen": now,
        },
        {
            "ExceptionType": "System.FormatException",
            "Message": "String was not recognized as a valid DateTime.",
            "OperationName": "GET /orders",
            "OccurrenceCount": 12,
            "ProblemId": "selfcheck-2",
            "LastSeen": now,
        },
    ]


def _prepare(workdir: str) -> Settings:
    repo_root = os.path.join(workdir, "repo")
    os.makedirs(os.path.join(repo_root, os.path.dirname(_CONTROLLER)), exist_ok=True)
    with open(os.path.join(repo_root, _CONTROLLER), "w", encoding="utf-8") as f:
        f.write(_CONTROLLER_SOURCE)

    export_path = os.path.join(workdir, "telemetry", "exceptions.json")
    os.makedirs(os.path.dirname(export_path), exist_ok=True)
    with open(export_path, "w", encoding="utf-8") as f:
        json.dump({"rows": _rows(datetime.now(timezone.utc).isoformat())}, f, indent=2)

    return Settings(
        github_mode="mock",
        mock_github_dir=os.path.join(workdir, "mock_github"),
        repo_root=repo_root,
        telemetry_export_path=export_path,
        audit_log_path=os.path.join(workdir, "audit", "hotfixer_audit.jsonl"),
        agent_mode="off",
    )


async def run_selfcheck(workdir: str) -> RemediationReport:
    settings = _prepare(workdir)
    engine = ScriptedReasoningEngine([json.dumps(_FIX_RESPONSE), json.dumps(_NO_FIX_RESPONSE)])
    runtime = build_runtime(settings, engine=engine)
    request = AnalysisRequest(min_occurrences=1, create_pull_request=True)

    # ---- First pass: one PR, one no-fix, one filtered ----
    report = await runtime.orchestrator.run(request)
    counts = report.counts
    assert counts[OutcomeKind.skipped_filtered] == 1, report.summary
    assert counts[OutcomeKind.fixed] == 1, report.summary
    assert counts[OutcomeKind.no_fix_needed] == 1, report.summary
    pr_json = os.path.join(settings.mock_github_dir, "prs", "1.json")
    assert os.path.exists(pr_json), "expected mock PR metadata file"
    with open(pr_json, "r", encoding="utf-8") as f:
        pr = json.load(f)
    assert pr["title"] == "fix(Search): Handle ArgumentOutOfRangeException", pr["title"]

    # ---- Second pass: the fixed problem is in cooldown ----
    again = await runtime.orchestrator.run(request)
    assert again.counts[OutcomeKind.skipped_cooldown] == 1, again.summary
    assert again.counts[OutcomeKind.fixed] == 0, again.summary
    return report


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Mock-mode end-to-end check (no network, no LLM).")
    ap.add_argument("--workdir", default=None, help="Directory for the scratch repo/telemetry (default: temp dir)")
    ap.add_argument("--log-level", default="WARNING")
    args = ap.parse_args(argv)

    configure_logging(args.log_level)
    workdir = args.workdir or tempfile.mkdtemp(prefix="hotfixer-selfcheck-")
    report = asyncio.run(run_selfcheck(workdir))
    print(report.summary)
    print("selfcheck ok")


if __name__ == "__main__":
    main()
