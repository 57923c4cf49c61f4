from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from hotfixer.gitops.mock_github import MockRepository
from hotfixer.models import AnalysisRequest, ExceptionRecord, RemediationOutcome, RemediationReport
from hotfixer.service.runtime import Runtime, build_runtime
from hotfixer.service.worker import Debouncer, RemediationWorker
from hotfixer.settings import Settings
from hotfixer.telemetry.logs import configure_logging

router = APIRouter()


class ChangeClosedEvent(BaseModel):
    """Sent when a published change is merged or closed; lifts the cooldown it set."""

    problem_id: Optional[str] = None
    exception_type: Optional[str] = None


class SingleAnalysis(BaseModel):
    record: ExceptionRecord
    create_pull_request: bool = False
    hybrid: bool = True


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _report_json(report: RemediationReport) -> Dict[str, Any]:
    data = report.model_dump(mode="json")
    data["counts"] = {k.value: v for k, v in report.counts.items()}
    data["change_urls"] = report.change_urls
    data["critical_exceptions"] = report.critical_exceptions
    return data


@router.get("/health")
def health(request: Request) -> Dict[str, Any]:
    worker: RemediationWorker = request.app.state.worker
    return {"ok": True, "version": "0.1.0", "worker_running": worker.running, "queued": worker.pending}


@router.post("/analyze")
async def analyze(request: Request, body: Optional[AnalysisRequest] = None) -> JSONResponse:
    req = body or AnalysisRequest()
    report = await _runtime(request).orchestrator.run(req)
    return JSONResponse(_report_json(report))


@router.post("/analyze/quick-scan")
async def analyze_quick_scan(request: Request) -> JSONResponse:
    report = await _runtime(request).orchestrator.run(AnalysisRequest.quick_scan())
    return JSONResponse(_report_json(report))


@router.post("/analyze/latest")
async def analyze_latest(request: Request) -> JSONResponse:
    report = await _runtime(request).orchestrator.run(AnalysisRequest.latest())
    return JSONResponse(_report_json(report))


@router.post("/analyze/single")
async def analyze_single(request: Request, body: SingleAnalysis) -> JSONResponse:
    outcome: RemediationOutcome = await _runtime(request).orchestrator.process(
        body.record, create_change=body.create_pull_request, hybrid=body.hybrid
    )
    return JSONResponse(outcome.model_dump(mode="json"))


@router.post("/webhook/alert")
async def alert_webhook(request: Request, hybrid: bool = False) -> JSONResponse:
    """Azure Monitor common alert schema; only data.essentials.alertRule is used."""
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    essentials = ((payload or {}).get("data") or {}).get("essentials") or {}
    rule = str(essentials.get("alertRule") or "unknown")
    logger.info(f"Alert received: rule={rule} severity={essentials.get('severity') or 'Sev3'}")

    debouncer: Debouncer = request.app.state.debouncer
    last = debouncer.hit(f"webhook:debounce:{rule}")
    if last is not None:
        logger.info(f"Debouncing alert {rule} - last processed at {last}")
        return JSONResponse(
            {"status": "debounced", "alert_rule": rule, "last_processed_at": last},
            status_code=429,
        )

    worker: RemediationWorker = request.app.state.worker
    req = AnalysisRequest(
        hours_to_analyze=1, min_occurrences=1, max_exceptions=10, create_pull_request=True, hybrid=hybrid
    )
    if not worker.try_submit(req):
        return JSONResponse({"status": "rejected", "alert_rule": rule, "message": "queue full"}, status_code=503)
    return JSONResponse({"status": "accepted", "alert_rule": rule, "queued": worker.pending}, status_code=202)


@router.post("/webhook/change-closed")
async def change_closed(request: Request, body: ChangeClosedEvent) -> Dict[str, Any]:
    cooldown = _runtime(request).cooldown
    if body.problem_id:
        await cooldown.clear(body.problem_id)
        return {"ok": True, "cleared": "problem_id", "key": body.problem_id}
    if body.exception_type:
        await cooldown.clear_by_type(body.exception_type)
        return {"ok": True, "cleared": "exception_type", "key": body.exception_type}
    raise HTTPException(status_code=400, detail="problem_id or exception_type is required")


@router.get("/api/audit/recent")
def audit_recent(request: Request, n: int = 200) -> JSONResponse:
    records = _runtime(request).audit.read_recent(limit=max(1, min(n, 2000)))
    return JSONResponse({"records": records})


@router.get("/api/reports/recent")
def reports_recent(request: Request) -> JSONResponse:
    worker: RemediationWorker = request.app.state.worker
    return JSONResponse({"reports": [_report_json(r) for r in worker.reports]})


@router.get("/mock/pr/{pr_number}")
async def mock_pr(request: Request, pr_number: int) -> JSONResponse:
    repo = _runtime(request).repository
    if not isinstance(repo, MockRepository):
        raise HTTPException(status_code=404, detail="mock mode disabled")
    matches = await repo.search_open_changes(lambda c: c.number == pr_number)
    if not matches:
        raise HTTPException(status_code=404, detail=f"mock PR {pr_number} not found")
    return JSONResponse(matches[0].model_dump())


def create_app(settings: Settings | None = None, *, runtime: Runtime | None = None) -> FastAPI:
    """
    App factory used by uvicorn (`--factory`) and tests.
    The background worker runs for the lifetime of the app.
    """
    s = runtime.settings if runtime is not None else (settings or Settings())
    configure_logging(s.log_level)
    rt = runtime or build_runtime(s)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.worker.start()
        try:
            yield
        finally:
            await app.state.worker.stop()

    app = FastAPI(title="hotfixer", version="0.1.0", lifespan=lifespan)
    app.state.settings = s
    app.state.runtime = rt
    app.state.worker = RemediationWorker(rt.orchestrator, maxsize=s.worker_queue_size)
    app.state.debouncer = Debouncer(s.webhook_debounce_s)
    app.include_router(router)
    return app



if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "hotfixer.service.app:create_app",
        factory=True,
        host=os.environ.get("HOST", "127.0.0.1"),
        port=int(os.environ.get("PORT", "8088")),
        log_level="info",
    )
