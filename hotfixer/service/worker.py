from __future__ import annotations

import asyncio
import time
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional, Tuple

from loguru import logger

from hotfixer.models import AnalysisRequest, RemediationReport
from hotfixer.service.orchestrator import RemediationOrchestrator


class Debouncer:
    """
    Per-key time window: the first hit passes, later hits inside `window_s` are rejected.
    Used for alert webhooks keyed `webhook:debounce:<rule>`.
    """

    def __init__(self, window_s: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = float(window_s)
        self._clock = clock
        self._seen: Dict[str, Tuple[float, str]] = {}

    def hit(self, key: str) -> Optional[str]:
        """Return None when the key may proceed, else the ISO time it was last let through."""
        now = self._clock()
        last = self._seen.get(key)
        if last is not None and now - last[0] < self.window_s:
            return last[1]
        self._seen[key] = (now, datetime.now(timezone.utc).isoformat())
        return None


class RemediationWorker:
    """
    Background consumer: AnalysisRequests go into a bounded queue (producers wait when it
    is full) and are run one at a time through the orchestrator. A failed run is logged
    and the worker moves on to the next request.
    """

    def __init__(self, orchestrator: RemediationOrchestrator, *, maxsize: int = 100, keep_reports: int = 20) -> None:
        self.orchestrator = orchestrator
        self._queue: asyncio.Queue[AnalysisRequest] = asyncio.Queue(maxsize=max(1, int(maxsize)))
        self._task: Optional[asyncio.Task[None]] = None
        self._current_cancel: Optional[asyncio.Event] = None
        self.reports: Deque[RemediationReport] = deque(maxlen=keep_reports)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def submit(self, request: AnalysisRequest) -> None:
        await self._queue.put(request)

    def try_submit(self, request: AnalysisRequest) -> bool:
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            logger.warning("Remediation queue is full; request dropped")
            return False
        return True

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="hotfixer-worker")

    async def _run(self) -> None:
        while True:
            request = await self._queue.get()
            self._current_cancel = asyncio.Event()
            try:
                report = await self.orchestrator.run(request, self._current_cancel)
                self.reports.append(report)
                logger.info(f"Background analysis completed: {report.summary}")
            except Exception:  # noqa: BLE001
                logger.exception("Background analysis failed")
            finally:
                self._current_cancel = None
                self._queue.task_done()

    def cancel_current(self) -> None:
        if self._current_cancel is not None:
            self._current_cancel.set()

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        self.cancel_current()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
