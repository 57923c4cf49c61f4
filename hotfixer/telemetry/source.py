from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Protocol

from loguru import logger

from hotfixer.models import ExceptionRecord
from hotfixer.parsers.exceptions import parse_exception_row


class TelemetrySource(Protocol):
    """
    Where exception groups come from. Implementations return [] on failure and log
    the error themselves; the pipeline never retries.
    """

    async def query(self, lookback_hours: int, min_occurrences: int, max_results: int) -> List[ExceptionRecord]: ...

    async def query_latest(self, lookback_hours: int) -> List[ExceptionRecord]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class JsonFileTelemetrySource:
    """
    Reads exported telemetry query results: a JSON array of rows (or {"rows": [...]})
    using the exporter's column names (ExceptionType, Message, StackTrace, ...).
    """

    path: str
    clock: Callable[[], datetime] = _utcnow

    def _load(self) -> List[ExceptionRecord]:
        if not os.path.exists(self.path):
            logger.warning(f"Telemetry export not found: {self.path}")
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            data: Any = json.load(f)
        rows = data.get("rows") if isinstance(data, dict) else data
        out: List[ExceptionRecord] = []
        for i, row in enumerate(rows or []):
            if not isinstance(row, dict):
                continue
            try:
                rec = parse_exception_row(row)
            except Exception as e:  # noqa: BLE001
                logger.warning(f"Skipping unparseable telemetry row {i} in {self.path}: {e}")
                continue
            if rec is not None:
                out.append(rec)
        return out

    def _within(self, rec: ExceptionRecord, lookback_hours: int) -> bool:
        if rec.last_seen is None:
            return True
        return _aware(rec.last_seen) >= self.clock() - timedelta(hours=lookback_hours)

    async def query(self, lookback_hours: int, min_occurrences: int, max_results: int) -> List[ExceptionRecord]:
        try:
            records = self._load()
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to query exceptions from {self.path}: {e}")
            return []
        hits = [r for r in records if r.occurrence_count >= min_occurrences and self._within(r, lookback_hours)]
        hits.sort(key=lambda r: r.occurrence_count, reverse=True)
        logger.info(f"Found {len(hits[:max_results])} exceptions in the last {lookback_hours} hours")
        return hits[: max(0, int(max_results))]

    async def query_latest(self, lookback_hours: int) -> List[ExceptionRecord]:
        try:
            records = self._load()
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Failed to query latest exception from {self.path}: {e}")
            return []
        hits = [r for r in records if self._within(r, lookback_hours)]
        if not hits:
            return []
        latest = max(hits, key=lambda r: _aware(r.last_seen or datetime.min))
        return [latest]
