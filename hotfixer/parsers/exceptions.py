from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from hotfixer.models import ExceptionRecord
from hotfixer.parsers.stacktrace import extract_source_location, normalize_source_path, opt_int


def _text(row: Dict[str, Any], key: str) -> str:
    v = row.get(key)
    return "" if v is None else str(v)


def _opt_dt(v: Any) -> Optional[datetime]:
    if isinstance(v, datetime):
        return v
    if not v:
        return None
    try:
        return datetime.fromisoformat(str(v).replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_exception_row(row: Dict[str, Any]) -> Optional[ExceptionRecord]:
    """
    Map one exported telemetry query row to an ExceptionRecord.

    Rows without an exception type are dropped (None). Source location falls back to
    the stack trace when the row does not carry SourceFile/LineNumber.
    """
    exception_type = _text(row, "ExceptionType").strip()
    if not exception_type:
        return None

    stack = _text(row, "StackTrace")
    source_file = _text(row, "SourceFile").strip() or None
    line_number = opt_int(row.get("LineNumber"))
    if not source_file or line_number is None:
        parsed_file, parsed_line = extract_source_location(stack)
        source_file = source_file or parsed_file
        line_number = line_number if line_number is not None else parsed_line

    return ExceptionRecord(
        exception_type=exception_type,
        message=_text(row, "Message"),
        stack_trace=stack,
        operation_name=_text(row, "OperationName"),
        occurrence_count=max(0, opt_int(row.get("OccurrenceCount")) or 0),
        problem_id=_text(row, "ProblemId").strip() or None,
        source_file=normalize_source_path(source_file) if source_file else None,
        line_number=line_number,
        first_seen=_opt_dt(row.get("FirstSeen")),
        last_seen=_opt_dt(row.get("LastSeen") or row.get("Timestamp")),
        item_id=_text(row, "ItemId").strip() or None,
        item_timestamp=_text(row, "Timestamp").strip() or None,
    )
