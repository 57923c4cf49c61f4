from __future__ import annotations

from typing import List, Optional

from hotfixer.models import ExceptionRecord

TRUNCATION_MARKER = "\n... (truncated)"


def truncate_source(content: str, max_chars: int = 15_000) -> str:
    if max_chars <= 0 or len(content) <= max_chars:
        return content
    return content[:max_chars] + TRUNCATION_MARKER


def render_numbered_source(content: str) -> str:
    """1-based, right-aligned line numbers so the model can quote exact lines."""
    return "\n".join(f"{i:>4}: {line}" for i, line in enumerate(content.split("\n"), start=1))


def build_context(record: ExceptionRecord, source: Optional[str] = None, *, hybrid: bool = False) -> str:
    lines: List[str] = [
        "# Exception to Analyze",
        "",
        f"**Type**: {record.exception_type}",
        f"**Message**: {record.message}",
        f"**Occurrences**: {record.occurrence_count}",
        f"**Operation**: {record.operation_name}",
        f"**Source File**: {record.source_file or 'Unknown'}",
        f"**Line**: {record.line_number if record.line_number is not None else 'Unknown'}",
        "",
        "**Stack Trace**:",
        "```",
        record.stack_trace,
        "```",
    ]
    if source:
        label = "Source Code (Pre-fetched)" if hybrid else "Source Code"
        lines += [
            "",
            f"## {label}: {record.source_file}",
            "```csharp",
            render_numbered_source(source),
            "```",
        ]
    return "\n".join(lines) + "\n"
