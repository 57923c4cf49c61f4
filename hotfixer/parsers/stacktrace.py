from __future__ import annotations

import json
import re
from typing import Any, Optional, Tuple

# "   at Foo.Bar() in /_/src/Api/Controllers/OrdersController.cs:line 270"
_DOTNET_FRAME_RE = re.compile(r"in\s+(.+\.cs):line\s+(\d+)")

_CONTAINER_PREFIXES = ("/_/src/", "/src/", "/app/", "/home/")


def normalize_source_path(path: str) -> str:
    """Turn a build/container absolute path into a repo-relative one."""
    p = (path or "").strip().replace("\\", "/")
    for prefix in _CONTAINER_PREFIXES:
        idx = p.find(prefix)
        if idx >= 0:
            p = p[idx + len(prefix) :]
            break
    return p.lstrip("/")


def opt_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _from_structured(stack: str) -> Optional[Tuple[str, Optional[int]]]:
    try:
        data: Any = json.loads(stack)
    except ValueError:
        return None
    items = data if isinstance(data, list) else [data]
    for item in items:
        if not isinstance(item, dict):
            continue
        for frame in item.get("parsedStack") or []:
            if isinstance(frame, dict) and frame.get("fileName"):
                return str(frame["fileName"]), opt_int(frame.get("line"))
        fname = item.get("fileName")
        if isinstance(fname, str) and fname.endswith(".cs"):
            return fname, opt_int(item.get("line"))
    return None


def extract_source_location(stack_trace: str) -> Tuple[Optional[str], Optional[int]]:
    """
    Best-effort first application frame of a stack trace.

    Accepts the structured telemetry form (a JSON array with `parsedStack[]`) or the
    plain text form (`in <file>.cs:line N`). Returns (None, None) when nothing matches.
    """
    stack = (stack_trace or "").strip()
    if not stack:
        return None, None

    found = _from_structured(stack) if stack[:1] in ("[", "{") else None
    if found is None:
        m = _DOTNET_FRAME_RE.search(stack)
        if not m:
            return None, None
        found = (m.group(1), int(m.group(2)))

    path, line = found
    return normalize_source_path(path) or None, line
