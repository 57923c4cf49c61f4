from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from hotfixer.models import ApplyMethod, ApplyResult, Fix

DEFAULT_GUARD_TEMPLATE = "{indent}if ({name} == null || {name}.Count == 0) return;"

_COMMENT_MARKERS = ("//", "#", "/*", "--", "<!--")
# Phrases the model uses when it could not quote the source exactly.
_PLACEHOLDER_PHRASES = (
    "unable to",
    "not visible",
    "mismatch",
    "note:",
    "could not",
    "cannot find",
    "not shown",
)
# Only unguarded indexed access (`name[`) is recognized.
_INDEXED_ACCESS_RE = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)\[")
_INDENT_RE = re.compile(r"^[ \t]*")


def is_placeholder(original_code: str) -> bool:
    text = (original_code or "").strip()
    if not text:
        return False
    if text.startswith(_COMMENT_MARKERS):
        return True
    lowered = text.lower()
    return any(p in lowered for p in _PLACEHOLDER_PHRASES)


@dataclass(frozen=True)
class PatchApplier:
    """
    Turns a Fix into new file content.

    1. exact: original_code found verbatim, first occurrence replaced.
    2. line-fallback: original_code is a placeholder and the exception line has an
       indexed access; a guard line is inserted right above it.
    3. otherwise nothing is applied and the content is returned unchanged.
    """

    guard_template: str = DEFAULT_GUARD_TEMPLATE

    def apply(self, current_content: str, fix: Fix, exception_line_number: Optional[int] = None) -> ApplyResult:
        try:
            return self._apply(current_content, fix, exception_line_number)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Patch application failed for {fix.file_path}: {e}")
            return ApplyResult(new_content=current_content, applied=False)

    def _apply(self, content: str, fix: Fix, line_number: Optional[int]) -> ApplyResult:
        original = fix.original_code or ""
        placeholder = is_placeholder(original)

        if original.strip() and not placeholder and original in content:
            return ApplyResult(
                new_content=content.replace(original, fix.fixed_code, 1),
                applied=True,
                method=ApplyMethod.exact,
            )

        if placeholder and line_number is not None:
            guarded = self._insert_guard(content, line_number)
            if guarded is not None:
                return ApplyResult(new_content=guarded, applied=True, method=ApplyMethod.line_fallback)
            logger.info(f"No indexed access on line {line_number} of {fix.file_path}; fallback not applied")
        elif placeholder:
            logger.info(f"Placeholder original code for {fix.file_path} and no exception line; nothing applied")
        else:
            logger.info(f"Original code not found verbatim in {fix.file_path}; nothing applied")

        return ApplyResult(new_content=content, applied=False)

    def _insert_guard(self, content: str, line_number: int) -> Optional[str]:
        lines = content.splitlines(keepends=True)
        if line_number < 1 or line_number > len(lines):
            return None

        target = lines[line_number - 1]
        body = target.rstrip("\r\n")
        m = _INDEXED_ACCESS_RE.search(body)
        if not m:
            return None

        eol = target[len(body) :] or ("\r\n" if "\r\n" in content else "\n")
        indent = _INDENT_RE.match(body).group(0)
        guard = self.guard_template.format(indent=indent, name=m.group(1))
        lines.insert(line_number - 1, guard + eol)
        return "".join(lines)
