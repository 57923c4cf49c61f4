from __future__ import annotations

_RESPONSE_FORMAT = """## Response Format

Respond with JSON:
```json
{{
    "action": "fix" or "no_fix_needed",
    "rootCause": "explanation of the root cause",
    "severity": "High|Medium|Low",{tools_line}
    "fix": {{
        "filePath": "path/to/file.cs",
        "originalCode": "EXACT code from source (copy after line numbers)",
        "fixedCode": "corrected code",
        "explanation": "what was wrong and how the fix addresses it",
        "confidence": "High|Medium|Low"
    }}
}}
```

If action is "no_fix_needed", omit the "fix" object.
"""


def _response_format(*, with_tools: bool) -> str:
    tools_line = '\n    "toolsUsed": ["list of tools you called, or empty if none"],' if with_tools else ""
    return _RESPONSE_FORMAT.format(tools_line=tools_line)


def build_direct_prompt(context: str) -> str:
    """Single-shot prompt: the model only sees the pre-fetched context."""
    return (
        "You are an expert .NET developer. Analyze this single production exception.\n\n"
        f"{context}\n"
        "## CRITICAL: Input Validation vs Actual Bug\n\n"
        "Determine if this exception is:\n\n"
        "### INPUT VALIDATION ERROR (DO NOT FIX):\n"
        "- FormatException, ArgumentException, ArgumentNullException, ValidationException\n"
        "- The CLIENT sent invalid data (bad format, null, out of range)\n"
        "- The code is CORRECTLY rejecting bad input\n"
        "- Example: \"The string 'sqd' was not recognized as a valid DateTime\" = client error\n\n"
        "### ACTUAL BUG (PROPOSE FIX):\n"
        "- NullReferenceException in code that should never receive null\n"
        "- FormatException when parsing INTERNAL data (not user input)\n"
        "- Missing error handling, logic errors\n\n"
        + _response_format(with_tools=False)
    )


def build_hybrid_prompt(context: str) -> str:
    """Pre-fetched context first; tools only when it is not enough."""
    return (
        "You are an expert .NET developer. Analyze this production exception.\n\n"
        f"{context}\n"
        "## Instructions\n\n"
        "I have PRE-FETCHED the source code above. Analyze it to find the root cause.\n\n"
        "**IMPORTANT**: Only use tools if absolutely necessary:\n"
        "- Use `get_file_content` if you need to see OTHER files (imports, base classes, related services)\n"
        "- Use `search_code` if you need to find where a class/method is defined\n"
        "- Use `get_exception_details` if you need more stack trace samples\n"
        "- Do NOT call tools if the pre-fetched code is sufficient!\n\n"
        "## Analysis Steps\n\n"
        "1. First, analyze the pre-fetched code to identify the bug\n"
        "2. If you need more context, use the tools\n"
        "3. Determine if this is an INPUT VALIDATION error (client's fault) or an ACTUAL BUG\n"
        "4. If it's a bug, propose a fix\n\n"
        + _response_format(with_tools=True)
    )
