"""
Tolerant extraction of a JSON object from free-form model output.

Strategies run in order and the first that yields a JSON object wins:
    json     — the whole (trimmed) text is an object
    fenced   — ```json / ``` / ~~~json fenced blocks
    balanced — first syntactically complete {...} anywhere in the text
    repair   — close a truncated object (unterminated string, missing braces)
Anything else falls back to {"result": <text>}. Parsing never raises.
"""
import json
import logging
import re
from typing import Any, Callable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

FENCE_PATTERNS = (
    re.compile(r"```(?:json)?[ \t]*\n?([\s\S]*?)```", re.IGNORECASE),
    re.compile(r"~~~(?:json)?[ \t]*\n?([\s\S]*?)~~~", re.IGNORECASE),
)


class ParsedResponse(BaseModel):
    display_value: str = ""
    structured_data: dict[str, Any] = Field(default_factory=dict)
    strategy: str = "fallback"


# ── Strategies ───────────────────────────────────────────────────────────────

def _load_object(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def _parse_whole(text: str) -> dict | None:
    return _load_object(text)


def _parse_fenced(text: str) -> dict | None:
    for pattern in FENCE_PATTERNS:
        for match in pattern.finditer(text):
            parsed = _load_object(match.group(1).strip())
            if parsed is not None:
                return parsed
    return None


def _balanced_end(text: str, start: int) -> int | None:
    """Index just past the brace closing the object opened at `start`, string-aware."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if escaped:
            escaped = False
        elif ch == "\\" and in_string:
            escaped = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return i + 1
    return None


def _parse_balanced(text: str) -> dict | None:
    start = text.find("{")
    while start != -1:
        end = _balanced_end(text, start)
        if end is None:
            return None
        parsed = _load_object(text[start:end])
        if parsed is not None:
            return parsed
        start = text.find("{", start + 1)
    return None


def _parse_truncated(text: str) -> dict | None:
    start = text.find("{")
    if start == -1:
        return None
    end = text.rfind("}")
    span = text[start:end + 1] if end > start else text[start:]

    depth = 0
    in_string = False
    escaped = False
    for ch in span:
        if escaped:
            escaped = False
        elif ch == "\\" and in_string:
            escaped = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1

    if depth <= 0 and not in_string:
        return None     # nothing to repair; balanced/whole already had their chance

    repaired = span
    if escaped:
        repaired = repaired[:-1]
    if in_string:
        repaired += '"'
    repaired = repaired.rstrip().rstrip(",")
    repaired += "}" * max(depth, 0)
    return _load_object(repaired)


STRATEGIES: tuple[tuple[str, Callable[[str], dict | None]], ...] = (
    ("json", _parse_whole),
    ("fenced", _parse_fenced),
    ("balanced", _parse_balanced),
    ("repair", _parse_truncated),
)


# ── Normalization ────────────────────────────────────────────────────────────

def _list_item(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def normalize_value(value: Any) -> Any:
    """Collapse a parsed JSON value into something a single cell can hold."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return value
    if isinstance(value, list):
        return ", ".join(_list_item(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def _display_value(structured: dict[str, Any]) -> str:
    if len(structured) == 1:
        only = next(iter(structured.values()))
        return "" if only is None else str(only)
    return f"{len(structured)} datapoints"


def parse_response(text: str | None) -> ParsedResponse:
    cleaned = (text or "").strip()

    for name, strategy in STRATEGIES:
        try:
            parsed = strategy(cleaned)
        except Exception:
            logger.exception("[Parser] strategy %s raised — skipping", name)
            continue
        if parsed is not None:
            structured = {key: normalize_value(value) for key, value in parsed.items()}
            return ParsedResponse(
                display_value=_display_value(structured),
                structured_data=structured,
                strategy=name,
            )

    return ParsedResponse(display_value=cleaned, structured_data={"result": cleaned}, strategy="fallback")
