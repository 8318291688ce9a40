"""
Turns an enrichment prompt template plus one row into the text sent to the model.
{{Column Name}} tokens are replaced by that row's cell values; when the config
declares output fields a strict JSON-only instruction block is appended.
"""
import json
import re
from typing import Any, Iterable

TOKEN_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

STRICT_JSON_HEADER = "\n\n---\nIMPORTANT: You must respond with ONLY a valid JSON object using exactly these keys:\n"
STRICT_JSON_FOOTER = (
    "\n\nReplace each placeholder with the actual value. "
    "Do not include any other text, markdown, or explanation. Only output the JSON object."
)
OPEN_JSON_INSTRUCTIONS = (
    "\n\n---\nRespond with JSON including these fields:\n"
    "- Your actual response data\n"
    '- "reasoning": brief explanation (1-2 sentences)\n'
    '- "confidence": "high", "medium", or "low"\n'
    '- "steps_taken": brief list of what you did'
)


def _cell_text(cell: dict | None) -> str:
    if not cell:
        return ""
    value = cell.get("value")
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def substitute_tokens(template: str, row_data: dict[str, dict], columns: Iterable[Any]) -> str:
    """Unknown column names are left verbatim so the model sees the original token."""
    by_name = {column.name.strip().lower(): column.id for column in columns}

    def _replace(match: re.Match) -> str:
        column_id = by_name.get(match.group(1).strip().lower())
        if column_id is None:
            return match.group(0)
        return _cell_text(row_data.get(column_id))

    return TOKEN_PATTERN.sub(_replace, template)


def output_instructions(output_fields: list[str] | None) -> str:
    if not output_fields:
        return OPEN_JSON_INSTRUCTIONS

    shape = {field: f"<{field} value>" for field in output_fields}
    shape["reasoning"] = "<brief explanation of your answer, 1-2 sentences>"
    shape["confidence"] = '<"high", "medium", or "low">'
    shape["steps_taken"] = "<brief list of what you did>"
    return STRICT_JSON_HEADER + json.dumps(shape, indent=2) + STRICT_JSON_FOOTER


def build_prompt(
        template: str,
        row_data: dict[str, dict],
        columns: Iterable[Any],
        output_fields: list[str] | None = None,
) -> str:
    """
    Usage:
        build_prompt("Capital of {{Country}}?", row.data, columns, ["capital"])
    """
    return substitute_tokens(template, row_data, columns) + output_instructions(output_fields)
