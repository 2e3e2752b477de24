"""
Resilient JSON parsing for model output.

Models wrap JSON in markdown fences, add prose around it, or get cut off
mid-object. `parse_model_json` tries progressively looser strategies and
reports whether the result is complete or partially recovered.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCED_ANY = re.compile(r"```\s*([\s\S]*?)\s*```")
_OBJECT_SPAN = re.compile(r"\{[\s\S]*\}")

_STRING_FIELD = re.compile(r'"([^"]+)":\s*"((?:[^"\\]|\\.)*)"')
_NUMBER_FIELD = re.compile(r'"([^"]+)":\s*(-?\d+(?:\.\d+)?)(?=\s*[,}\n])')
_BOOL_FIELD = re.compile(r'"([^"]+)":\s*(true|false)')
_NULL_FIELD = re.compile(r'"([^"]+)":\s*null')


@dataclass
class ParseResult:
    success: bool
    data: Optional[Dict[str, Any]]
    partial: bool = False
    error: Optional[str] = None
    recovered_fields: List[str] = field(default_factory=list)


def repair_truncated_json(text: str) -> str:
    """Drop dangling commas/keys and close unbalanced brackets."""
    repaired = text.strip()
    repaired = re.sub(r",\s*([}\]])", r"\1", repaired)
    repaired = re.sub(r',\s*"[^"]*":\s*$', "", repaired)
    repaired = re.sub(r',\s*"[^"]*":\s*"[^"]*$', "", repaired)
    repaired = re.sub(r",\s*$", "", repaired)

    repaired += "]" * max(repaired.count("[") - repaired.count("]"), 0)
    repaired += "}" * max(repaired.count("{") - repaired.count("}"), 0)
    return repaired


def _candidate_blocks(text: str) -> List[str]:
    candidates = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    generic = _FENCED_ANY.search(text)
    if generic and generic.group(1).lstrip().startswith(("{", "[")):
        candidates.append(generic.group(1))
    span = _OBJECT_SPAN.search(text)
    if span:
        candidates.append(span.group(0))
    start = text.find("{")
    if start != -1:
        candidates.append(text[start:])
    return candidates


def extract_partial_fields(text: str) -> Dict[str, Any]:
    """Pull scalar fields out of malformed JSON."""
    result: Dict[str, Any] = {}
    for key, value in _STRING_FIELD.findall(text):
        result[key] = value.replace('\\"', '"').replace("\\n", "\n")
    for key, value in _NUMBER_FIELD.findall(text):
        result.setdefault(key, float(value))
    for key, value in _BOOL_FIELD.findall(text):
        result.setdefault(key, value == "true")
    for key in _NULL_FIELD.findall(text):
        result.setdefault(key, None)
    return result


def parse_model_json(text: Optional[str]) -> ParseResult:
    """
    Parse a JSON object out of model output.

    Order: direct parse, fenced block, outer brace span, repaired
    truncation, then field-by-field recovery.
    """
    if not text or not text.strip():
        return ParseResult(success=False, data=None, error="empty response")

    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return ParseResult(success=True, data=data)
    except json.JSONDecodeError:
        pass

    for candidate in _candidate_blocks(text):
        for repaired, attempt in enumerate((candidate, repair_truncated_json(candidate))):
            try:
                data = json.loads(attempt)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return ParseResult(success=True, data=data, partial=bool(repaired))

    fields = extract_partial_fields(text)
    if fields:
        return ParseResult(
            success=True,
            data=fields,
            partial=True,
            recovered_fields=list(fields.keys()),
        )

    return ParseResult(success=False, data=None, error="no JSON object found")
