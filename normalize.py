"""
Normalization helpers shared by every gate validator.

LLM agents write artifacts that are *almost* JSON: wrapped in markdown
fences, preceded by a chatty sentence, or spelling enums however they like
("HIGH", "Hi", "crit"). Everything here turns that into canonical data or
returns a sentinel; nothing here raises.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional, Union

from error_handler import GateDecision, block

SEVERITY_PREFIXES: tuple[tuple[str, str], ...] = (
    ("crit", "critical"),
    ("hi", "high"),
    ("med", "medium"),
    ("lo", "low"),
    ("inf", "info"),
)

SEVERITY_RANK: dict[str, int] = {
    "critical": 4,
    "high": 3,
    "medium": 2,
    "low": 1,
    "info": 0,
}

NESTED_ARRAY_FIELDS: tuple[str, ...] = (
    "findings",
    "issues",
    "unsuppressed_high_findings",
    "attack_hypotheses",
    "dispute_details",
    "refuted_hypotheses",
    "false_positives_invalidated",
)

FINDINGS_KEYS: tuple[str, ...] = ("findings", "exploits_confirmed", "confirmed_exploits")

FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
WHITESPACE_RE = re.compile(r"\s+")

SPECIFIC_REF_RE = re.compile(r"\b(in|at|of|via)\s+\w+[.(]", re.IGNORECASE)
THEMATIC_LEAD_RE = re.compile(r"^\s*(various|general|overall|miscellaneous)\b", re.IGNORECASE)
QUANTIFIER_LEAD_RE = re.compile(r"^\s*(multiple|several)\b", re.IGNORECASE)
GROUPING_TAIL_RE = re.compile(r"\b(issues|concerns|problems|vulnerabilities)\s*$", re.IGNORECASE)

JsonValue = Union[dict[str, Any], list[Any], str, int, float, bool, None]


def normalize_status(value: Any) -> Any:
    """"Needs Changes" -> "needs_changes". Non-strings pass through."""
    if not isinstance(value, str):
        return value
    return WHITESPACE_RE.sub("_", value.lower())


def normalize_severity(value: Any) -> Any:
    """Fuzzy prefix match onto critical/high/medium/low/info."""
    if not isinstance(value, str):
        return value
    lowered = value.lower().strip()
    for prefix, canonical in SEVERITY_PREFIXES:
        if lowered.startswith(prefix):
            return canonical
    return lowered


def severity_rank(value: Any) -> int:
    return SEVERITY_RANK.get(normalize_severity(value), 0) if isinstance(value, str) else 0


def _try_loads(text: str) -> tuple[bool, JsonValue]:
    try:
        return True, json.loads(text)
    except (ValueError, RecursionError):
        return False, None


def _matching_close(text: str, start: int) -> int:
    open_char = text[start]
    close_char = "}" if open_char == "{" else "]"
    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        char = text[idx]
        if escape:
            escape = False
            continue
        if char == "\\" and in_string:
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return idx
    return -1


def extract_json(text: Any) -> JsonValue:
    """
    Recover a JSON value from LLM output.

    Tries, in order: the whole text, the first fenced block, and the
    first bracketed span (whichever of "{" / "[" comes first) matched by
    depth while skipping string literals. Returns None when all fail.
    """
    if not isinstance(text, str):
        return None
    trimmed = text.strip()
    if not trimmed:
        return None

    ok, value = _try_loads(trimmed)
    if ok:
        return value

    fence = FENCE_RE.search(trimmed)
    if fence:
        ok, value = _try_loads(fence.group(1).strip())
        if ok:
            return value

    candidates = [idx for idx in (trimmed.find("{"), trimmed.find("[")) if idx != -1]
    if not candidates:
        return None
    start = min(candidates)
    end = _matching_close(trimmed, start)
    if end == -1:
        return None

    _, value = _try_loads(trimmed[start : end + 1])
    return value


def _normalize_entry(item: Any) -> None:
    if not isinstance(item, dict):
        return
    if item.get("severity"):
        item["severity"] = normalize_severity(item["severity"])
    if item.get("status"):
        item["status"] = normalize_status(item["status"])


def normalize_artifact(data: JsonValue) -> JsonValue:
    """Normalize status/severity at the top level and inside known nested arrays."""
    if isinstance(data, list):
        for item in data:
            _normalize_entry(item)
        return data
    if not isinstance(data, dict):
        return data

    _normalize_entry(data)
    for field_name in NESTED_ARRAY_FIELDS:
        nested = data.get(field_name)
        if isinstance(nested, list):
            for item in nested:
                _normalize_entry(item)
    return data


def read_and_normalize_json(file_path: Union[str, Path]) -> JsonValue:
    """Missing or unreadable files yield None; callers decide if that is an error."""
    path = Path(file_path)
    try:
        if not path.is_file():
            return None
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    return normalize_artifact(extract_json(content))


def _location_key(finding: dict[str, Any]) -> Optional[str]:
    file_ref = str(finding.get("file") or "").lower()
    line = finding.get("line") or 0
    key = f"{file_ref}:{line}"
    if key == ":0":
        return None
    return key


def deduplicate_by_location(findings: Any) -> Any:
    """
    Collapse findings reported at the same file:line, keeping the more
    severe copy. Findings without any location are never merged.
    """
    if not isinstance(findings, list):
        return findings

    seen: dict[str, Any] = {}
    for index, finding in enumerate(findings):
        key = _location_key(finding) if isinstance(finding, dict) else None
        if key is None:
            seen[f"__no_loc_{index}"] = finding
            continue

        existing = seen.get(key)
        if existing is None:
            seen[key] = finding
        elif severity_rank(finding.get("severity")) > severity_rank(existing.get("severity")):
            seen[key] = finding

    return list(seen.values())


def is_thematic_title(title: Any) -> bool:
    """True when a title names a category ("Access Control Issues") rather than one bug."""
    if not title or not isinstance(title, str):
        return False
    has_specific_ref = bool(SPECIFIC_REF_RE.search(title))
    if THEMATIC_LEAD_RE.search(title):
        return True
    if QUANTIFIER_LEAD_RE.search(title) and not has_specific_ref:
        return True
    if GROUPING_TAIL_RE.search(title) and not has_specific_ref:
        return True
    return False


def _js_truthy(value: Any) -> bool:
    if isinstance(value, (list, dict)):
        return True
    return bool(value)


def findings_of(data: dict[str, Any]) -> Any:
    for key in FINDINGS_KEYS:
        value = data.get(key)
        if _js_truthy(value):
            return value
    return []


def validate_per_vuln_format(data: Any) -> Optional[str]:
    """First error wins; None when every finding is a single, located bug."""
    if not data or not isinstance(data, dict):
        return "No data to validate"

    findings = findings_of(data)
    if not isinstance(findings, list):
        return "findings is not an array"

    for index, finding in enumerate(findings):
        if not isinstance(finding, dict):
            return f"Finding at index {index} is not an object"
        finding_id = finding.get("id")
        if not finding_id:
            return f"Finding at index {index} missing id"
        if not finding.get("file") and not finding.get("affected"):
            return f"Finding {finding_id} missing file reference"
        if not finding.get("severity"):
            return f"Finding {finding_id} missing severity"
        title = finding.get("title")
        if is_thematic_title(title):
            return (
                f'Finding {finding_id} title looks like thematic grouping: "{title}". '
                "Each finding must describe a specific vulnerability, not a category."
            )
    return None


def validate_artifact_exists(
    file_path: Union[str, Path], gate_name: str, label: Optional[str] = None
) -> Optional[GateDecision]:
    """Block when ``file_path`` is absent or zero bytes; ``label`` is how the reason names it."""
    path = Path(file_path)
    label = label or str(path)
    if not path.exists():
        return block(f"{gate_name} FAILED: {label} is missing.")
    try:
        if path.stat().st_size == 0:
            return block(f"{gate_name} FAILED: {label} exists but is empty.")
    except OSError:
        return block(f"{gate_name} FAILED: Cannot read {label}.")
    return None
