"""
Stage 3.5C: merge the Opus and Codex detect findings.

Both detectors run blind to each other. A location both of them report is
``DUAL_CONFIRMED``; anything only one reported is kept but flagged for
cross-model scrutiny and listed as a dispute item.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from artifacts import as_list
from config import ProjectPaths
from logger import get_logger
from normalize import deduplicate_by_location, findings_of, normalize_severity, read_and_normalize_json, severity_rank

logger = get_logger(__name__)

DUAL_CONFIRMED = "DUAL_CONFIRMED"
SINGLE_OPUS = "SINGLE_OPUS"
SINGLE_CODEX = "SINGLE_CODEX"
BROAD_FILE_MATCH = "broad_file_match"

OPUS = "opus"
CODEX = "codex"

MERGED_FINDINGS_FILE = "merged-findings.json"
MERGED_REPORT_FILE = "merged-detect-findings.md"

Finding = dict[str, Any]


def _file_ref(finding: Finding) -> str:
    return str(finding.get("file") or finding.get("affected") or "").lower().replace("\\", "/")


def location_key(finding: Finding) -> str:
    """``file:line`` when the line is known, the bare file otherwise."""
    line = finding.get("line") or 0
    file_ref = _file_ref(finding)
    if isinstance(line, (int, float)) and line > 0:
        return f"{file_ref}:{line}"
    return file_ref


def broad_key(finding: Finding) -> str:
    return _file_ref(finding)


def higher_severity(first: Any, second: Any) -> Any:
    if severity_rank(first) >= severity_rank(second):
        return first or second
    return second or first


def merge_detect_findings(opus: list[Finding], codex: list[Finding]) -> list[Finding]:
    """
    Codex findings are walked in order against an index of Opus findings.
    An exact location match wins; failing that, the first Opus finding in
    the same file is claimed if nobody claimed it yet. Ids are assigned in
    output order, so they are sequential across all three categories.
    """
    merged: list[Finding] = []
    opus_by_location: dict[str, Finding] = {}
    opus_by_file: dict[str, list[Finding]] = {}
    for finding in opus:
        # a later duplicate at the same location replaces the earlier one
        opus_by_location[location_key(finding)] = finding
        opus_by_file.setdefault(broad_key(finding), []).append(finding)

    claimed: set[str] = set()
    for codex_finding in codex:
        key = location_key(codex_finding)
        opus_finding = opus_by_location.get(key)
        if opus_finding is not None:
            claimed.add(key)
            merged.append(
                {
                    **codex_finding,
                    "id": f"DUAL-{len(merged) + 1}",
                    "confidence": DUAL_CONFIRMED,
                    "found_by": [OPUS, CODEX],
                    "severity": higher_severity(opus_finding.get("severity"), codex_finding.get("severity")),
                    "opus_id": opus_finding.get("id"),
                    "codex_id": codex_finding.get("id"),
                    "opus_title": opus_finding.get("title"),
                    "codex_title": codex_finding.get("title"),
                }
            )
            continue

        same_file = opus_by_file.get(broad_key(codex_finding))
        if same_file:
            opus_finding = same_file[0]
            opus_key = location_key(opus_finding)
            if opus_key not in claimed:
                claimed.add(opus_key)
                merged.append(
                    {
                        **codex_finding,
                        "id": f"DUAL-{len(merged) + 1}",
                        "confidence": DUAL_CONFIRMED,
                        "found_by": [OPUS, CODEX],
                        "severity": higher_severity(opus_finding.get("severity"), codex_finding.get("severity")),
                        "opus_id": opus_finding.get("id"),
                        "codex_id": codex_finding.get("id"),
                        "match_type": BROAD_FILE_MATCH,
                    }
                )
                continue

        merged.append(
            {
                **codex_finding,
                "id": f"SINGLE-CODEX-{len(merged) + 1}",
                "confidence": SINGLE_CODEX,
                "found_by": [CODEX],
                "needs_scrutiny": True,
            }
        )

    for key, opus_finding in opus_by_location.items():
        if key in claimed:
            continue
        merged.append(
            {
                **opus_finding,
                "id": f"SINGLE-OPUS-{len(merged) + 1}",
                "confidence": SINGLE_OPUS,
                "found_by": [OPUS],
                "needs_scrutiny": True,
            }
        )
    return merged


def consolidate_findings(finding_lists: Iterable[list[Finding]]) -> list[Finding]:
    combined: list[Finding] = []
    for findings in finding_lists:
        combined.extend(as_list(findings))
    return deduplicate_by_location(combined)


def load_findings(file_path: Optional[Path]) -> list[Finding]:
    if file_path is None:
        return []
    data = read_and_normalize_json(file_path)
    if not isinstance(data, dict):
        return []
    return [finding for finding in as_list(findings_of(data)) if isinstance(finding, dict)]


def find_findings_file(
    paths: ProjectPaths,
    run_id: str,
    detector: str,
    explicit_path: Optional[Path] = None,
) -> Optional[Path]:
    if explicit_path is not None and explicit_path.exists():
        return explicit_path

    run_dir = paths.task(run_id)
    if detector == OPUS:
        candidates = [
            run_dir / "opus-detect-findings.json",
            run_dir / "exploit-hunt-review.json",
            paths.task("exploit-hunt-review.json"),
        ]
    else:
        candidates = [
            run_dir / "codex-detect-findings.json",
            paths.task("codex-detect-findings.json"),
        ]

    for candidate in candidates:
        if candidate.exists():
            logger.info(
                "Using detect findings",
                extra={"context": {"detector": detector, "path": str(candidate)}},
            )
            return candidate
    return None


def _with_confidence(merged: list[Finding], confidence: str) -> list[Finding]:
    return [finding for finding in merged if finding.get("confidence") == confidence]


def summarize(merged: list[Finding]) -> dict[str, int]:
    return {
        "total": len(merged),
        "dual_confirmed": len(_with_confidence(merged, DUAL_CONFIRMED)),
        "single_opus": len(_with_confidence(merged, SINGLE_OPUS)),
        "single_codex": len(_with_confidence(merged, SINGLE_CODEX)),
        "high_severity": sum(
            1 for finding in merged if normalize_severity(finding.get("severity")) in ("high", "critical")
        ),
    }


def dispute_items(merged: list[Finding]) -> list[dict[str, Any]]:
    singles = _with_confidence(merged, SINGLE_OPUS) + _with_confidence(merged, SINGLE_CODEX)
    return [
        {
            "id": finding["id"],
            "confidence": finding["confidence"],
            "severity": finding.get("severity"),
            "file": finding.get("file"),
            "title": finding.get("title"),
            "reason": f"Found by {', '.join(finding['found_by'])} only - needs cross-model verification",
        }
        for finding in singles
    ]


def _location(finding: Finding) -> str:
    line = finding.get("line")
    suffix = f":{line}" if line else ""
    return f"{finding.get('file') or 'unknown'}{suffix}"


def render_report(merged: list[Finding], opus_count: int, codex_count: int, generated_at: str) -> str:
    dual = _with_confidence(merged, DUAL_CONFIRMED)
    singles = _with_confidence(merged, SINGLE_OPUS) + _with_confidence(merged, SINGLE_CODEX)

    dual_section = "No dual-confirmed findings.\n"
    if dual:
        dual_section = "\n".join(
            f"### {f['id']}: {f.get('title') or 'Untitled'}\n"
            f"**Severity:** {f.get('severity')}\n"
            f"**File:** {_location(f)}\n"
            f"**Found by:** {', '.join(f['found_by'])}\n"
            f"**Opus ID:** {f.get('opus_id') or 'N/A'} | **Codex ID:** {f.get('codex_id') or 'N/A'}\n"
            for f in dual
        )

    single_section = "No single-model findings.\n"
    if singles:
        single_section = "\n".join(
            f"### {f['id']}: {f.get('title') or 'Untitled'}\n"
            f"**Severity:** {f.get('severity')}\n"
            f"**File:** {_location(f)}\n"
            f"**Found by:** {', '.join(f['found_by'])} only\n"
            "**Action:** Needs cross-model verification\n"
            for f in singles
        )

    summary = summarize(merged)
    return (
        "# Merged Detect Findings (Stage 3.5C)\n\n"
        f"**Date:** {generated_at}\n"
        f"**Opus findings:** {opus_count}\n"
        f"**Codex findings:** {codex_count}\n"
        f"**Total unique:** {summary['total']}\n\n"
        "## Summary\n\n"
        "| Category | Count | Action |\n"
        "|----------|-------|--------|\n"
        f"| Dual-confirmed | {summary['dual_confirmed']} | HIGH confidence - proceed to red-team |\n"
        f"| Single-Opus | {summary['single_opus']} | Needs Codex scrutiny |\n"
        f"| Single-Codex | {summary['single_codex']} | Needs Opus scrutiny |\n\n"
        "## Dual-Confirmed Findings (HIGH Confidence)\n\n"
        f"{dual_section}\n"
        "## Single-Model Findings (Need Extra Scrutiny)\n\n"
        f"{single_section}"
    )


@dataclass(frozen=True)
class MergeResult:
    run_id: str
    summary: dict[str, int]
    output_path: Optional[Path] = None
    report_path: Optional[Path] = None


def write_merged_findings(
    paths: ProjectPaths,
    run_id: str,
    opus_findings_path: Optional[Path] = None,
    codex_findings_path: Optional[Path] = None,
    write_report: bool = True,
) -> MergeResult:
    opus_path = find_findings_file(paths, run_id, OPUS, opus_findings_path)
    codex_path = find_findings_file(paths, run_id, CODEX, codex_findings_path)
    opus = load_findings(opus_path)
    codex = load_findings(codex_path)

    if not opus and not codex:
        logger.info("No findings from either detector", extra={"context": {"run_id": run_id}})
        return MergeResult(run_id=run_id, summary=summarize([]))

    merged = merge_detect_findings(opus, codex)
    generated_at = datetime.now(timezone.utc).isoformat()
    summary = summarize(merged)
    result = {
        "id": f"merged-findings-{int(time.time() * 1000)}",
        "run_id": run_id,
        "stage": "3.5C",
        "opus_source": str(opus_path) if opus_path else None,
        "codex_source": str(codex_path) if codex_path else None,
        "summary": summary,
        "findings": merged,
        "dispute_items": dispute_items(merged),
        "generated_at": generated_at,
    }

    run_dir = paths.task(run_id)
    run_dir.mkdir(parents=True, exist_ok=True)
    output_path = run_dir / MERGED_FINDINGS_FILE
    output_path.write_text(json.dumps(result, indent=2), encoding="utf-8")

    report_path = None
    if write_report:
        reviews_dir = paths.docs("reviews")
        reviews_dir.mkdir(parents=True, exist_ok=True)
        report_path = reviews_dir / MERGED_REPORT_FILE
        report_path.write_text(render_report(merged, len(opus), len(codex), generated_at), encoding="utf-8")

    logger.info("Merged detect findings", extra={"context": {"run_id": run_id, **summary}})
    return MergeResult(run_id=run_id, summary=summary, output_path=output_path, report_path=report_path)
