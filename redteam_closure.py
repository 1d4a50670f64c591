"""
Gate E: every HIGH/MED red-team issue must be formally closed before the
final gate.

An issue passes only when all three hold: status CLOSED, a concrete
regression test reference, and that test marked verified. When the issue
log does not exist at all, the gate falls back to scanning every upstream
detection source; if any of them ever reported a HIGH/MED finding, the
missing log is itself the violation. A consolidated findings file that
cannot be read counts as such a report, and a log entry whose severity
cannot be read blocks as well.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

from artifacts import iter_subdirectories, load_artifact, read_nonempty_text, read_text
from config import BlindAuditConfig, PipelineConfig, ProjectPaths
from content_signatures import mentions_high_or_medium
from error_handler import GateOutcome, block
from issue_log import parse_issue_log
from logger import get_logger
from schemas import FindingsArtifact, IssueStatus, RedTeamIssue, RedTeamIssuesArtifact

logger = get_logger(__name__)

AGENTS = frozenset({"redteam-verifier", "final-gate-codex"})

CONSOLIDATED_FINDINGS_FILE = "consolidated-findings.json"
DETECTION_REVIEW_FILES = (
    "exploit-hunt-review.md",
    "opus-attack-plan.md",
    "codex-deep-exploit-review.md",
    "dispute-resolution.md",
)


def _consolidated_findings_paths(paths: ProjectPaths) -> Iterator[Path]:
    yield paths.task(CONSOLIDATED_FINDINGS_FILE)
    for run_dir in iter_subdirectories(paths.task_dir):
        yield run_dir / CONSOLIDATED_FINDINGS_FILE


def _consolidated_has_serious_finding(file_path: Path) -> bool:
    loaded = load_artifact(file_path, FindingsArtifact)
    if loaded.value is not None:
        return any(finding.is_high_or_medium for finding in loaded.value.findings)
    if loaded.missing and read_nonempty_text(file_path) is None:
        return False
    # present but unreadable: absence of HIGH/MED findings cannot be confirmed
    logger.warning(
        "Treating unreadable consolidated findings as reporting HIGH/MED issues",
        extra={"context": {"path": str(file_path), "error": loaded.error}},
    )
    return True


def any_source_reports_high_or_medium(paths: ProjectPaths) -> bool:
    """True when consolidated findings or any detection review claims a HIGH/MED issue."""
    for file_path in _consolidated_findings_paths(paths):
        if _consolidated_has_serious_finding(file_path):
            return True

    for review_file in DETECTION_REVIEW_FILES:
        content = read_text(paths.docs("reviews", review_file))
        if content and mentions_high_or_medium(content):
            return True
    return False


def _short_list(issues: list[RedTeamIssue]) -> str:
    return ", ".join(f"{issue.id}: {issue.title}" for issue in issues)


def check_issue_closure(issues: list[RedTeamIssue], require_regression_tests: bool = True) -> GateOutcome:
    """The conjunctive closure rule over already-parsed issues."""
    unreadable = [issue for issue in issues if issue.severity is None]
    if unreadable:
        listing = "; ".join(f"{issue.id} ({', '.join(issue.problems)})" for issue in unreadable)
        return block(f"GATE E FAILED: Cannot determine severity for: {listing}")

    serious = [issue for issue in issues if issue.blocks_final_gate]
    if not serious:
        return None

    not_closed = [issue for issue in serious if issue.status != IssueStatus.CLOSED]
    if not_closed:
        listing = "\n  ".join(issue.describe() for issue in not_closed)
        return block(f"GATE E FAILED: {len(not_closed)} HIGH/MED issues not CLOSED:\n  {listing}")

    if require_regression_tests:
        missing_tests = [issue for issue in serious if not issue.has_regression_test]
        if missing_tests:
            return block(f"GATE E FAILED: Missing regression tests for: {_short_list(missing_tests)}")

        unverified = [issue for issue in serious if not issue.test_verified]
        if unverified:
            return block(f"GATE E FAILED: Unverified regression tests for: {_short_list(unverified)}")
    return None


def validate_gate_e(paths: ProjectPaths, config: BlindAuditConfig) -> GateOutcome:
    issue_log = read_nonempty_text(paths.docs("reviews", "red-team-issue-log.md"))
    if issue_log is None:
        if any_source_reports_high_or_medium(paths):
            return block(
                "GATE E FAILED: Detection stages found HIGH/MED issues but no red-team-issue-log.md exists."
            )
        return None

    issues = parse_issue_log(issue_log)
    outcome = check_issue_closure(issues, require_regression_tests=config.require_regression_tests)
    if outcome is not None:
        return outcome
    if not any(issue.blocks_final_gate for issue in issues):
        return None

    loaded = load_artifact(paths.task("red-team-issues.json"), RedTeamIssuesArtifact)
    if loaded.missing:
        return None
    if loaded.value is None:
        return block(f"GATE E FAILED: {loaded.schema_reason()}")
    if loaded.value.ready_for_final_gate is False:
        return block("GATE E FAILED: red-team-issues.json shows ready_for_final_gate=false")
    return None


def validate_for_agent(agent: str, paths: ProjectPaths, pipeline: PipelineConfig) -> GateOutcome:
    if agent not in AGENTS:
        return None
    return validate_gate_e(paths, pipeline.blind_audit_sc)


def is_strict(pipeline: PipelineConfig) -> bool:
    return pipeline.blind_audit_sc.is_strict
