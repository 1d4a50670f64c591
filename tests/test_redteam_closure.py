import json

import pytest

from config import BlindAuditConfig, PipelineConfig, ProjectPaths
from redteam_closure import any_source_reports_high_or_medium, check_issue_closure, validate_for_agent, validate_gate_e
from schemas import IssueSeverity, IssueStatus, RedTeamIssue


def _paths(tmp_path):
    return ProjectPaths(root=tmp_path)


def _write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _issue_log(tmp_path, content):
    _write(tmp_path / "docs" / "reviews" / "red-team-issue-log.md", content)


def _closed_issue(issue_id="RT-001", **overrides):
    fields = dict(
        id=issue_id,
        severity=IssueSeverity.HIGH,
        status=IssueStatus.CLOSED,
        title="Reentrancy",
        regression_test="test/Vault.t.sol::test_reentrancy",
        test_verified=True,
    )
    fields.update(overrides)
    return RedTeamIssue(**fields)


def test_fully_closed_issue_passes():
    assert check_issue_closure([_closed_issue()]) is None


def test_open_issue_blocks_with_listing():
    outcome = check_issue_closure([_closed_issue(status=IssueStatus.OPEN, title="Oracle lag")])
    assert outcome is not None
    assert outcome.reason.startswith("GATE E FAILED: 1 HIGH/MED issues not CLOSED:")
    assert "RT-001 (HIGH): Oracle lag - OPEN" in outcome.reason


def test_closed_without_regression_test_blocks():
    outcome = check_issue_closure([_closed_issue(regression_test="-")])
    assert outcome.reason == "GATE E FAILED: Missing regression tests for: RT-001: Reentrancy"


def test_closed_with_unverified_test_blocks():
    outcome = check_issue_closure([_closed_issue(test_verified=False)])
    assert outcome.reason == "GATE E FAILED: Unverified regression tests for: RT-001: Reentrancy"


def test_regression_requirements_can_be_disabled():
    issue = _closed_issue(regression_test=None, test_verified=False)
    assert check_issue_closure([issue], require_regression_tests=False) is None


def test_low_issues_never_block():
    issue = _closed_issue(severity=IssueSeverity.LOW, status=IssueStatus.OPEN)
    assert check_issue_closure([issue]) is None


def test_missing_log_with_high_finding_in_review_blocks(tmp_path):
    _write(tmp_path / "docs" / "reviews" / "exploit-hunt-review.md", "### H-1\nSeverity: HIGH\n")
    outcome = validate_gate_e(_paths(tmp_path), BlindAuditConfig())
    assert outcome is not None
    assert "no red-team-issue-log.md exists" in outcome.reason


def test_missing_log_with_consolidated_run_findings_blocks(tmp_path):
    findings = {"findings": [{"id": "F-1", "severity": "Medium", "file": "src/A.sol"}]}
    _write(tmp_path / ".task" / "blind-audit-1" / "consolidated-findings.json", json.dumps(findings))
    assert any_source_reports_high_or_medium(_paths(tmp_path))
    assert validate_gate_e(_paths(tmp_path), BlindAuditConfig()) is not None


def test_missing_log_with_only_low_findings_passes(tmp_path):
    findings = {"findings": [{"id": "F-1", "severity": "low"}]}
    _write(tmp_path / ".task" / "consolidated-findings.json", json.dumps(findings))
    _write(tmp_path / "docs" / "reviews" / "dispute-resolution.md", "| LOW | gas |\n")
    assert validate_gate_e(_paths(tmp_path), BlindAuditConfig()) is None


def test_unreadable_consolidated_findings_count_as_high(tmp_path):
    _write(tmp_path / ".task" / "consolidated-findings.json", '{"findings": "lots"}')
    assert any_source_reports_high_or_medium(_paths(tmp_path))

    _write(tmp_path / ".task" / "consolidated-findings.json", "definitely not json")
    assert any_source_reports_high_or_medium(_paths(tmp_path))

    _write(tmp_path / ".task" / "consolidated-findings.json", "")
    assert not any_source_reports_high_or_medium(_paths(tmp_path))


def test_oddly_shaped_finding_still_counts(tmp_path):
    findings = {
        "findings": [
            {"id": "F-1", "severity": "HIGH", "file": ["Vault.sol", "Pool.sol"], "line": "12-20"},
            "see appendix",
        ]
    }
    _write(tmp_path / ".task" / "consolidated-findings.json", json.dumps(findings))
    outcome = validate_gate_e(_paths(tmp_path), BlindAuditConfig())
    assert outcome is not None
    assert "no red-team-issue-log.md exists" in outcome.reason


def test_log_with_unverified_high_issue_blocks(tmp_path):
    _issue_log(
        tmp_path,
        "## RT-001: Reentrancy in withdraw\n"
        "- **Severity:** HIGH\n"
        "- **Status:** CLOSED\n"
        "- **Regression Test Required:** test/Vault.t.sol::test_reentrancy\n"
        "- **Test Verified:** No\n",
    )
    outcome = validate_gate_e(_paths(tmp_path), BlindAuditConfig())
    assert outcome.reason.startswith("GATE E FAILED: Unverified regression tests for: RT-001")


def test_log_with_only_low_issues_passes_even_if_not_ready(tmp_path):
    _issue_log(tmp_path, "## RT-001: Naming\n- Severity: LOW\n- Status: OPEN\n")
    _write(tmp_path / ".task" / "red-team-issues.json", '{"ready_for_final_gate": false}')
    assert validate_gate_e(_paths(tmp_path), BlindAuditConfig()) is None


def test_ready_flag_false_blocks_after_closure(tmp_path):
    _issue_log(
        tmp_path,
        "## RT-001: Reentrancy\n"
        "- Severity: MED\n"
        "- Status: CLOSED\n"
        "- Regression Test Required: test/A.t.sol::test_a\n"
        "- Test Verified: Yes\n",
    )
    _write(tmp_path / ".task" / "red-team-issues.json", '{"ready_for_final_gate": false}')
    outcome = validate_gate_e(_paths(tmp_path), BlindAuditConfig())
    assert outcome.reason == "GATE E FAILED: red-team-issues.json shows ready_for_final_gate=false"

    _write(tmp_path / ".task" / "red-team-issues.json", '{"ready_for_final_gate": true}')
    assert validate_gate_e(_paths(tmp_path), BlindAuditConfig()) is None


def test_validate_for_agent_ignores_other_agents(tmp_path):
    _write(tmp_path / "docs" / "reviews" / "exploit-hunt-review.md", "Severity: HIGH")
    assert validate_for_agent("sc-implementer", _paths(tmp_path), PipelineConfig()) is None
    assert validate_for_agent("final-gate-codex", _paths(tmp_path), PipelineConfig()) is not None


ISSUE_FIELDS = {
    "Severity": "HIGH",
    "Status": "CLOSED",
    "Regression Test Required": "test/Foo.t.sol::test_x",
    "Test Verified": "Yes",
}


def _issue_block(**overrides):
    fields = {**ISSUE_FIELDS, **overrides}
    lines = [f"- {label}: {value}" for label, value in fields.items() if value is not None]
    return "## RT-001: Reentrancy in withdraw\n" + "\n".join(lines) + "\n"


def test_closed_and_verified_issue_passes_end_to_end(tmp_path):
    _issue_log(tmp_path, _issue_block())
    assert validate_gate_e(_paths(tmp_path), BlindAuditConfig()) is None


def test_fixed_pending_verify_blocks_end_to_end(tmp_path):
    _issue_log(tmp_path, _issue_block(Status="FIXED_PENDING_VERIFY"))
    outcome = validate_gate_e(_paths(tmp_path), BlindAuditConfig())
    assert outcome is not None
    assert "RT-001" in outcome.reason
    assert "FIXED_PENDING_VERIFY" in outcome.reason


@pytest.mark.parametrize(
    "label, expected",
    [
        ("Status", "GATE E FAILED: 1 HIGH/MED issues not CLOSED:\n  RT-001 (HIGH): Reentrancy in withdraw - UNKNOWN"),
        ("Regression Test Required", "GATE E FAILED: Missing regression tests for: RT-001: Reentrancy in withdraw"),
        ("Test Verified", "GATE E FAILED: Unverified regression tests for: RT-001: Reentrancy in withdraw"),
        ("Severity", "GATE E FAILED: Cannot determine severity for: RT-001 (Severity missing)"),
    ],
)
def test_each_missing_field_blocks(tmp_path, label, expected):
    _issue_log(tmp_path, _issue_block(**{label: None}))
    assert validate_gate_e(_paths(tmp_path), BlindAuditConfig()).reason == expected


def test_unreadable_severity_blocks_with_the_problem(tmp_path):
    _issue_log(tmp_path, _issue_block(Severity="catastrophic"))
    outcome = validate_gate_e(_paths(tmp_path), BlindAuditConfig())
    assert outcome.reason == "GATE E FAILED: Cannot determine severity for: RT-001 (Severity malformed: 'catastrophic')"


def test_trailing_commentary_does_not_block(tmp_path):
    _issue_log(tmp_path, _issue_block(Status="CLOSED.", **{"Test Verified": "Yes, forge test passes"}))
    assert validate_gate_e(_paths(tmp_path), BlindAuditConfig()) is None
