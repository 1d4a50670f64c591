from issue_log import parse_flag, parse_issue_blocks, parse_issue_log, parse_severity, parse_status
from schemas import IssueSeverity, IssueStatus

LOG = """# Red Team Issue Log

## RT-001: Reentrancy in Vault.withdraw
- **Severity:** HIGH
- **Status:** CLOSED
- **Regression Test Required:** `test/Vault.t.sol::test_reentrancy`
- **Test Verified:** Yes

## RT-002
- Title: Oracle staleness not checked
- Severity: medium
- Status: Fixed Pending Verify
- Regression Test Required: PENDING
- Test Verified: No

## RT-003 - Event missing on setFee
**Severity**: LOW
**Status**: OPEN
"""


def test_parse_issue_log_extracts_every_block():
    issues = parse_issue_log(LOG)
    assert [issue.id for issue in issues] == ["RT-001", "RT-002", "RT-003"]

    first, second, third = issues
    assert first.severity == IssueSeverity.HIGH
    assert first.status == IssueStatus.CLOSED
    assert first.title == "Reentrancy in Vault.withdraw"
    assert first.regression_test == "test/Vault.t.sol::test_reentrancy"
    assert first.test_verified

    assert second.severity == IssueSeverity.MED
    assert second.status == IssueStatus.FIXED_PENDING_VERIFY
    assert second.title == "Oracle staleness not checked"
    assert not second.has_regression_test
    assert not second.test_verified

    assert third.severity == IssueSeverity.LOW
    assert third.status == IssueStatus.OPEN
    assert third.title == "Event missing on setFee"
    assert third.regression_test is None


def test_missing_and_malformed_fields_stay_distinguishable():
    blocks = parse_issue_blocks("## RT-009: Bad entry\n- Severity: catastrophic\n")
    block = blocks[0]
    assert block.fields["Severity"].malformed
    assert block.fields["Status"].missing
    problems = block.problems()
    assert "Status missing" in problems
    assert any(problem.startswith("Severity malformed") for problem in problems)

    issue = block.to_issue()
    assert issue.severity is None
    assert not issue.blocks_final_gate
    assert issue.problems == problems
    assert not any(problem.startswith("Title") for problem in problems)


def test_title_falls_back_to_unknown():
    issue = parse_issue_log("## RT-010\n- Severity: HIGH\n")[0]
    assert issue.title == "Unknown"


def test_parse_severity_accepts_long_forms():
    assert parse_severity("Critical") == IssueSeverity.HIGH
    assert parse_severity("MED (oracle)") == IssueSeverity.MED
    assert parse_severity("informational") == IssueSeverity.LOW
    assert parse_severity("") is None


def test_parse_status_variants():
    assert parse_status("closed") == IssueStatus.CLOSED
    assert parse_status("FIXED-PENDING-VERIFY") == IssueStatus.FIXED_PENDING_VERIFY
    assert parse_status("CLOSED (verified 2024-05-01)") == IssueStatus.CLOSED
    assert parse_status("CLOSED.") == IssueStatus.CLOSED
    assert parse_status("Fixed_Pending_Verify - awaiting CI") == IssueStatus.FIXED_PENDING_VERIFY
    assert parse_status("WONTFIX") is None
    assert parse_status("CLOSEDISH") is None


def test_parse_flag():
    assert parse_flag("Yes") is True
    assert parse_flag("true, see CI run") is True
    assert parse_flag("Yes, forge test passes") is True
    assert parse_flag("no") is False
    assert parse_flag("No - still flaky") is False
    assert parse_flag("maybe") is None
    assert parse_flag("yesterday") is None


def test_empty_log_has_no_issues():
    assert parse_issue_log("# Red Team Issue Log\n\nNothing found.\n") == []


def test_trailing_commentary_after_values_is_ignored():
    issue = parse_issue_log(
        "## RT-011: Reentrancy\n"
        "- Severity: HIGH\n"
        "- Status: CLOSED.\n"
        "- Regression Test Required: test/Vault.t.sol::test_reentrancy\n"
        "- Test Verified: Yes, forge test passes\n"
    )[0]
    assert issue.status == IssueStatus.CLOSED
    assert issue.test_verified
    assert issue.problems == []
