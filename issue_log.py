"""
Parser for the Markdown red-team issue log (docs/reviews/red-team-issue-log.md).

The log is a sequence of blocks, each opened by a heading carrying an
``RT-<n>`` id and holding ``Label: value`` lines:

    ## RT-001: Reentrancy in Vault.withdraw
    - **Severity:** HIGH
    - **Status:** CLOSED
    - **Regression Test Required:** test/Vault.t.sol::test_reentrancy
    - **Test Verified:** Yes

Parsing happens in two steps: split the text on block headings, then run a
fixed extractor per field. Each field comes back as a ParsedField so that
"the line is not there" and "the line is there but the value is garbage"
stay distinguishable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from logger import get_logger
from normalize import normalize_severity
from schemas import IssueSeverity, IssueStatus, RedTeamIssue

logger = get_logger(__name__)

BLOCK_HEADING_RE = re.compile(r"##\s*(RT-\d+)")

SEVERITY_LABEL = "Severity"
STATUS_LABEL = "Status"
TITLE_LABEL = "Title"
REGRESSION_TEST_LABEL = "Regression Test Required"
TEST_VERIFIED_LABEL = "Test Verified"

SEVERITY_TO_ISSUE: dict[str, IssueSeverity] = {
    "critical": IssueSeverity.HIGH,
    "high": IssueSeverity.HIGH,
    "medium": IssueSeverity.MED,
    "low": IssueSeverity.LOW,
    "info": IssueSeverity.LOW,
}

TRUTHY_FLAGS = {"yes", "true"}
FLAG_VALUE_RE = re.compile(r"(yes|true|no|false)\b", re.IGNORECASE)
STATUS_VALUE_RE = re.compile(r"(OPEN|FIXED[_\s-]+PENDING[_\s-]+VERIFY|CLOSED)\b", re.IGNORECASE)


def _field_pattern(label: str) -> re.Pattern[str]:
    # tolerates "**Label:** value" and "**Label**: value"
    return re.compile(rf"\b{re.escape(label)}\s*\**\s*:\s*\**\s*(.+)", re.IGNORECASE)


FIELD_PATTERNS: dict[str, re.Pattern[str]] = {
    label: _field_pattern(label)
    for label in (SEVERITY_LABEL, STATUS_LABEL, TITLE_LABEL, REGRESSION_TEST_LABEL, TEST_VERIFIED_LABEL)
}


@dataclass(frozen=True)
class ParsedField:
    raw: Optional[str] = None
    value: Any = None

    @property
    def missing(self) -> bool:
        return self.raw is None

    @property
    def malformed(self) -> bool:
        return self.raw is not None and self.value is None


def _clean(value: str) -> str:
    return value.strip().strip("*`").strip()


def parse_severity(raw: str) -> Optional[IssueSeverity]:
    token = raw.split()[0] if raw.split() else ""
    if token.upper() in IssueSeverity.__members__:
        return IssueSeverity[token.upper()]
    return SEVERITY_TO_ISSUE.get(normalize_severity(token))


def parse_status(raw: str) -> Optional[IssueStatus]:
    match = STATUS_VALUE_RE.match(raw)
    if not match:
        return None
    return IssueStatus(re.sub(r"[\s_-]+", "_", match.group(1)).upper())


def parse_flag(raw: str) -> Optional[bool]:
    # "Yes, forge test passes" counts; only the leading word is the answer
    match = FLAG_VALUE_RE.match(raw)
    if not match:
        return None
    return match.group(1).lower() in TRUTHY_FLAGS


def parse_text(raw: str) -> Optional[str]:
    return raw or None


def extract_field(body: str, label: str, parse: Callable[[str], Any]) -> ParsedField:
    match = FIELD_PATTERNS[label].search(body)
    if not match:
        return ParsedField()
    raw = _clean(match.group(1))
    return ParsedField(raw=raw, value=parse(raw))


@dataclass
class IssueBlock:
    id: str
    heading: str
    body: str
    fields: dict[str, ParsedField] = field(default_factory=dict)

    def problems(self) -> list[str]:
        found = []
        for label, parsed in self.fields.items():
            if parsed.missing and label != TITLE_LABEL:
                found.append(f"{label} missing")
            elif parsed.malformed:
                found.append(f"{label} malformed: {parsed.raw!r}")
        return found

    def heading_title(self) -> Optional[str]:
        remainder = self.heading.split(self.id, 1)[-1]
        remainder = remainder.strip().lstrip(":-").strip()
        return _clean(remainder) or None

    def to_issue(self) -> RedTeamIssue:
        title = self.fields[TITLE_LABEL].value or self.heading_title() or "Unknown"
        return RedTeamIssue(
            id=self.id,
            severity=self.fields[SEVERITY_LABEL].value,
            status=self.fields[STATUS_LABEL].value,
            title=title,
            regression_test=self.fields[REGRESSION_TEST_LABEL].value,
            test_verified=bool(self.fields[TEST_VERIFIED_LABEL].value),
            problems=self.problems(),
        )


def split_issue_blocks(content: str) -> list[IssueBlock]:
    headings = list(BLOCK_HEADING_RE.finditer(content))
    blocks = []
    for index, heading in enumerate(headings):
        end = headings[index + 1].start() if index + 1 < len(headings) else len(content)
        line_end = content.find("\n", heading.start(), end)
        heading_line = content[heading.start() : line_end if line_end != -1 else end]
        blocks.append(
            IssueBlock(
                id=heading.group(1),
                heading=heading_line,
                body=content[heading.end() : end],
            )
        )
    return blocks


def parse_block(block: IssueBlock) -> IssueBlock:
    block.fields = {
        SEVERITY_LABEL: extract_field(block.body, SEVERITY_LABEL, parse_severity),
        STATUS_LABEL: extract_field(block.body, STATUS_LABEL, parse_status),
        TITLE_LABEL: extract_field(block.body, TITLE_LABEL, parse_text),
        REGRESSION_TEST_LABEL: extract_field(block.body, REGRESSION_TEST_LABEL, parse_text),
        TEST_VERIFIED_LABEL: extract_field(block.body, TEST_VERIFIED_LABEL, parse_flag),
    }
    return block


def parse_issue_blocks(content: str) -> list[IssueBlock]:
    return [parse_block(block) for block in split_issue_blocks(content)]


def parse_issue_log(content: str) -> list[RedTeamIssue]:
    issues = []
    for block in parse_issue_blocks(content):
        malformed = [label for label, parsed in block.fields.items() if parsed.malformed]
        if malformed:
            logger.warning(
                "Issue log entry has malformed fields",
                extra={"context": {"issue_id": block.id, "fields": malformed}},
            )
        issues.append(block.to_issue())
    return issues
