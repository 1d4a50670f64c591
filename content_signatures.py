from __future__ import annotations

import re
from typing import Iterable, Optional

Pattern = re.Pattern[str]

# Solidity source
CODE_PATTERNS: tuple[Pattern, ...] = (
    re.compile(r"pragma\s+solidity", re.IGNORECASE),
    re.compile(r"contract\s+\w+\s*\{"),
    re.compile(r"function\s+\w+\s*\([^)]*\)\s*(external|public|internal|private)"),
    re.compile(r"mapping\s*\([^)]+\)"),
    re.compile(r"event\s+\w+\s*\([^)]*\)\s*;"),
    re.compile(r"error\s+\w+\s*\([^)]*\)\s*;"),
    re.compile(r"import\s+[\"'][^\"']+\.sol[\"']"),
    re.compile(r"interface\s+\w+\s*\{[\s\S]*?function"),
)

# Threat-model / design prose that the code reviewers must not see
SPEC_PROSE_PATTERNS: tuple[Pattern, ...] = (
    re.compile(r"##\s*(Trust Assumptions|Attacker Classes)", re.IGNORECASE),
    re.compile(r"##\s*(Attack Surface|Attack Vectors)", re.IGNORECASE),
    re.compile(r"##\s*(Assets at Risk)", re.IGNORECASE),
    re.compile(r"##\s*(Motivation|Why|Rationale)", re.IGNORECASE),
    re.compile(r"\|\s*Role\s*\|\s*Powers\s*\|", re.IGNORECASE),
    re.compile(r"\|\s*Class\s*\|\s*Capabilities\s*\|", re.IGNORECASE),
    re.compile(r"\|\s*Entry Point\s*\|\s*Risk Level\s*\|", re.IGNORECASE),
)

# Stage 4A attack-plan output, forbidden in the 4B bundle
ATTACK_PLAN_OUTPUT_PATTERNS: tuple[Pattern, ...] = (
    re.compile(r"Opus Contrarian Attack Plan", re.IGNORECASE),
    re.compile(r"\[ECON-\d+\]"),
    re.compile(r"\[DOS-\d+\]"),
    re.compile(r"opus-attack-planner", re.IGNORECASE),
    re.compile(r"bundle-stage4a", re.IGNORECASE),
)

# Stage 4B deep-exploit output, forbidden in the 4A bundle
DEEP_EXPLOIT_OUTPUT_PATTERNS: tuple[Pattern, ...] = (
    re.compile(r"Codex Deep Exploit", re.IGNORECASE),
    re.compile(r"\[CEH-\d+\]"),
    re.compile(r"\[REF-\d+\]"),
    re.compile(r"\[FP-\d+\]"),
    re.compile(r"codex-deep-exploit-hunter", re.IGNORECASE),
    re.compile(r"bundle-stage4b", re.IGNORECASE),
)

ATTACK_PLAN_FILE_MARKER = "opus-attack-plan"
DEEP_EXPLOIT_FILE_MARKER = "codex-deep-exploit"
SPEC_FILENAMES: frozenset[str] = frozenset({"threat-model.md", "design.md", "test-plan.md"})

# Markdown markers the gates look for in pipeline documents
INVARIANT_CATEGORY_CODES: tuple[str, ...] = ("IC", "IS", "IA", "IT", "IB")
INVARIANT_ID_RE = re.compile(r"\b(IC|IS|IA|IT|IB)-\d+\b")
INVARIANTS_HEADING_RE = re.compile(
    r"##\s*(Invariants|Conservation Invariants|Consistency Invariants)", re.IGNORECASE
)
ACCEPTANCE_CRITERIA_ID_RE = re.compile(r"\bAC-(SEC|FUNC)-\d+\b")
ACCEPTANCE_CRITERIA_HEADING_RE = re.compile(r"##\s*Acceptance Criteria", re.IGNORECASE)
INVARIANT_TEST_MAPPING_RE = re.compile(r"Invariant.*Test.*Mapping", re.IGNORECASE)
INVARIANT_TABLE_ROW_RE = re.compile(r"\|\s*(IC|IS|IA|IT|IB)-\d+\s*\|")
STORAGE_LAYOUT_RE = re.compile(r"##\s*Storage Layout", re.IGNORECASE)
STORAGE_SLOT_TABLE_RE = re.compile(r"Slot\s*\|\s*Name", re.IGNORECASE)
EXTERNAL_CALL_POLICY_RE = re.compile(r"##\s*External Call Policy", re.IGNORECASE)
ALLOWED_EXTERNAL_CALLS_RE = re.compile(r"Allowed External Calls", re.IGNORECASE)

DECISION_RE = re.compile(r"Decision:\s*(APPROVED|NEEDS_CHANGES|NEEDS_CLARIFICATION)")
INVARIANT_MAPPING_AUDIT_RE = re.compile(r"Invariant.*Test.*Mapping.*Audit", re.IGNORECASE)
INVARIANT_VERDICT_TABLE_RE = re.compile(r"\|\s*Invariant\s*\|.*\|\s*Verdict\s*\|", re.IGNORECASE)
ACCEPTANCE_CRITERIA_AUDIT_RE = re.compile(r"Acceptance Criteria Audit", re.IGNORECASE)
EXPLOIT_HYPOTHESES_RE = re.compile(r"Attempted Exploit Hypotheses", re.IGNORECASE)
NUMBERED_HYPOTHESIS_RE = re.compile(r"Hypothesis \d+:", re.IGNORECASE)
INVARIANT_COVERAGE_RE = re.compile(r"Invariant Coverage", re.IGNORECASE)
GATE_CHECKLIST_RE = re.compile(r"Gate Checklist", re.IGNORECASE)

HIGH_MED_SEVERITY_LINE_RE = re.compile(r"Severity:\s*(HIGH|MED)", re.IGNORECASE)
HIGH_MED_TABLE_CELL_RE = re.compile(r"\|\s*(HIGH|MED)\s*\|")

TEST_FAILURE_RE = re.compile(r"FAILED|Error:", re.IGNORECASE)
TEST_PASSED_RE = re.compile(r"PASSED", re.IGNORECASE)
FORGE_FAILURE_RE = re.compile(r"FAILED|Error:.*fail", re.IGNORECASE)
ALL_TESTS_PASSED_RE = re.compile(r"All tests passed", re.IGNORECASE)
FORGE_FAIL_MARK_RE = re.compile(r"\[FAIL")
FORGE_PASS_MARK_RE = re.compile(r"\[PASS")
INVARIANT_VIOLATION_RE = re.compile(r"violated|FAILED", re.IGNORECASE)
INVARIANT_LOG_FAILURE_RE = re.compile(r"FAILED|Error:|violated", re.IGNORECASE)


def first_match(patterns: Iterable[Pattern], content: str) -> Optional[Pattern]:
    for pattern in patterns:
        if pattern.search(content):
            return pattern
    return None


def contains_code(content: str) -> Optional[Pattern]:
    return first_match(CODE_PATTERNS, content)


def contains_spec_prose(content: str) -> Optional[Pattern]:
    return first_match(SPEC_PROSE_PATTERNS, content)


def mentions_high_or_medium(content: str) -> bool:
    return bool(HIGH_MED_SEVERITY_LINE_RE.search(content) or HIGH_MED_TABLE_CELL_RE.search(content))


def found_invariant_categories(content: str) -> list[str]:
    return [code for code in INVARIANT_CATEGORY_CODES if re.search(rf"{code}-\d+", content)]
